"""Pydantic models for the device registry and the signaling relay."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class Device(BaseModel):
    """A registered device. Status is derived from last_seen_at, never stored."""
    id: str
    display_name: str
    last_seen_at: float  # Unix timestamp

    def is_online(self, now: float, online_window: float) -> bool:
        return now - self.last_seen_at < online_window

    def summary(self, now: float, online_window: float) -> "DeviceSummary":
        status = DeviceStatus.ONLINE if self.is_online(now, online_window) else DeviceStatus.OFFLINE
        return DeviceSummary(id=self.id, name=self.display_name, status=status)


class DeviceSummary(BaseModel):
    """The shape broadcast to clients in devices_updated."""
    id: str
    name: str
    status: DeviceStatus


class NegotiationKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


class NegotiationMessage(BaseModel):
    """One connection-negotiation message. The payload is opaque to the relay."""
    model_config = ConfigDict(frozen=True)

    kind: NegotiationKind
    payload: Any = None
    source_device_id: str
    target_device_id: str
