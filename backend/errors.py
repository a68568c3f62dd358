"""Typed error categories shared by the server and the peer side."""

from enum import Enum


class ErrorCategory(str, Enum):
    REGISTRATION_FAILURE = "registration_failure"
    TARGET_NOT_FOUND = "target_not_found"
    NEGOTIATION_TIMEOUT = "negotiation_timeout"
    NEGOTIATION_FAILED = "negotiation_failed"
    CHANNEL_NOT_READY = "channel_not_ready"
    PROTOCOL_VIOLATION = "protocol_violation"
    TRANSFER_ABORTED = "transfer_aborted"
    CONNECTION_CLOSED = "connection_closed"
    BAD_REQUEST = "bad_request"


class PeerDropError(Exception):
    """Base class for every error the core reports."""

    category: ErrorCategory = ErrorCategory.BAD_REQUEST

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.category.value)
        self.message = message or self.category.value

    def to_dict(self) -> dict:
        return {"category": self.category.value, "message": self.message}


class RegistrationFailure(PeerDropError):
    category = ErrorCategory.REGISTRATION_FAILURE


class TargetNotFound(PeerDropError):
    """Raised when the relay has no device with the requested id."""

    category = ErrorCategory.TARGET_NOT_FOUND

    def __init__(self, target_device_id: str) -> None:
        super().__init__(f"Target device not found: {target_device_id}")
        self.target_device_id = target_device_id

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["target_device_id"] = self.target_device_id
        return data


class NegotiationTimeout(PeerDropError):
    category = ErrorCategory.NEGOTIATION_TIMEOUT


class NegotiationFailed(PeerDropError):
    category = ErrorCategory.NEGOTIATION_FAILED


class ChannelNotReady(PeerDropError):
    """Raised when a channel operation is attempted before the channel is open."""

    category = ErrorCategory.CHANNEL_NOT_READY


class ProtocolViolation(PeerDropError):
    category = ErrorCategory.PROTOCOL_VIOLATION


class TransferAborted(PeerDropError):
    """The channel closed before the transfer finished. No partial file is kept."""

    category = ErrorCategory.TRANSFER_ABORTED


class ConnectionClosed(PeerDropError):
    category = ErrorCategory.CONNECTION_CLOSED


class BadRequest(PeerDropError):
    category = ErrorCategory.BAD_REQUEST
