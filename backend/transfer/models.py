"""Pydantic models for file transfer."""

import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


# --- Wire protocol control messages ---

class MetaMessage(BaseModel):
    """Sent exactly once before the chunks of a file."""
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["meta"] = "meta"
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")


class EndMessage(BaseModel):
    """Sent exactly once after the last chunk of a file."""
    kind: Literal["end"] = "end"


ControlMessage = Annotated[Union[MetaMessage, EndMessage], Field(discriminator="kind")]
control_message_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)


def encode_control(message: MetaMessage | EndMessage) -> str:
    return message.model_dump_json(by_alias=True)


def decode_control(raw: str) -> MetaMessage | EndMessage:
    """Parse a text frame. Raises pydantic.ValidationError on anything unknown."""
    return control_message_adapter.validate_json(raw)


# --- Sessions ---

class SendSession(BaseModel):
    """Sender-side bookkeeping for the file currently in flight."""
    file_name: str
    total_size: int
    mime_type: str
    bytes_sent: int = 0


class ReceiveSession(BaseModel):
    """Receiver-side bookkeeping. Chunks are kept in arrival order."""
    file_name: str
    total_size: int
    mime_type: str
    bytes_received: int = 0
    chunks: list[bytes] = Field(default_factory=list)

    @property
    def progress(self) -> float:
        if self.total_size == 0:
            return 1.0
        return self.bytes_received / self.total_size


# --- Results ---

class DownloadHandle:
    """A temporary file holding received bytes. The caller must release it."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "DownloadHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class ReceivedFile(BaseModel):
    """Immutable result of a completed receive."""
    model_config = ConfigDict(frozen=True)

    name: str
    size: int
    mime_type: str
    data: bytes = Field(repr=False)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    from_device_id: str

    def create_download(self, directory: str | None = None) -> DownloadHandle:
        """Write the bytes to a temporary file and hand ownership to the caller."""
        suffix = Path(self.name).suffix
        fd, path = tempfile.mkstemp(prefix="peerdrop-", suffix=suffix, dir=directory)
        with os.fdopen(fd, "wb") as f:
            f.write(self.data)
        return DownloadHandle(Path(path))

    def save(self, directory: str) -> Path:
        """Save into directory, adding a counter instead of overwriting."""
        os.makedirs(directory, exist_ok=True)
        # Never trust a peer-supplied path
        base = Path(self.name).name or "received.bin"
        target = Path(directory) / base
        stem, suffix = target.stem, target.suffix
        counter = 1
        while target.exists():
            target = Path(directory) / f"{stem} ({counter}){suffix}"
            counter += 1
        target.write_bytes(self.data)
        return target

    def describe(self) -> dict:
        """Metadata without the payload, for JSON consumers."""
        return self.model_dump(exclude={"data"}, mode="json")
