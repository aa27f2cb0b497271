"""Pydantic models for file transfer."""

import json
import time
from enum import Enum

from pydantic import BaseModel, Field


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    QUEUED = "queued"
    SENDING = "sending"
    RECEIVING = "receiving"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (
    TransferState.COMPLETED,
    TransferState.CANCELLED,
    TransferState.FAILED,
)


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferRecord(BaseModel):
    """Full state of a single file transfer, exposed through events."""
    transfer_id: str
    file_name: str
    file_size: int
    file_type: str = ""
    direction: TransferDirection
    state: TransferState = TransferState.QUEUED
    transferred_bytes: int = 0
    started_at: float | None = None
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    eta_seconds: float = 0.0
    error_message: str | None = None
    created_at: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def update_progress(self, speed_bps: float | None = None) -> None:
        if speed_bps is not None:
            self.speed_bps = speed_bps
        self.progress_percent = (
            self.transferred_bytes / self.file_size * 100
            if self.file_size > 0
            else 100.0
        )
        remaining = self.file_size - self.transferred_bytes
        self.eta_seconds = remaining / self.speed_bps if self.speed_bps > 0 else 0.0

    def finish(self, state: TransferState) -> None:
        self.state = state
        self.speed_bps = 0.0
        self.eta_seconds = 0.0
        if state == TransferState.COMPLETED:
            self.progress_percent = 100.0


class ReceivedFile(BaseModel):
    """A fully reassembled incoming file."""
    transfer_id: str
    name: str
    size: int
    type: str = ""
    data: bytes
    saved_path: str | None = None


# --- Wire protocol message types ---

class MessageType:
    FILE_INFO = "file-info"
    FILE_SPEED_UPDATE = "file-speed-update"
    FILE_COMPLETE = "file-complete"
    FILE_CANCELLED = "file-cancelled"
    FILE_PAUSED = "file-paused"
    FILE_RESUMED = "file-resumed"


class FileRef(BaseModel):
    """The `file` object carried by control messages."""
    id: str
    name: str | None = None
    size: int | None = None
    type: str | None = None
    lastModified: float | None = None


class ControlMessage(BaseModel):
    """file-info, file-complete, file-cancelled, file-paused, file-resumed."""
    type: str
    file: FileRef


class SpeedUpdateMessage(BaseModel):
    type: str = MessageType.FILE_SPEED_UPDATE
    fileId: str
    speed: float
    progress: float


def control_message(msg_type: str, **file_fields) -> str:
    """Serialize a control envelope to its text frame."""
    message = ControlMessage(type=msg_type, file=FileRef(**file_fields))
    return message.model_dump_json(exclude_none=True)


def parse_control_message(text: str) -> ControlMessage | SpeedUpdateMessage:
    """Parse a text frame. Raises ValueError on malformed or unknown input."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Control message must be an object")
    msg_type = data.get("type")
    if msg_type == MessageType.FILE_SPEED_UPDATE:
        return SpeedUpdateMessage(**data)
    if msg_type in CONTROL_TYPES:
        return ControlMessage(**data)
    raise ValueError(f"Unknown control message type: {msg_type!r}")


CONTROL_TYPES = (
    MessageType.FILE_INFO,
    MessageType.FILE_COMPLETE,
    MessageType.FILE_CANCELLED,
    MessageType.FILE_PAUSED,
    MessageType.FILE_RESUMED,
)
