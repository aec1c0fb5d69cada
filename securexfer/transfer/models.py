"""Pydantic models for file transfer."""

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    PENDING = "pending"
    CONNECTING = "connecting"
    OPEN = "open"  # request sent, awaiting decision
    ACCEPTED = "accepted"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TRANSITIONS: dict[TransferState, frozenset[TransferState]] = {
    TransferState.PENDING: frozenset({
        TransferState.CONNECTING, TransferState.OPEN,
        TransferState.FAILED, TransferState.CANCELLED,
    }),
    TransferState.CONNECTING: frozenset({
        TransferState.OPEN, TransferState.FAILED, TransferState.CANCELLED,
    }),
    TransferState.OPEN: frozenset({
        TransferState.ACCEPTED, TransferState.DECLINED, TransferState.CANCELLED,
        TransferState.TIMED_OUT, TransferState.FAILED,
    }),
    TransferState.ACCEPTED: frozenset({
        TransferState.TRANSFERRING, TransferState.FAILED, TransferState.CANCELLED,
    }),
    TransferState.TRANSFERRING: frozenset({
        TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED,
    }),
}

TERMINAL_STATES = frozenset(TransferState) - frozenset(TRANSITIONS)


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """Full state of a single transfer, exposed to the caller."""
    transfer_id: str
    file_name: str  # single file name, or "<n> items"
    file_size: int  # total bytes across all files
    file_count: int = 1
    files_completed: int = 0
    transferred_bytes: int = 0
    state: TransferState = TransferState.PENDING
    direction: TransferDirection
    peer_device_id: str
    peer_device_name: str
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    eta_seconds: float = 0.0
    error_message: str | None = None
    saved_paths: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def is_completed(self) -> bool:
        return self.state == TransferState.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: TransferState, error: str | None = None) -> bool:
        """
        Move to ``state`` if the state machine allows it.

        Returns False, leaving the record untouched, for illegal moves such
        as any transition out of a terminal state.
        """
        if state not in TRANSITIONS.get(self.state, frozenset()):
            logger.debug(
                f"Ignoring transition {self.state.value} -> {state.value} "
                f"for {self.transfer_id}"
            )
            return False
        self.state = state
        if error is not None:
            self.error_message = error
        return True


# --- Wire protocol ---

class ControlEvent:
    REQUEST_TRANSFER = "request-transfer"
    TRANSFER_DECISION = "transfer-decision"
    CANCEL_TRANSFER = "cancel-transfer"


class TransferRequest(BaseModel):
    """Sent by the initiator to ask for permission. Immutable once sent."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    transfer_id: str = Field(alias="id", min_length=1)
    sender_name: str = Field(alias="senderName")
    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize", ge=0)
    file_type: str = Field(default="", alias="fileType")
    file_count: int | None = Field(default=None, alias="fileCount", ge=0)
    total_size: int | None = Field(default=None, alias="totalSize", ge=0)
    sender_ip: str = Field(default="", alias="ip")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class StatusPhase(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"


class TransferStatus(BaseModel):
    """Per-file receive event emitted by the listener."""
    transfer_id: str
    status: StatusPhase
    progress: int | None = None  # None while the size is unknown
    path: str | None = None
    message: str | None = None
    bytes_received: int = 0


class LocalFile(BaseModel):
    """A file selected for sending."""
    path: str
    name: str
    size: int
    relative_path: str  # name on the receiving side, may contain "/"


class SendFilesBody(BaseModel):
    """API body for initiating a transfer."""
    peer_id: str
    file_paths: list[str]
