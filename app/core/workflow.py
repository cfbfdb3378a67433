from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ItemStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    ERROR = "error"


# Run states from which start() may transition to RUNNING
STARTABLE = frozenset({RunStatus.IDLE, RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.ERROR})

ERROR_MESSAGE_MAX = 1000


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class RunConfig:
    batch_size: int
    concurrency: int
    quality: int
    max_width: int


@dataclass(frozen=True)
class ClaimedItem:
    """Detached view of a claimed item handed to an executor."""
    id: str
    source_ref: str
    file_name: str | None


@dataclass(frozen=True)
class ItemOutcome:
    item_id: str
    ok: bool
    target_ref: str | None = None
    error_message: str | None = None
    original_size: int | None = None
    processed_size: int | None = None
    original_width: int | None = None
    original_height: int | None = None
    processed_width: int | None = None
    processed_height: int | None = None
    processing_time_ms: int | None = None


@dataclass
class BatchResult:
    claimed: int = 0
    done: int = 0
    error: int = 0
    released: int = 0
    lost: int = 0
