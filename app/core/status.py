from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from app.core.workflow import ItemStatus, RunStatus
from app.db.item_store import ItemStore
from app.db.run_store import RunStore
from app.core.engine import default_config


@dataclass(frozen=True)
class MigrationSnapshot:
    total: int
    processed: int
    pending: int
    claimed: int
    error: int
    run_status: RunStatus
    started_at: Optional[datetime]
    last_updated_at: Optional[datetime]
    completed_at: Optional[datetime]
    average_processing_time_ms: Optional[float] = None
    estimated_seconds_remaining: Optional[int] = None

    def as_dict(self) -> dict:
        return asdict(self)


class StatusAggregator:
    """Read-only progress view: per-status counts plus the run record."""

    def __init__(self, db: Session):
        self.items = ItemStore(db)
        self.runs = RunStore(db, default_config())

    def snapshot(self) -> MigrationSnapshot:
        counts = self.items.counts()
        run = self.runs.peek()
        avg_ms = self.items.average_processing_ms()

        pending = counts[ItemStatus.PENDING.value]
        eta = None
        if avg_ms is not None and run is not None:
            eta = int(pending * avg_ms / 1000 / max(1, run.concurrency))

        return MigrationSnapshot(
            total=sum(counts.values()),
            processed=counts[ItemStatus.DONE.value],
            pending=pending,
            claimed=counts[ItemStatus.CLAIMED.value],
            error=counts[ItemStatus.ERROR.value],
            run_status=RunStatus(run.status) if run else RunStatus.IDLE,
            started_at=run.started_at if run else None,
            last_updated_at=run.last_updated_at if run else None,
            completed_at=run.completed_at if run else None,
            average_processing_time_ms=avg_ms,
            estimated_seconds_remaining=eta,
        )
