"""Item ledger: claim protocol, outcome write-back, retry and counts.

Every mutation is a conditional UPDATE keyed on the item's current status
(and version, for claims), so concurrent claimers never both win the same
item and a worker that lost its lease cannot overwrite the new owner's work.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterable, Dict, List, Any
from sqlalchemy import select, update, func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import StoreUnavailable
from app.core.workflow import ItemStatus, ClaimedItem, ItemOutcome, ERROR_MESSAGE_MAX, utcnow
from app.db.models import MigrationItem, MigrationLog

log = logging.getLogger(__name__)


def _unsynced(stmt):
    return stmt.execution_options(synchronize_session=False)


class ItemStore:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store write failed: {e}") from e

    @contextmanager
    def _reading(self):
        try:
            yield
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e

    # -- claim protocol -------------------------------------------------

    def release_expired(self, lease_timeout_seconds: int) -> int:
        """Move claims older than the lease timeout back to pending."""
        cutoff = utcnow() - timedelta(seconds=lease_timeout_seconds)
        try:
            result = self.db.execute(_unsynced(
                update(MigrationItem)
                .where(
                    MigrationItem.status == ItemStatus.CLAIMED.value,
                    MigrationItem.claimed_at < cutoff,
                )
                .values(
                    status=ItemStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                    version=MigrationItem.version + 1,
                )
            ))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        self._commit()
        if result.rowcount:
            log.warning("Reclaimed %d expired leases", result.rowcount)
        return result.rowcount

    def claim_batch(self, batch_size: int, run_token: str, lease_timeout_seconds: int) -> List[ClaimedItem]:
        self.release_expired(lease_timeout_seconds)

        try:
            candidates = self.db.execute(
                select(MigrationItem.id, MigrationItem.version, MigrationItem.source_ref, MigrationItem.file_name)
                .where(MigrationItem.status == ItemStatus.PENDING.value)
                .order_by(MigrationItem.created_at, MigrationItem.id)
                .limit(batch_size)
            ).all()
            # End the read before taking write locks
            self.db.commit()

            claimed: List[ClaimedItem] = []
            for row in candidates:
                now = utcnow()
                result = self.db.execute(_unsynced(
                    update(MigrationItem)
                    .where(
                        MigrationItem.id == row.id,
                        MigrationItem.status == ItemStatus.PENDING.value,
                        MigrationItem.version == row.version,
                    )
                    .values(
                        status=ItemStatus.CLAIMED.value,
                        claimed_by=run_token,
                        claimed_at=now,
                        updated_at=now,
                        version=MigrationItem.version + 1,
                    )
                ))
                self.db.commit()
                if result.rowcount == 1:
                    claimed.append(ClaimedItem(id=row.id, source_ref=row.source_ref, file_name=row.file_name))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e

        log.info("Claimed %d of %d candidates", len(claimed), len(candidates), extra={"run_token": run_token})
        return claimed

    def release(self, item_id: str, run_token: str) -> bool:
        """Give back a claim that was never started."""
        try:
            result = self.db.execute(_unsynced(
                update(MigrationItem)
                .where(
                    MigrationItem.id == item_id,
                    MigrationItem.status == ItemStatus.CLAIMED.value,
                    MigrationItem.claimed_by == run_token,
                )
                .values(
                    status=ItemStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                    version=MigrationItem.version + 1,
                )
            ))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        self._commit()
        return result.rowcount == 1

    def renew_claims(self, run_token: str) -> int:
        """Push the lease of every item ``run_token`` still holds forward to now."""
        try:
            result = self.db.execute(_unsynced(
                update(MigrationItem)
                .where(
                    MigrationItem.status == ItemStatus.CLAIMED.value,
                    MigrationItem.claimed_by == run_token,
                )
                .values(claimed_at=utcnow())
            ))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        self._commit()
        return result.rowcount

    # -- outcome write-back --------------------------------------------

    def record_outcome(self, outcome: ItemOutcome, run_token: str) -> bool:
        """Write a terminal status for an item we hold the lease on.

        Returns False when the lease was lost (expired and reclaimed by
        another worker); the outcome is then dropped.
        """
        now = utcnow()
        if outcome.ok:
            values: Dict[str, Any] = dict(
                status=ItemStatus.DONE.value,
                target_ref=outcome.target_ref,
                error_message=None,
                width=outcome.processed_width,
                height=outcome.processed_height,
                file_size=outcome.processed_size,
                migrated_at=now,
            )
        else:
            values = dict(
                status=ItemStatus.ERROR.value,
                error_message=(outcome.error_message or "Unknown error")[:ERROR_MESSAGE_MAX],
            )
        values.update(claimed_by=None, claimed_at=None, updated_at=now, version=MigrationItem.version + 1)

        try:
            result = self.db.execute(_unsynced(
                update(MigrationItem)
                .where(
                    MigrationItem.id == outcome.item_id,
                    MigrationItem.status == ItemStatus.CLAIMED.value,
                    MigrationItem.claimed_by == run_token,
                )
                .values(**values)
            ))
            won = result.rowcount == 1
            if won:
                self.db.add(MigrationLog(
                    item_id=outcome.item_id,
                    run_token=run_token,
                    status=values["status"],
                    error_message=values.get("error_message"),
                    original_size=outcome.original_size,
                    processed_size=outcome.processed_size,
                    original_width=outcome.original_width,
                    original_height=outcome.original_height,
                    processed_width=outcome.processed_width,
                    processed_height=outcome.processed_height,
                    processing_time_ms=outcome.processing_time_ms,
                    processed_at=now,
                ))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        self._commit()

        if not won:
            log.warning("Lease lost before write-back, outcome dropped",
                        extra={"run_token": run_token, "item_id": outcome.item_id})
        return won

    # -- retry controller ----------------------------------------------

    def retry_errors(self) -> int:
        try:
            result = self.db.execute(_unsynced(
                update(MigrationItem)
                .where(MigrationItem.status == ItemStatus.ERROR.value)
                .values(
                    status=ItemStatus.PENDING.value,
                    error_message=None,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                    version=MigrationItem.version + 1,
                )
            ))
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        self._commit()
        log.info("Requeued %d error items", result.rowcount)
        return result.rowcount

    # -- registration --------------------------------------------------

    def register(self, assets: Iterable[Dict[str, Any]]) -> int:
        """Add pending items for assets not yet in the ledger."""
        by_ref: Dict[str, Dict[str, Any]] = {}
        for asset in assets:
            by_ref.setdefault(asset["source_ref"], asset)
        if not by_ref:
            return 0

        def _item(ref: str, asset: Dict[str, Any]) -> MigrationItem:
            return MigrationItem(
                source_ref=ref,
                file_name=asset.get("file_name"),
                owner_ref=asset.get("owner_ref"),
                status=ItemStatus.PENDING.value,
            )

        try:
            existing = set(self.db.scalars(
                select(MigrationItem.source_ref).where(MigrationItem.source_ref.in_(list(by_ref)))
            ))
            fresh = {ref: a for ref, a in by_ref.items() if ref not in existing}
            self.db.add_all([_item(ref, a) for ref, a in fresh.items()])
            try:
                self.db.commit()
                inserted = len(fresh)
            except IntegrityError:
                # Some refs were registered concurrently; insert one at a time
                self.db.rollback()
                inserted = 0
                for ref, asset in fresh.items():
                    self.db.add(_item(ref, asset))
                    try:
                        self.db.commit()
                        inserted += 1
                    except IntegrityError:
                        self.db.rollback()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Item store unreachable: {e}") from e
        log.info("Registered %d new items (%d already known)", inserted, len(by_ref) - inserted)
        return inserted

    # -- queries -------------------------------------------------------

    def counts(self) -> Dict[str, int]:
        """Item count per status, from the status index."""
        with self._reading():
            rows = self.db.execute(
                select(MigrationItem.status, func.count()).group_by(MigrationItem.status)
            ).all()
        counts = {s.value: 0 for s in ItemStatus}
        for status, n in rows:
            counts[status] = n
        return counts

    def errors(self, limit: int = 50) -> List[MigrationItem]:
        with self._reading():
            return list(self.db.scalars(
                select(MigrationItem)
                .where(MigrationItem.status == ItemStatus.ERROR.value)
                .order_by(MigrationItem.updated_at.desc())
                .limit(limit)
                .execution_options(populate_existing=True)
            ))

    def recent_logs(self, limit: int = 100) -> List[MigrationLog]:
        with self._reading():
            return list(self.db.scalars(
                select(MigrationLog).order_by(MigrationLog.processed_at.desc()).limit(limit)
            ))

    def average_processing_ms(self, window: int = 100) -> float | None:
        """Mean processing time over the most recent ``window`` outcomes."""
        recent = (
            select(MigrationLog.processing_time_ms)
            .where(MigrationLog.processing_time_ms.is_not(None))
            .order_by(MigrationLog.processed_at.desc())
            .limit(window)
            .subquery()
        )
        with self._reading():
            avg = self.db.scalar(select(func.avg(recent.c.processing_time_ms)))
        return float(avg) if avg is not None else None
