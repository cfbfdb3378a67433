"""Singleton run record with optimistic-concurrency writes."""
from __future__ import annotations
import logging
from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session
from app.core.errors import RunConflict, StoreUnavailable
from app.core.workflow import RunConfig, RunStatus, utcnow
from app.db.models import MigrationRun, RUN_ID

log = logging.getLogger(__name__)


class RunStore:
    def __init__(self, db: Session, defaults: RunConfig):
        self.db = db
        self.defaults = defaults

    def peek(self) -> MigrationRun | None:
        """Current run record, or None if it was never created."""
        try:
            run = self.db.execute(
                select(MigrationRun)
                .where(MigrationRun.id == RUN_ID)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            # Close the read transaction so later reads see fresh commits
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Run record unreachable: {e}") from e
        return run

    def read(self) -> MigrationRun:
        """Current run record, created lazily as idle."""
        run = self.peek()
        if run is not None:
            return run
        try:
            return self._create()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Run record unreachable: {e}") from e

    def _create(self) -> MigrationRun:
        run = MigrationRun(
            id=RUN_ID,
            status=RunStatus.IDLE.value,
            batch_size=self.defaults.batch_size,
            concurrency=self.defaults.concurrency,
            quality=self.defaults.quality,
            max_width=self.defaults.max_width,
            version=1,
        )
        self.db.add(run)
        try:
            self.db.commit()
            log.info("Created run record")
            return run
        except IntegrityError:
            # Another process created it first
            self.db.rollback()
            return self.db.execute(
                select(MigrationRun)
                .where(MigrationRun.id == RUN_ID)
                .execution_options(populate_existing=True)
            ).scalar_one()

    def write(self, expected_version: int, **values) -> MigrationRun:
        """Apply ``values`` only if the record is still at ``expected_version``."""
        values.setdefault("last_updated_at", utcnow())
        try:
            result = self.db.execute(
                update(MigrationRun)
                .where(MigrationRun.id == RUN_ID, MigrationRun.version == expected_version)
                .values(version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Run record unreachable: {e}") from e
        if result.rowcount != 1:
            raise RunConflict(expected_version)
        return self.read()

    def touch(self, run_token: str) -> bool:
        """Refresh the heartbeat of the run ``run_token`` drives, if it is still running."""
        try:
            result = self.db.execute(
                update(MigrationRun)
                .where(
                    MigrationRun.id == RUN_ID,
                    MigrationRun.status == RunStatus.RUNNING.value,
                    MigrationRun.run_token == run_token,
                )
                .values(last_updated_at=utcnow(), version=MigrationRun.version + 1)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            raise StoreUnavailable(f"Run record unreachable: {e}") from e
        return result.rowcount == 1

    def config(self, run: MigrationRun) -> RunConfig:
        return RunConfig(
            batch_size=run.batch_size,
            concurrency=run.concurrency,
            quality=run.quality,
            max_width=run.max_width,
        )
