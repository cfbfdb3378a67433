from __future__ import annotations
import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.orm import Session, sessionmaker
from app.core.config import settings
from app.core.errors import InvalidTransition, RunConflict, StoreUnavailable
from app.core.worker_pool import WorkerPool
from app.core.workflow import BatchResult, ItemStatus, RunConfig, RunStatus, STARTABLE, utcnow
from app.db.item_store import ItemStore
from app.db.models import MigrationRun
from app.db.run_store import RunStore
from app.pipeline.pipeline import TransformPipeline

log = logging.getLogger(__name__)

# Bounded re-reads when a run write loses a version race
WRITE_ATTEMPTS = 5

# Keep-alive ticks per lease period while a batch is in flight
HEARTBEATS_PER_LEASE = 3


def default_config() -> RunConfig:
    return RunConfig(
        batch_size=settings.default_batch_size,
        concurrency=settings.default_concurrency,
        quality=settings.default_quality,
        max_width=settings.default_max_width,
    )


class MigrationEngine:
    """State machine over the singleton run record."""

    def __init__(self, db: Session, lease_timeout_seconds: Optional[int] = None,
                 defaults: Optional[RunConfig] = None):
        self.db = db
        self.lease_timeout_seconds = (settings.lease_timeout_seconds if lease_timeout_seconds is None
                                      else lease_timeout_seconds)
        self.runs = RunStore(db, defaults or default_config())
        self.items = ItemStore(db)

    def _orphaned(self, run: MigrationRun) -> bool:
        """A running record nobody has touched for a full lease is driverless."""
        if run.last_updated_at is None:
            return True
        return run.last_updated_at < utcnow() - timedelta(seconds=self.lease_timeout_seconds)

    def start(self, overrides: Optional[Dict[str, Any]] = None) -> Tuple[MigrationRun, bool]:
        """
        Move the run to RUNNING with a fresh config snapshot.

        Returns the run and whether a driver must be dispatched. Starting an
        already running run is a no-op unless its driver has gone silent for
        longer than the lease timeout.
        """
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        for _ in range(WRITE_ATTEMPTS):
            run = self.runs.read()
            status = RunStatus(run.status)
            if status == RunStatus.RUNNING and not self._orphaned(run):
                log.info("Start ignored, run already active", extra={"run_token": run.run_token})
                return run, False
            if status not in STARTABLE and status != RunStatus.RUNNING:
                raise InvalidTransition(status.value, "start")

            config = self.runs.config(run)
            now = utcnow()
            token = str(uuid.uuid4())
            try:
                run = self.runs.write(
                    run.version,
                    status=RunStatus.RUNNING.value,
                    run_token=token,
                    batch_size=overrides.get("batch_size", config.batch_size),
                    concurrency=overrides.get("concurrency", config.concurrency),
                    quality=overrides.get("quality", config.quality),
                    max_width=overrides.get("max_width", config.max_width),
                    started_at=run.started_at or now,
                    completed_at=None,
                    paused_at=None,
                    error_message=None,
                    last_updated_at=now,
                )
            except RunConflict:
                continue
            if status == RunStatus.RUNNING:
                log.warning("Re-dispatching orphaned run", extra={"run_token": token})
            else:
                log.info("Run started from %s", status.value, extra={"run_token": token})
            return run, True
        raise RunConflict(run.version)

    def pause(self) -> MigrationRun:
        for _ in range(WRITE_ATTEMPTS):
            run = self.runs.read()
            if run.status != RunStatus.RUNNING.value:
                raise InvalidTransition(run.status, "pause")
            try:
                run = self.runs.write(run.version, status=RunStatus.PAUSED.value, paused_at=utcnow())
            except RunConflict:
                continue
            log.info("Run paused", extra={"run_token": run.run_token})
            return run
        raise RunConflict(run.version)

    def retry_errors(self) -> int:
        return self.items.retry_errors()

    def heartbeat(self, run: MigrationRun) -> MigrationRun:
        return self.runs.write(run.version, last_updated_at=utcnow())

    def check_completion(self, run_token: str) -> bool:
        """Complete the run once nothing is pending or claimed."""
        run = self.runs.read()
        if run.status != RunStatus.RUNNING.value or run.run_token != run_token:
            return False
        counts = self.items.counts()
        if counts[ItemStatus.PENDING.value] or counts[ItemStatus.CLAIMED.value]:
            return False
        try:
            self.runs.write(run.version, status=RunStatus.COMPLETED.value, completed_at=utcnow())
        except RunConflict:
            # Paused or restarted concurrently; the next cycle re-evaluates
            return False
        log.info("Run completed: %d done, %d error", counts[ItemStatus.DONE.value],
                 counts[ItemStatus.ERROR.value], extra={"run_token": run_token})
        return True

    def escalate(self, run_token: str, reason: str) -> None:
        """Move the run to ERROR after a store-level failure."""
        log.error("Escalating run to error: %s", reason, extra={"run_token": run_token})
        try:
            for _ in range(WRITE_ATTEMPTS):
                run = self.runs.read()
                if run.run_token != run_token or run.status != RunStatus.RUNNING.value:
                    return
                try:
                    self.runs.write(run.version, status=RunStatus.ERROR.value, error_message=reason[:1000])
                    return
                except RunConflict:
                    continue
        except StoreUnavailable:
            # Still unreachable; start() treats the silent run as orphaned
            log.exception("Could not record run error", extra={"run_token": run_token})


class MigrationRunner:
    """Batch loop that drives one run token until it stops being the active run."""

    def __init__(self, session_factory: sessionmaker, pipeline: TransformPipeline,
                 lease_timeout_seconds: Optional[int] = None,
                 idle_poll_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.lease_timeout_seconds = (settings.lease_timeout_seconds if lease_timeout_seconds is None
                                      else lease_timeout_seconds)
        self.idle_poll_seconds = settings.idle_poll_seconds if idle_poll_seconds is None else idle_poll_seconds

    def _still_running(self, run_token: str) -> bool:
        with self.session_factory() as db:
            run = RunStore(db, default_config()).peek()
        return run is not None and run.status == RunStatus.RUNNING.value and run.run_token == run_token

    def _keep_alive(self, run_token: str, stop: threading.Event) -> None:
        """Heartbeat the run and renew our leases until ``stop`` is set.

        Neither the heartbeat nor a queued claim ages past the lease timeout
        while the batch is in flight, however long a single item takes.
        """
        interval = max(self.lease_timeout_seconds / HEARTBEATS_PER_LEASE, 0.1)
        while not stop.wait(interval):
            try:
                with self.session_factory() as db:
                    RunStore(db, default_config()).touch(run_token)
                    ItemStore(db).renew_claims(run_token)
            except StoreUnavailable:
                log.warning("Heartbeat failed, retrying next tick", exc_info=True, extra={"run_token": run_token})

    def run_batch(self, run_token: str, config: RunConfig) -> BatchResult:
        """Claim up to ``config.batch_size`` items and process them."""
        with self.session_factory() as db:
            claimed = ItemStore(db).claim_batch(config.batch_size, run_token, self.lease_timeout_seconds)
        if not claimed:
            return BatchResult()
        pool = WorkerPool(self.session_factory, self.pipeline, config.concurrency)
        stop = threading.Event()
        beat = threading.Thread(target=self._keep_alive, args=(run_token, stop),
                                name="photo-migration-heartbeat", daemon=True)
        beat.start()
        try:
            return pool.run_batch(claimed, config, run_token, lambda: self._still_running(run_token))
        finally:
            stop.set()
            beat.join()

    def drive(self, run_token: str, max_batches: Optional[int] = None) -> RunStatus:
        db = self.session_factory()
        engine = MigrationEngine(db, lease_timeout_seconds=self.lease_timeout_seconds)
        batches = 0
        try:
            while True:
                run = engine.runs.read()
                if run.status != RunStatus.RUNNING.value or run.run_token != run_token:
                    log.info("Driver stopping, run is %s", run.status, extra={"run_token": run_token})
                    return RunStatus(run.status)
                try:
                    run = engine.heartbeat(run)
                except RunConflict:
                    continue

                result = self.run_batch(run_token, engine.runs.config(run))
                batches += 1
                if engine.check_completion(run_token):
                    return RunStatus.COMPLETED
                if max_batches and batches >= max_batches:
                    return RunStatus(engine.runs.read().status)
                if result.claimed == 0:
                    # Only unexpired foreign claims remain; wait for them to finish or expire
                    time.sleep(self.idle_poll_seconds)
        except StoreUnavailable as e:
            engine.escalate(run_token, str(e))
            return RunStatus.ERROR
        finally:
            db.close()
