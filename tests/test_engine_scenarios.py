"""End-to-end runs of the batch driver against a SQLite ledger."""
import threading
import time
from datetime import timedelta
from sqlalchemy import select, update
from app.core.engine import MigrationEngine, MigrationRunner
from app.core.errors import SourceFetchError, StoreUnavailable
from app.core.workflow import ItemStatus, RunConfig, RunStatus, utcnow
from app.db.item_store import ItemStore
from app.db.models import MigrationItem

DEFAULTS = RunConfig(batch_size=100, concurrency=3, quality=70, max_width=32)


def _engine(db):
    return MigrationEngine(db, lease_timeout_seconds=600, defaults=DEFAULTS)


def _runner(session_factory, pipeline):
    return MigrationRunner(session_factory, pipeline, lease_timeout_seconds=600, idle_poll_seconds=0)


def _start(db, **overrides):
    run, dispatched = _engine(db).start(overrides)
    assert dispatched
    return run.run_token


def test_full_run_processes_every_item(db, session_factory, pipeline, item_store, register, target_store):
    register(10)
    token = _start(db, batch_size=10, concurrency=2)

    status = _runner(session_factory, pipeline).drive(token)

    assert status == RunStatus.COMPLETED
    counts = item_store.counts()
    assert counts[ItemStatus.DONE.value] == 10
    assert counts[ItemStatus.PENDING.value] == 0
    assert counts[ItemStatus.CLAIMED.value] == 0
    run = _engine(db).runs.read()
    assert run.status == RunStatus.COMPLETED.value
    assert run.completed_at is not None
    db.expire_all()
    for row in db.scalars(select(MigrationItem)):
        assert row.target_ref == f"photos/hd/{row.id}.webp"
        assert target_store.path_for(row.target_ref).exists()


def test_corrupt_items_fail_without_stopping_the_run(db, session_factory, pipeline, source, item_store, register):
    refs = register(5)
    for ref in refs[:3]:
        source.assets[ref] = b"not an image at all"
    token = _start(db, batch_size=5)

    status = _runner(session_factory, pipeline).drive(token)

    assert status == RunStatus.COMPLETED
    counts = item_store.counts()
    assert counts[ItemStatus.DONE.value] == 2
    assert counts[ItemStatus.ERROR.value] == 3
    for row in item_store.errors():
        assert row.error_message == "permanent: unsupported or corrupt image"
        assert row.target_ref is None


def test_small_batches_loop_until_drained(db, session_factory, pipeline, item_store, register):
    register(7)
    token = _start(db, batch_size=3, concurrency=1)

    status = _runner(session_factory, pipeline).drive(token)

    assert status == RunStatus.COMPLETED
    assert item_store.counts()[ItemStatus.DONE.value] == 7


def test_empty_ledger_completes_immediately(db, session_factory, pipeline):
    token = _start(db)

    assert _runner(session_factory, pipeline).drive(token) == RunStatus.COMPLETED


def test_pause_lets_started_items_finish(db, session_factory, pipeline, source, item_store, register):
    """Items in flight at pause time finish; the rest go back to pending."""
    register(5)
    source.gate = threading.Event()
    token = _start(db, batch_size=5, concurrency=2)
    runner = _runner(session_factory, pipeline)
    outcome = []
    driver = threading.Thread(target=lambda: outcome.append(runner.drive(token)))
    driver.start()

    assert source.wait_started(2)
    _engine(db).pause()
    source.gate.set()
    driver.join(timeout=30)

    assert outcome == [RunStatus.PAUSED]
    counts = item_store.counts()
    assert counts[ItemStatus.DONE.value] == 2
    assert counts[ItemStatus.PENDING.value] == 3
    assert counts[ItemStatus.CLAIMED.value] == 0
    assert _engine(db).runs.read().status == RunStatus.PAUSED.value

    # Resuming picks up only what is left
    source.gate = None
    token = _start(db)
    assert runner.drive(token) == RunStatus.COMPLETED
    assert item_store.counts()[ItemStatus.DONE.value] == 5
    assert len(source.fetched) == 5


def test_stale_claim_from_dead_worker_is_processed(db, session_factory, pipeline, item_store, register):
    register(3)
    db.execute(update(MigrationItem).where(MigrationItem.source_ref == "photo-001")
               .values(status=ItemStatus.CLAIMED.value, claimed_by="crashed-run",
                       claimed_at=utcnow() - timedelta(seconds=1200)))
    db.commit()
    token = _start(db)

    status = _runner(session_factory, pipeline).drive(token)

    assert status == RunStatus.COMPLETED
    assert item_store.counts()[ItemStatus.DONE.value] == 3


def test_live_foreign_claim_blocks_completion(db, session_factory, pipeline, item_store, register):
    register(2)
    db.execute(update(MigrationItem).where(MigrationItem.source_ref == "photo-000")
               .values(status=ItemStatus.CLAIMED.value, claimed_by="other-run", claimed_at=utcnow()))
    db.commit()
    token = _start(db)

    status = _runner(session_factory, pipeline).drive(token, max_batches=3)

    assert status == RunStatus.RUNNING
    counts = item_store.counts()
    assert counts[ItemStatus.DONE.value] == 1
    assert counts[ItemStatus.CLAIMED.value] == 1


def test_retry_errors_then_restart(db, session_factory, pipeline, source, item_store, register):
    refs = register(3)
    source.failures[refs[0]] = SourceFetchError(f"timeout fetching {refs[0]}", transient=True)
    runner = _runner(session_factory, pipeline)

    assert runner.drive(_start(db)) == RunStatus.COMPLETED
    [failed] = item_store.errors()
    assert failed.error_message.startswith("transient: timeout")

    del source.failures[refs[0]]
    assert _engine(db).retry_errors() == 1
    assert item_store.counts()[ItemStatus.PENDING.value] == 1

    assert runner.drive(_start(db)) == RunStatus.COMPLETED
    counts = item_store.counts()
    assert counts[ItemStatus.DONE.value] == 3
    assert counts[ItemStatus.ERROR.value] == 0


def test_concurrency_bounds_in_flight_items(db, session_factory, pipeline, source, item_store, register):
    register(8)
    token = _start(db, batch_size=8, concurrency=2)

    _runner(session_factory, pipeline).drive(token)

    assert 1 <= source.max_active <= 2
    assert item_store.counts()[ItemStatus.DONE.value] == 8


def test_store_outage_escalates_run_to_error(db, session_factory, pipeline, register, monkeypatch):
    register(2)
    token = _start(db)

    def unreachable(self, *args, **kwargs):
        raise StoreUnavailable("Item store unreachable: connection refused")

    monkeypatch.setattr(ItemStore, "claim_batch", unreachable)
    status = _runner(session_factory, pipeline).drive(token)

    assert status == RunStatus.ERROR
    run = _engine(db).runs.read()
    assert run.status == RunStatus.ERROR.value
    assert "connection refused" in run.error_message

    # Start from error is legal once the store is back
    monkeypatch.undo()
    assert _runner(session_factory, pipeline).drive(_start(db)) == RunStatus.COMPLETED


def test_superseded_driver_stops(db, session_factory, pipeline, register):
    """A driver whose token was replaced by a restart exits without touching items."""
    register(2)
    old_token = _start(db)
    _engine(db).pause()
    _start(db)

    status = _runner(session_factory, pipeline).drive(old_token)

    assert status == RunStatus.RUNNING
    assert ItemStore(db).counts()[ItemStatus.PENDING.value] == 2


def test_batch_longer_than_lease_keeps_run_alive(db, session_factory, pipeline, source, item_store, register):
    """A slow batch still heartbeats: a second start is a no-op and queued claims stay ours."""
    register(2)
    source.gate = threading.Event()
    engine = MigrationEngine(db, lease_timeout_seconds=1, defaults=DEFAULTS)
    run, _ = engine.start({"batch_size": 2, "concurrency": 1})
    token = run.run_token
    runner = MigrationRunner(session_factory, pipeline, lease_timeout_seconds=1, idle_poll_seconds=0)
    outcome = []
    driver = threading.Thread(target=lambda: outcome.append(runner.drive(token)))
    driver.start()

    try:
        assert source.wait_started(1)
        time.sleep(1.5)
        again, dispatched = engine.start()
        again_token = again.run_token
        stolen = ItemStore(db).claim_batch(5, "intruder", 1)
    finally:
        source.gate.set()
        driver.join(timeout=30)

    assert not dispatched
    assert again_token == token
    assert stolen == []
    assert outcome == [RunStatus.COMPLETED]
    assert item_store.counts()[ItemStatus.DONE.value] == 2


def test_store_failure_mid_batch_hands_claims_back(db, session_factory, pipeline, item_store, register, monkeypatch):
    """After a write-back outage no item stays claimed by the dead driver."""
    register(3)
    record_outcome = ItemStore.record_outcome
    calls = []

    def flaky(self, outcome, run_token):
        calls.append(outcome.item_id)
        if len(calls) == 1:
            raise StoreUnavailable("Item store write failed: disk I/O error")
        return record_outcome(self, outcome, run_token)

    monkeypatch.setattr(ItemStore, "record_outcome", flaky)
    runner = _runner(session_factory, pipeline)

    assert runner.drive(_start(db, batch_size=3, concurrency=1)) == RunStatus.ERROR
    counts = item_store.counts()
    assert counts[ItemStatus.CLAIMED.value] == 0
    assert counts[ItemStatus.PENDING.value] == 3

    assert runner.drive(_start(db)) == RunStatus.COMPLETED
    assert item_store.counts()[ItemStatus.DONE.value] == 3
