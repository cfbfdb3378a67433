from __future__ import annotations
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List
from sqlalchemy.orm import sessionmaker
from app.core.errors import StoreUnavailable
from app.core.workflow import BatchResult, ClaimedItem, RunConfig
from app.db.item_store import ItemStore
from app.pipeline.pipeline import TransformPipeline

log = logging.getLogger(__name__)


class WorkerPool:
    """
    Runs a claimed batch through the pipeline on ``concurrency`` executors.

    Each executor owns a database session and takes one item at a time from a
    shared queue, carrying it from fetch to write-back before taking the next.
    Before starting an item it asks ``should_continue``; once that returns
    False the executor hands its remaining claims back as pending. Items
    already started always run to a terminal status. A store failure in any
    executor stops the pool; its unfinished claims are handed back before the
    failure is re-raised.
    """

    def __init__(self, session_factory: sessionmaker, pipeline: TransformPipeline, concurrency: int):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.concurrency = max(1, concurrency)

    def run_batch(
        self,
        items: List[ClaimedItem],
        config: RunConfig,
        run_token: str,
        should_continue: Callable[[], bool],
    ) -> BatchResult:
        result = BatchResult(claimed=len(items))
        if not items:
            return result

        work: "queue.Queue[ClaimedItem]" = queue.Queue()
        for item in items:
            work.put(item)
        tally_lock = threading.Lock()
        failed = threading.Event()

        def executor() -> None:
            with self.session_factory() as db:
                store = ItemStore(db)
                while not failed.is_set():
                    try:
                        item = work.get_nowait()
                    except queue.Empty:
                        return
                    try:
                        if not should_continue():
                            store.release(item.id, run_token)
                            with tally_lock:
                                result.released += 1
                            continue
                        outcome = self.pipeline.process(item, config, run_token)
                        won = store.record_outcome(outcome, run_token)
                    except Exception:
                        # Store-level failure; stop the pool and surface it
                        failed.set()
                        work.put(item)
                        raise
                    with tally_lock:
                        if not won:
                            result.lost += 1
                        elif outcome.ok:
                            result.done += 1
                        else:
                            result.error += 1

        workers = min(self.concurrency, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="photo-migration") as pool:
            futures = [pool.submit(executor) for _ in range(workers)]
        if failed.is_set():
            self._hand_back(work, run_token, result)
        for future in futures:
            # Re-raises the first store failure from an executor
            future.result()

        log.info("Batch finished: %d done, %d error, %d released, %d lost",
                 result.done, result.error, result.released, result.lost,
                 extra={"run_token": run_token})
        return result

    def _hand_back(self, work: "queue.Queue[ClaimedItem]", run_token: str, result: BatchResult) -> None:
        """Best-effort release of claims the pool will not finish."""
        with self.session_factory() as db:
            store = ItemStore(db)
            while True:
                try:
                    item = work.get_nowait()
                except queue.Empty:
                    return
                try:
                    if store.release(item.id, run_token):
                        result.released += 1
                except StoreUnavailable:
                    log.warning("Could not release claim, it frees up when its lease expires",
                                extra={"run_token": run_token, "item_id": item.id})
