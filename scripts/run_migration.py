#!/usr/bin/env python3
"""
Drive a photo migration run in the foreground, without Celery.
Usage: python scripts/run_migration.py [--batch=100] [--concurrency=3] [--max-batches=0]
"""
import sys
import argparse
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.config import settings
from app.core.engine import MigrationEngine, MigrationRunner
from app.core.errors import InvalidTransition
from app.core.logging import configure_logging
from app.core.status import StatusAggregator
from app.core.workflow import RunStatus
from app.db.session import SessionLocal
from app.pipeline.pipeline import build_pipeline


def print_snapshot(title: str) -> None:
    db = SessionLocal()
    try:
        snap = StatusAggregator(db).snapshot()
    finally:
        db.close()
    print(title)
    print(f"  - Run status: {snap.run_status.value}")
    print(f"  - Total: {snap.total}")
    print(f"  - Pending: {snap.pending}")
    print(f"  - Claimed: {snap.claimed}")
    print(f"  - Done: {snap.processed}")
    print(f"  - Error: {snap.error}")
    print()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the photo migration in this process")
    parser.add_argument("--batch", type=int, default=None, help="Items claimed per pass")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel executors")
    parser.add_argument("--quality", type=int, default=None, help="WebP quality 0-100")
    parser.add_argument("--max-width", type=int, default=None, help="Maximum output width in pixels")
    parser.add_argument("--max-batches", type=int, default=0, help="Stop (pause) after this many batches; 0 = unlimited")
    parser.add_argument("--retry-errors", action="store_true", help="Requeue error items before starting")
    args = parser.parse_args()

    configure_logging()
    print("=" * 60)
    print("Photo Migration")
    print("=" * 60)
    print_snapshot("Initial migration status:")

    db = SessionLocal()
    try:
        engine = MigrationEngine(db)
        if args.retry_errors:
            print(f"Requeued {engine.retry_errors()} error items")
        run, dispatched = engine.start({
            "batch_size": args.batch,
            "concurrency": args.concurrency,
            "quality": args.quality,
            "max_width": args.max_width,
        })
    finally:
        db.close()

    if not dispatched:
        print("A run is already active in another process; nothing to do")
        return 1

    runner = MigrationRunner(SessionLocal, build_pipeline(settings))
    try:
        status = runner.drive(run.run_token, max_batches=args.max_batches or None)
    finally:
        runner.pipeline.source.close()

    if status == RunStatus.RUNNING:
        # Batch limit reached; leave the run resumable
        db = SessionLocal()
        try:
            MigrationEngine(db).pause()
        except InvalidTransition:
            pass
        finally:
            db.close()
        print(f"Reached max batches limit ({args.max_batches}), run paused")

    print_snapshot("Final migration status:")
    return 0 if status != RunStatus.ERROR else 1


if __name__ == "__main__":
    sys.exit(main())
