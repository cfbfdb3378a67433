from __future__ import annotations
import logging
from app.tasks.celery_app import celery_app
from app.db.session import SessionLocal
from app.core.config import settings
from app.core.engine import MigrationEngine, MigrationRunner
from app.pipeline.pipeline import build_pipeline

log = logging.getLogger(__name__)

@celery_app.task(name="run_photo_migration")
def run_photo_migration(run_token: str) -> str:
    pipeline = build_pipeline(settings)
    runner = MigrationRunner(SessionLocal, pipeline)
    log.info("Starting migration driver", extra={"run_token": run_token})
    try:
        status = runner.drive(run_token)
    except Exception as e:
        log.exception("Migration driver crashed", extra={"run_token": run_token})
        db = SessionLocal()
        try:
            MigrationEngine(db).escalate(run_token, f"driver crashed: {e}")
        finally:
            db.close()
        raise
    finally:
        pipeline.source.close()
    log.info("Migration driver finished with status %s", status.value, extra={"run_token": run_token})
    return status.value
