import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from alembic.config import Config
from alembic import command
from app.core.config import settings
from app.core.errors import RunConflict, StoreUnavailable
from app.core.logging import configure_logging
from app.api.routes import router as api_router
from app.db.session import engine

configure_logging(logging.getLevelName(settings.log_level.upper()))
log = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def wait_for_database(max_retries: int | None = None, retry_delay: float | None = None) -> None:
    """Block until the item store database accepts connections."""
    max_retries = max_retries or settings.db_connect_retries
    retry_delay = retry_delay or settings.db_connect_retry_delay
    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("Connected to %s", engine.url.render_as_string(hide_password=True))
            return
        except Exception as e:
            if attempt == max_retries:
                log.error("Database still unreachable after %d attempts", max_retries)
                raise
            log.warning("Database not ready (attempt %d/%d), retrying in %ss: %s",
                        attempt, max_retries, retry_delay, e)
            time.sleep(retry_delay)


def run_migrations() -> None:
    """Upgrade the ledger schema to the latest Alembic revision."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    try:
        command.upgrade(alembic_cfg, "head")
    except Exception as e:
        log.error("Schema upgrade failed: %s", e, exc_info=True)
        raise
    log.info("Ledger schema is at head")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting %s (%s)", settings.app_name, settings.app_env)
    wait_for_database()
    run_migrations()
    yield
    log.info("Shutting down API server...")


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    lifespan=lifespan
)
app.include_router(api_router, prefix="/v1")


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    log.error("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": {"error": "StoreUnavailable", "message": str(exc)}})


@app.exception_handler(RunConflict)
async def run_conflict_handler(request: Request, exc: RunConflict):
    return JSONResponse(status_code=409, content={"detail": {"error": "RunConflict", "message": str(exc)}})
