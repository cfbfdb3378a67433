from celery import Celery, signals
from app.core.config import settings
from app.core.logging import configure_logging

celery_app = Celery("photo_migration", broker=settings.redis_url, backend=settings.redis_url, include=["app.tasks.migration"])
celery_app.conf.update(task_track_started=True, result_expires=3600, broker_connection_retry_on_startup=True, worker_prefetch_multiplier=1,)

@signals.setup_logging.connect
def _setup_logging(**kwargs):
    configure_logging()
