"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute).
"""
from celery import Celery
from celery import signals

from rundown.celerybeat_schedule import beat_schedule
from rundown.core.config import settings, validate_settings

# Create Celery app instance
celery_app = Celery(
    "rundown",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes max per task
    task_soft_time_limit=8 * 60,  # 8 minutes soft limit
    beat_schedule=beat_schedule,
)


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    from rundown.core.logging import setup_logging

    setup_logging()


@signals.worker_init.connect
def _validate_worker_config(**kwargs):
    """Refuse to start a worker with missing secrets or an incomplete message bank."""
    from rundown.services.message_bank import validate_message_bank

    validate_settings(settings)
    validate_message_bank()


# Import tasks to register them
from . import accountability_tasks  # noqa: E402
from . import strava_tasks  # noqa: E402

__all__ = ["celery_app"]
