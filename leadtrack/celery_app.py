from celery import Celery
from celery.schedules import crontab

from leadtrack.config import load_settings
# Pre-load all models to populate SQLAlchemy registry for worker
from leadtrack.database.models import crm, general  # noqa: F401

settings = load_settings()

celery_app = Celery(
    "leadtrack_worker",
    broker=settings.redis_url,
    backend=settings.redis_url
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.timezone or "UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)

# Explicitly import the module containing tasks
celery_app.conf.update(include=["leadtrack.services.compliance_tasks"])

celery_app.conf.beat_schedule = {
    "sweep-cold-violations": {
        "task": "leadtrack.sweep_cold_violations",
        "schedule": crontab(hour=23, minute=30),
    },
}
