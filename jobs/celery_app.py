from datetime import timedelta

from celery import Celery
from kombu import Queue

from core.config import CleanupSettings
from core.env import env_str

CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "default") or "default"
CELERY_BROKER_URL = env_str("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

_cleanup_settings = CleanupSettings.load()

app = Celery(
    "deaddrop",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["jobs.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    task_routes={},
    beat_schedule={
        "cleanup-expired-resources": {
            "task": "jobs.tasks.cleanup_expired_resources",
            "schedule": timedelta(minutes=_cleanup_settings.interval_minutes),
        },
    },
)
app.conf.enable_utc = str(CELERY_TIMEZONE).upper() == "UTC"
