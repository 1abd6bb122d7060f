"""
Celery Application Configuration
"""
from celery import Celery

from fulfillment.core.config import settings

celery_app = Celery(
    "fulfillment",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["fulfillment.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-outbox-every-10-seconds": {
        "task": "fulfillment.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    # claim שנתקע (worker שקרס באמצע עיבוד) עובר ל-FAILED כדי שלא יישאר CLAIMED לנצח
    "fail-stale-claims-every-minute": {
        "task": "fulfillment.workers.tasks.fail_stale_claims",
        "schedule": 60.0,
    },
    "cleanup-sent-outbox-daily": {
        "task": "fulfillment.workers.tasks.cleanup_sent_outbox_messages",
        "schedule": 86400.0,  # 24 hours
    },
}
