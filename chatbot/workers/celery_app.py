"""
Celery Application Configuration
"""
from celery import Celery

from chatbot.core.config import settings

celery_app = Celery(
    "chatbot_pipeline",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["chatbot.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SITE_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # מחיקת שיחות שעברו את תקופת השמירה (רק כש-DATA_RETENTION_ENABLED)
    "cleanup-old-conversations-daily": {
        "task": "chatbot.workers.tasks.cleanup_old_conversations",
        "schedule": 86400.0,  # 24 hours
    },
}
