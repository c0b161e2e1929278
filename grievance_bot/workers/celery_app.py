"""
Celery Application Configuration
"""
from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger

from grievance_bot.core.config import settings
from grievance_bot.core.logging import add_phone_masking

celery_app = Celery(
    "grievance_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["grievance_bot.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    # Sessions left in AI_PROCESSING by a crashed or lost job
    "recover-stuck-ai-sessions-every-minute": {
        "task": "grievance_bot.workers.tasks.recover_stuck_ai_sessions",
        "schedule": 60.0,
    },
}


@after_setup_logger.connect
@after_setup_task_logger.connect
def mask_worker_logs(logger, **kwargs):
    """Worker logs carry citizen phone numbers too"""
    add_phone_masking(logger)
