"""
Celery Application Configuration
"""
from celery import Celery

from jtd_pipeline.core.config import settings

celery_app = Celery(
    "jtd_pipeline",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["jtd_pipeline.workers.tasks"]
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
    "process-jtd-queue-every-5-seconds": {
        "task": "jtd_pipeline.workers.tasks.process_jtd_queue",
        "schedule": 5.0,
    },
    "promote-scheduled-jobs-every-30-seconds": {
        "task": "jtd_pipeline.workers.tasks.promote_scheduled_jobs",
        "schedule": 30.0,
    },
    # lost leases: worker died mid-delivery without reporting an outcome
    "recover-expired-leases-every-minute": {
        "task": "jtd_pipeline.workers.tasks.recover_expired_leases",
        "schedule": 60.0,
    },
}
