"""Celery application configuration."""

from celery import Celery
from kombu import Queue

from src.config import get_settings
from src.queue.policy import LANES, build_lane_policies

settings = get_settings()
policies = build_lane_policies(settings)

celery_app = Celery(
    "smartdemo",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["src.tasks.pipeline_tasks"],
)

# One durable queue per lane; workers are started per lane with -Q <lane>
celery_app.conf.task_queues = [Queue(lane, durable=True) for lane in LANES]
celery_app.conf.task_default_queue = "transform"
celery_app.conf.task_routes = {
    "src.tasks.pipeline_tasks.run_transform_job": {"queue": "transform"},
    "src.tasks.pipeline_tasks.run_voice_job": {"queue": "voice"},
    "src.tasks.pipeline_tasks.run_export_job": {"queue": "export"},
    "src.tasks.pipeline_tasks.cleanup_jobs": {"queue": "transform"},
}

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Lane deadlines are enforced inside the attempt; the hard limit only
    # catches a wedged worker process.
    task_time_limit=int(max(p.timeout_s for p in policies.values())) + 300,
    worker_prefetch_multiplier=1,  # Process one task at a time per slot
    task_acks_late=True,  # Acknowledge after task completion
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    result_expires=settings.job_retention_hours * 3600,
    beat_schedule={
        "cleanup-jobs-hourly": {
            "task": "src.tasks.pipeline_tasks.cleanup_jobs",
            "schedule": 3600.0,
        },
    },
)
