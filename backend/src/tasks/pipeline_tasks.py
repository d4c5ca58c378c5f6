"""Celery tasks: one per lane plus periodic cleanup.

Each task delivers a job id to ``JobQueue.run_attempt``. Retries, backoff
and deadlines are decided by the queue, which re-dispatches through the
broker with a countdown; Celery's own retry is only used when the job
store itself cannot be reached.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.bootstrap import Pipeline, build_pipeline
from src.celery_app import celery_app
from src.config import get_settings
from src.exceptions import BrokerUnavailableError
from src.schemas.job import JobView
from src.utils.log import configure_logging

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def _run(work: Callable[[Pipeline], Awaitable[Any]], lanes: tuple[str, ...] | None = None) -> Any:
    """Build a worker pipeline on a fresh event loop, run ``work``, tear down."""

    async def main() -> Any:
        pipeline = build_pipeline(settings, role="worker", lanes=lanes)
        await pipeline.start()
        try:
            return await work(pipeline)
        finally:
            await pipeline.shutdown()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(main())
    finally:
        loop.close()


def _summary(job: JobView | None) -> dict[str, Any]:
    if job is None:
        return {"status": "missing"}
    return {"jobId": job.id, "state": job.state, "attempts": job.attempts}


def _run_lane_attempt(task: Any, lane: str, job_id: str) -> dict[str, Any]:
    try:
        job = _run(lambda p: p.queue.run_attempt(job_id), lanes=(lane,))
    except BrokerUnavailableError as e:
        logger.warning(f"Job store unavailable for {lane} job {job_id}: {e}")
        raise task.retry(exc=e)
    return _summary(job)


@celery_app.task(bind=True, max_retries=5, default_retry_delay=10)
def run_transform_job(self, job_id: str) -> dict:
    """Run one attempt of a transform job."""
    return _run_lane_attempt(self, "transform", job_id)


@celery_app.task(bind=True, max_retries=5, default_retry_delay=10)
def run_voice_job(self, job_id: str) -> dict:
    """Run one attempt of a voice job."""
    return _run_lane_attempt(self, "voice", job_id)


@celery_app.task(bind=True, max_retries=5, default_retry_delay=10)
def run_export_job(self, job_id: str) -> dict:
    """Run one attempt of an export job."""
    return _run_lane_attempt(self, "export", job_id)


@celery_app.task
def cleanup_jobs() -> dict:
    """Prune terminal jobs past retention (scheduled hourly by beat)."""
    removed = _run(lambda p: p.service.cleanup(), lanes=())
    return {"removed": removed}
