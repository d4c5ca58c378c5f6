"""Job queue with three independent lanes.

The queue owns the job state machine; brokers only deliver ids. Every
attempt, whether delivered by Celery or by the local broker, runs through
``run_attempt``:

    waiting -> active -> completed
                      -> waiting (retry after backoff, attempts < max)
                      -> failed  (attempts exhausted, or deadline exceeded)
    failed  -> waiting (manual retry)

A redelivered job that is still active inside its deadline is re-dispatched
and checked again after the deadline instead of being run twice.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from src.exceptions import (
    JobNotFoundError,
    JobTimeoutError,
    PipelineError,
    ValidationError,
)
from src.queue.dispatchers import Dispatcher
from src.queue.job_store import JobStore
from src.queue.policy import LANES, LanePolicy
from src.schemas.job import (
    LANE_PAYLOAD_TYPES,
    JobPayload,
    JobView,
    QueueStats,
    payload_adapter,
    utcnow,
)
from src.services.progress import JobProgressSink, ProgressReporter, ProgressSink

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView, ProgressReporter], Awaitable[dict[str, Any] | None]]
SinkFactory = Callable[[JobView], list[ProgressSink]]
FailureHook = Callable[[JobView], Awaitable[None]]

# Margin added to the remaining deadline before re-checking a redelivered active job
REDELIVERY_MARGIN_S = 1.0


class JobQueue:
    """Lane-aware job queue.

    Args:
        store: Job record persistence
        dispatcher: Broker delivering job ids to workers
        policies: Lane policies keyed by lane name
        retention_hours: Age after which terminal jobs are pruned
        sink_factory: Extra progress sinks per job (live channels, relays)
        on_failure: Called once a job reaches ``failed`` (entity write-back)
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        policies: dict[str, LanePolicy],
        retention_hours: int = 24,
        sink_factory: SinkFactory | None = None,
        on_failure: FailureHook | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.policies = policies
        self.retention = timedelta(hours=retention_hours)
        self._sink_factory = sink_factory
        self._on_failure = on_failure
        self._handlers: dict[str, JobHandler] = {}
        self._concurrency: dict[str, int] = {lane: p.concurrency for lane, p in policies.items()}
        self._started = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, lane: str, payload: JobPayload | dict[str, Any]) -> str:
        """Persist a waiting job and hand it to the broker.

        Raises:
            ValidationError: Unknown lane or payload that does not belong to it
            BrokerUnavailableError: Job store or broker unreachable
        """
        policy = self._policy(lane)
        if isinstance(payload, dict):
            try:
                payload = payload_adapter.validate_python(payload)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid {lane} payload: {e}") from e
        if payload.type != LANE_PAYLOAD_TYPES[lane]:
            raise ValidationError(f"Payload type '{payload.type}' does not belong to lane '{lane}'")

        job = JobView(
            lane=lane,
            type=payload.type,
            payload=payload,
            max_attempts=policy.max_attempts,
        )
        await self.store.create(job)
        await self.dispatcher.dispatch(lane, job.id)
        logger.info(f"Enqueued {job.type} job {job.id} on {lane} for recording {job.recording_id}")
        return job.id

    async def get_job(self, job_id: str) -> JobView | None:
        return await self.store.get(job_id)

    async def require_job(self, job_id: str) -> JobView:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def stats(self, lane: str) -> QueueStats:
        """Point-in-time counts for one lane."""
        self._policy(lane)
        counts = {state: await self.store.count(lane, state) for state in QueueStats.model_fields}
        return QueueStats(**counts)

    async def all_stats(self) -> dict[str, QueueStats]:
        return {lane: await self.stats(lane) for lane in LANES}

    async def list_jobs(self, lane: str, state: str) -> list[JobView]:
        """Jobs of a lane in a state, oldest first."""
        jobs = []
        for job_id in await self.store.list_ids(lane, state):
            job = await self.store.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def retry_job(self, job_id: str) -> JobView:
        """Manually move a failed job back to waiting and re-dispatch it.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobTransitionError: Job is not failed
        """
        job = await self.require_job(job_id)
        job.transition_to("waiting")
        job.attempts = 0
        job.error = None
        job.result = None
        job.status = None
        job.started_at = None
        job.finished_at = None
        await self.store.save(job)
        await self.dispatcher.dispatch(job.lane, job.id)
        logger.info(f"Job {job_id} manually re-queued on {job.lane}")
        return job

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def subscribe(self, lane: str, handler: JobHandler, concurrency: int | None = None) -> None:
        """Register the handler for a lane.

        Args:
            lane: Lane name
            handler: Coroutine taking (job, progress) and returning the result
            concurrency: In-flight limit for this process (defaults to policy)
        """
        self._policy(lane)
        if self._started:
            raise RuntimeError("Handlers must be subscribed before start()")
        self._handlers[lane] = handler
        if concurrency is not None:
            if concurrency < 1:
                raise ValueError("concurrency must be >= 1")
            self._concurrency[lane] = concurrency

    async def start(self) -> None:
        """Start consuming subscribed lanes."""
        if self._started:
            return
        concurrency = {lane: n for lane, n in self._concurrency.items() if lane in self._handlers}
        await self.dispatcher.start(self.run_attempt, concurrency)
        self._started = True

    async def shutdown(self) -> None:
        """Drain in-flight attempts and stop the broker."""
        await self.dispatcher.shutdown()
        self._started = False

    async def run_attempt(self, job_id: str) -> JobView | None:
        """Run one attempt of a job and record its outcome."""
        job = await self.store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} vanished before its attempt started")
            return None
        policy = self._policy(job.lane)
        if job.state == "active":
            if self._is_stale(job, policy):
                # Worker died mid-attempt and the broker redelivered the id
                logger.warning(f"Recovering stale active job {job_id}")
                job.transition_to("waiting")
            else:
                # The attempt may still be running elsewhere or its worker died;
                # check again once its deadline has passed.
                delay = self._remaining_deadline(job, policy) + REDELIVERY_MARGIN_S
                logger.info(f"Job {job_id} is active, re-checking in {delay:.1f}s")
                await self.dispatcher.dispatch(job.lane, job.id, delay)
                return job
        if job.state != "waiting":
            # Duplicate delivery (acks_late redelivery, manual retry race)
            logger.info(f"Skipping job {job_id}: state is {job.state}")
            return job
        handler = self._handlers.get(job.lane)
        if handler is None:
            logger.error(f"No handler subscribed for lane {job.lane}; job {job_id} left waiting")
            return job

        job.transition_to("active")
        job.attempts += 1
        job.started_at = utcnow()
        job.status = "active"
        await self.store.save(job)
        logger.info(f"Job {job.id} ({job.type}) attempt {job.attempts}/{policy.max_attempts} started")

        sinks: list[ProgressSink] = [JobProgressSink(self.store, job.id)]
        if self._sink_factory is not None:
            sinks.extend(self._sink_factory(job))
        reporter = ProgressReporter(sinks, floor=job.progress)
        await reporter.report(job.progress, "active")

        try:
            result = await asyncio.wait_for(handler(job, reporter), timeout=policy.timeout_s)
        except asyncio.TimeoutError:
            error = JobTimeoutError(job.id, policy.timeout_s)
            logger.error(str(error))
            return await self._fail(job, error.message, reporter)
        except asyncio.CancelledError:
            # Worker shutdown: hand the job back without spending an attempt
            job = await self._current(job)
            job.transition_to("waiting")
            job.attempts = max(job.attempts - 1, 0)
            job.status = "interrupted"
            await self.store.save(job)
            logger.warning(f"Job {job.id} interrupted by shutdown, left waiting")
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if isinstance(e, PipelineError) and not e.retryable:
                logger.error(f"Job {job.id} failed with non-retryable {e.code}: {message}")
                return await self._fail(job, message, reporter)
            if job.attempts < policy.max_attempts:
                delay = policy.backoff_delay(job.attempts)
                logger.warning(
                    f"Job {job.id} attempt {job.attempts} failed: {message}. "
                    f"Retrying in {delay}s"
                )
                return await self._requeue(job, delay, message, reporter)
            logger.error(f"Job {job.id} failed after {job.attempts} attempts: {message}")
            return await self._fail(job, message, reporter)

        job = await self._current(job)
        job.transition_to("completed")
        job.result = result or {}
        job.progress = 100
        job.status = "completed"
        job.finished_at = utcnow()
        await self.store.save(job)
        await reporter.report(100, "completed")
        logger.info(f"Job {job.id} completed")
        return job

    async def _current(self, job: JobView) -> JobView:
        # Pick up progress/status written by sinks during the attempt
        stored = await self.store.get(job.id)
        return stored if stored is not None else job

    async def _requeue(self, job: JobView, delay: float, message: str, reporter: ProgressReporter) -> JobView:
        job = await self._current(job)
        job.transition_to("waiting")
        job.status = f"retrying: {message}"
        await self.store.save(job)
        await reporter.report(reporter.last, "retrying")
        await self.dispatcher.dispatch(job.lane, job.id, delay)
        return job

    async def _fail(self, job: JobView, message: str, reporter: ProgressReporter) -> JobView:
        job = await self._current(job)
        job.transition_to("failed")
        job.error = message
        job.status = "failed"
        job.finished_at = utcnow()
        await self.store.save(job)
        await reporter.report(reporter.last, "failed")
        if self._on_failure is not None:
            try:
                await self._on_failure(job)
            except Exception as e:
                logger.error(f"Failure hook for job {job.id} raised: {e}")
        return job

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def prune(self) -> int:
        """Drop terminal jobs past retention and beyond the per-lane keep counts.

        Returns:
            Number of jobs removed
        """
        cutoff = utcnow() - self.retention
        removed = 0
        for lane, policy in self.policies.items():
            for state, keep in (("completed", policy.keep_completed), ("failed", policy.keep_failed)):
                jobs = await self.list_jobs(lane, state)
                # Oldest first: everything past retention, then the overflow
                overflow = max(len(jobs) - keep, 0)
                for index, job in enumerate(jobs):
                    finished = job.finished_at or job.created_at
                    if index < overflow or finished < cutoff:
                        await self.store.delete(job.id)
                        removed += 1
        if removed:
            logger.info(f"Pruned {removed} terminal jobs")
        return removed

    @staticmethod
    def _is_stale(job: JobView, policy: LanePolicy) -> bool:
        if job.started_at is None:
            return True
        return utcnow() - job.started_at > timedelta(seconds=policy.timeout_s)

    @staticmethod
    def _remaining_deadline(job: JobView, policy: LanePolicy) -> float:
        deadline = job.started_at + timedelta(seconds=policy.timeout_s)
        return max((deadline - utcnow()).total_seconds(), 0.0)

    def _policy(self, lane: str) -> LanePolicy:
        policy = self.policies.get(lane)
        if policy is None:
            raise ValidationError(f"Unknown lane: {lane}")
        return policy
