"""Brokers that hand job ids to workers.

A dispatcher only moves job ids; job state lives in the job store and every
attempt runs through ``JobQueue.run_attempt`` regardless of the broker.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from src.exceptions import BrokerUnavailableError
from src.queue.policy import LANES

logger = logging.getLogger(__name__)

AttemptRunner = Callable[[str], Awaitable[Any]]

# Celery task names, one per lane (see src.tasks.pipeline_tasks)
LANE_TASKS: dict[str, str] = {
    "transform": "src.tasks.pipeline_tasks.run_transform_job",
    "voice": "src.tasks.pipeline_tasks.run_voice_job",
    "export": "src.tasks.pipeline_tasks.run_export_job",
}


class Dispatcher(Protocol):
    async def dispatch(self, lane: str, job_id: str, delay_s: float = 0.0) -> None: ...

    async def start(self, runner: AttemptRunner, concurrency: dict[str, int]) -> None: ...

    async def shutdown(self) -> None: ...


class CeleryDispatcher:
    """Sends job ids to the per-lane Celery queues.

    Workers are separate processes started with ``-Q <lane>``; ``start`` and
    ``shutdown`` are no-ops on the API side.
    """

    def __init__(self, celery_app: Any):
        self._app = celery_app

    async def dispatch(self, lane: str, job_id: str, delay_s: float = 0.0) -> None:
        kwargs: dict[str, Any] = {"args": [job_id], "queue": lane}
        if delay_s > 0:
            kwargs["countdown"] = delay_s
        try:
            # send_task talks to the broker synchronously
            await asyncio.to_thread(self._app.send_task, LANE_TASKS[lane], **kwargs)
        except Exception as e:
            logger.error(f"Failed to dispatch job {job_id} to lane {lane}: {e}")
            raise BrokerUnavailableError(f"Broker rejected job {job_id}: {e}") from e
        logger.debug(f"Dispatched job {job_id} to {lane} (delay={delay_s}s)")

    async def start(self, runner: AttemptRunner, concurrency: dict[str, int]) -> None:
        pass

    async def shutdown(self) -> None:
        pass


class LocalDispatcher:
    """In-process asyncio broker.

    Each lane gets an ``asyncio.Queue`` drained by ``concurrency`` worker
    tasks, so at most that many attempts of the lane run at once. Delayed
    re-dispatch uses scheduled tasks that are cancelled on shutdown.
    """

    def __init__(self, drain_timeout_s: float = 30.0):
        self._queues: dict[str, asyncio.Queue[str]] = {lane: asyncio.Queue() for lane in LANES}
        self._workers: list[asyncio.Task] = []
        self._delayed: set[asyncio.Task] = set()
        self._inflight: set[asyncio.Task] = set()
        self._drain_timeout_s = drain_timeout_s
        self._running = False
        self._closing = False

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def dispatch(self, lane: str, job_id: str, delay_s: float = 0.0) -> None:
        if self._closing:
            raise BrokerUnavailableError("Local broker is shutting down")
        if delay_s > 0:
            task = asyncio.create_task(self._dispatch_later(lane, job_id, delay_s))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return
        self._queues[lane].put_nowait(job_id)

    async def _dispatch_later(self, lane: str, job_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if not self._closing:
            self._queues[lane].put_nowait(job_id)

    async def start(self, runner: AttemptRunner, concurrency: dict[str, int]) -> None:
        if self._running:
            return
        self._running = True
        for lane in LANES:
            for slot in range(concurrency.get(lane, 1)):
                self._workers.append(
                    asyncio.create_task(self._worker(lane, runner), name=f"{lane}-worker-{slot}")
                )
        logger.info(f"Local broker started: {concurrency}")

    async def _worker(self, lane: str, runner: AttemptRunner) -> None:
        queue = self._queues[lane]
        while True:
            job_id = await queue.get()
            try:
                if self._closing:
                    logger.warning(f"Broker closing, job {job_id} left waiting")
                    continue
                task = asyncio.create_task(runner(job_id))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                try:
                    await task
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Attempt runner crashed for job {job_id}: {e}")
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued and delayed job has been processed."""
        while True:
            for queue in self._queues.values():
                await queue.join()
            idle = all(q.empty() for q in self._queues.values())
            if idle and not self._delayed and not self._inflight:
                return
            if self._delayed:
                await asyncio.wait(set(self._delayed))
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Stop accepting work, wait for in-flight attempts, cancel the rest."""
        self._closing = True
        for task in list(self._delayed):
            task.cancel()
        if self._inflight:
            done, pending = await asyncio.wait(set(self._inflight), timeout=self._drain_timeout_s)
            if pending:
                logger.warning(f"Cancelling {len(pending)} attempts still running after drain timeout")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, *self._delayed, return_exceptions=True)
        self._workers.clear()
        self._running = False
        logger.info("Local broker stopped")
