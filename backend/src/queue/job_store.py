"""Job record persistence.

Two implementations share the ``JobStore`` protocol:

- ``RedisJobStore``: one hash per job plus one sorted set per lane/state,
  shared between the API process and the Celery workers.
- ``MemoryJobStore``: dict-backed, single process (local queue backend, tests).

Sorted set scores are epoch seconds of the timestamp that matters for the
state (created for waiting, started for active, finished for terminal), so
retention pruning can walk them oldest first.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from src.exceptions import BrokerUnavailableError
from src.schemas.job import JobView

logger = logging.getLogger(__name__)

JOB_STATES: tuple[str, ...] = ("waiting", "active", "completed", "failed")


def _score(job: JobView) -> float:
    ts: datetime | None
    if job.state in ("completed", "failed"):
        ts = job.finished_at
    elif job.state == "active":
        ts = job.started_at
    else:
        ts = None
    return (ts or job.created_at).timestamp()


class JobStore(Protocol):
    async def create(self, job: JobView) -> None: ...

    async def get(self, job_id: str) -> JobView | None: ...

    async def save(self, job: JobView) -> None: ...

    async def update_progress(self, job_id: str, progress: int, status: str | None = None) -> None: ...

    async def count(self, lane: str, state: str) -> int: ...

    async def list_ids(self, lane: str, state: str) -> list[str]: ...

    async def delete(self, job_id: str) -> None: ...

    async def close(self) -> None: ...


class MemoryJobStore:
    """In-process job store. Returns copies so callers never share state."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobView] = {}

    async def create(self, job: JobView) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get(self, job_id: str) -> JobView | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def save(self, job: JobView) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def update_progress(self, job_id: str, progress: int, status: str | None = None) -> None:
        job = self._jobs.get(job_id)
        # Progress only applies to a running attempt
        if job is None or job.state != "active":
            return
        job.progress = progress
        if status is not None:
            job.status = status

    async def count(self, lane: str, state: str) -> int:
        return sum(1 for j in self._jobs.values() if j.lane == lane and j.state == state)

    async def list_ids(self, lane: str, state: str) -> list[str]:
        jobs = [j for j in self._jobs.values() if j.lane == lane and j.state == state]
        jobs.sort(key=_score)
        return [j.id for j in jobs]

    async def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def close(self) -> None:
        pass


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    """Map Redis failures to BrokerUnavailableError."""
    try:
        yield
    except RedisError as e:
        logger.error(f"Job store {operation} failed: {e}")
        raise BrokerUnavailableError(f"Job store unavailable during {operation}: {e}") from e


class RedisJobStore:
    """Redis-backed job store.

    Keys:
        <prefix>:job:<id>              hash {data, lane, state, progress, status}
        <prefix>:<lane>:<state>        sorted set of job ids
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "smartdemo:jobs"):
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "smartdemo:jobs") -> "RedisJobStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix=prefix)

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _index_key(self, lane: str, state: str) -> str:
        return f"{self._prefix}:{lane}:{state}"

    async def create(self, job: JobView) -> None:
        await self.save(job)

    async def get(self, job_id: str) -> JobView | None:
        with _redis_errors("get"):
            fields = await self._redis.hgetall(self._job_key(job_id))
        if not fields or "data" not in fields:
            return None
        job = JobView.model_validate_json(fields["data"])
        # Progress is written separately by running attempts
        if job.state == "active" and fields.get("progress") is not None:
            job.progress = int(fields["progress"])
            job.status = fields.get("status") or job.status
        return job

    async def save(self, job: JobView) -> None:
        key = self._job_key(job.id)
        with _redis_errors("save"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "data": job.model_dump_json(),
                        "lane": job.lane,
                        "state": job.state,
                        "progress": job.progress,
                        "status": job.status or "",
                    },
                )
                for state in JOB_STATES:
                    if state != job.state:
                        pipe.zrem(self._index_key(job.lane, state), job.id)
                pipe.zadd(self._index_key(job.lane, job.state), {job.id: _score(job)})
                await pipe.execute()

    async def update_progress(self, job_id: str, progress: int, status: str | None = None) -> None:
        key = self._job_key(job_id)
        mapping: dict[str, str | int] = {"progress": progress}
        if status is not None:
            mapping["status"] = status
        with _redis_errors("update_progress"):
            state = await self._redis.hget(key, "state")
            if state != "active":
                return
            await self._redis.hset(key, mapping=mapping)

    async def count(self, lane: str, state: str) -> int:
        with _redis_errors("count"):
            return int(await self._redis.zcard(self._index_key(lane, state)))

    async def list_ids(self, lane: str, state: str) -> list[str]:
        with _redis_errors("list"):
            return list(await self._redis.zrange(self._index_key(lane, state), 0, -1))

    async def delete(self, job_id: str) -> None:
        key = self._job_key(job_id)
        with _redis_errors("delete"):
            lane = await self._redis.hget(key, "lane")
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if lane:
                    for state in JOB_STATES:
                        pipe.zrem(self._index_key(lane, state), job_id)
                await pipe.execute()

    async def close(self) -> None:
        await self._redis.aclose()
