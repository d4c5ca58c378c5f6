"""Composition root.

``build_pipeline`` wires every component explicitly; nothing about the
queue or broker is created at import time. Lifecycle:

    pipeline = build_pipeline(settings, role="api")
    await pipeline.start()      # brokers consume, relays listen
    ...
    await pipeline.shutdown()   # drain in-flight attempts, close clients

Roles:
    api     FastAPI process. With the Celery backend it only enqueues and
            relays worker progress from Redis into the local hub; with the
            local backend it also runs the lane workers in-process.
    worker  Celery worker process. Runs attempts and publishes progress
            to Redis.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from redis import asyncio as aioredis

from src.config import Settings, get_settings
from src.models.database import build_engine, build_session_maker, init_db
from src.queue.dispatchers import CeleryDispatcher, LocalDispatcher
from src.queue.job_queue import JobQueue
from src.queue.job_store import MemoryJobStore, RedisJobStore
from src.queue.policy import LANES, LanePolicy, build_lane_policies
from src.render.engine import MediaTransformEngine
from src.render.ffmpeg import FFmpegRunner
from src.schemas.job import JobView
from src.schemas.recording import RecordingUpdate
from src.services.pipeline_service import PipelineService
from src.services.pipeline_worker import PipelineWorker
from src.services.progress import ChannelProgressSink, ProgressSink, RecordingProgressSink
from src.services.progress_hub import (
    EXPORT_EVENT,
    PROCESSING_EVENT,
    ProgressHub,
    export_channel,
    processing_channel,
)
from src.services.progress_relay import RedisProgressPublisher, RedisProgressRelay
from src.services.recording_store import MemoryRecordingStore, RecordingStore, SqlRecordingStore
from src.services.speech_service import ElevenLabsSpeechService
from src.services.storage_service import create_storage_service

logger = logging.getLogger(__name__)

Role = Literal["api", "worker"]


def channel_for(job: JobView) -> tuple[str, str, str, str]:
    """(channel, event, id field, id value) for a job's progress messages."""
    if job.lane == "export":
        return export_channel(job.id), EXPORT_EVENT, "jobId", job.id
    return processing_channel(job.recording_id), PROCESSING_EVENT, "recordingId", job.recording_id


def build_sink_factory(
    recordings: RecordingStore,
    hub: ProgressHub | None = None,
    redis_client: aioredis.Redis | None = None,
    pubsub_channel: str = "smartdemo:progress",
) -> Callable[[JobView], list[ProgressSink]]:
    def factory(job: JobView) -> list[ProgressSink]:
        channel, event, key, value = channel_for(job)
        sinks: list[ProgressSink] = []
        if hub is not None:
            sinks.append(ChannelProgressSink(hub, channel, event, key, value))
        if redis_client is not None:
            sinks.append(RedisProgressPublisher(redis_client, pubsub_channel, channel, event, key, value))
        if job.lane == "transform":
            sinks.append(RecordingProgressSink(recordings, job.recording_id))
        return sinks

    return factory


def build_failure_hook(recordings: RecordingStore) -> Callable[[JobView], Awaitable[None]]:
    """Copy a failed transform job's error verbatim onto its recording."""

    async def on_failure(job: JobView) -> None:
        if job.lane != "transform":
            return
        await recordings.update(
            job.recording_id,
            RecordingUpdate(processing_status="failed", error_message=job.error),
        )

    return on_failure


@dataclass
class Pipeline:
    """Assembled pipeline components with an explicit lifecycle."""

    settings: Settings
    role: Role
    queue: JobQueue
    service: PipelineService
    engine: MediaTransformEngine
    hub: ProgressHub
    recordings: RecordingStore
    storage: Any
    speech: Any
    relay: RedisProgressRelay | None = None
    _startup: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)
    _closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)
    _started: bool = False

    async def start(self) -> None:
        if self._started:
            return
        for hook in self._startup:
            await hook()
        if self.relay is not None:
            await self.relay.start()
        await self.queue.start()
        self._started = True
        logger.info(f"Pipeline started (role={self.role}, backend={self.settings.queue_backend})")

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        if self.relay is not None:
            await self.relay.shutdown()
        for close in reversed(self._closers):
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error during pipeline shutdown: {e}")
        self._started = False
        logger.info("Pipeline stopped")


def build_pipeline(
    settings: Settings | None = None,
    *,
    role: Role = "api",
    lanes: tuple[str, ...] | None = None,
    policies: dict[str, LanePolicy] | None = None,
    recordings: RecordingStore | None = None,
    runner: FFmpegRunner | None = None,
    http_client: httpx.AsyncClient | None = None,
    speech: Any = None,
    hub: ProgressHub | None = None,
) -> Pipeline:
    """Assemble the pipeline for a process role.

    Keyword overrides replace the corresponding component (tests, tools).
    """
    settings = settings or get_settings()
    policies = policies or build_lane_policies(settings)
    hub = hub or ProgressHub(send_timeout_s=settings.progress_send_timeout_s)
    startup: list[Callable[[], Awaitable[Any]]] = []
    closers: list[Callable[[], Awaitable[Any]]] = []

    # Shared Redis client (job store, progress relay)
    uses_celery = settings.queue_backend == "celery"
    redis_client: aioredis.Redis | None = None
    if settings.job_store == "redis" or uses_celery:
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        closers.append(redis_client.aclose)

    # Recordings
    if recordings is None:
        if settings.recording_store == "memory":
            recordings = MemoryRecordingStore()
        else:
            db_engine = build_engine(settings, worker=role == "worker")
            recordings = SqlRecordingStore(build_session_maker(db_engine))
            if role == "api":
                startup.append(lambda: init_db(db_engine))
            closers.append(db_engine.dispose)

    # Job store and broker
    if settings.job_store == "redis":
        store = RedisJobStore(redis_client, prefix=settings.job_key_prefix)
    else:
        store = MemoryJobStore()

    if uses_celery:
        from src.celery_app import celery_app

        dispatcher = CeleryDispatcher(celery_app)
    else:
        dispatcher = LocalDispatcher(drain_timeout_s=settings.shutdown_drain_timeout_s)

    # Progress: in-process hub when attempts run here and clients connect
    # here; Redis pub/sub when attempts run in Celery workers.
    runs_attempts = role == "worker" or not uses_celery
    sink_factory = build_sink_factory(
        recordings,
        hub=hub if role == "api" else None,
        redis_client=redis_client if role == "worker" else None,
        pubsub_channel=settings.progress_channel,
    )
    queue = JobQueue(
        store,
        dispatcher,
        policies,
        retention_hours=settings.job_retention_hours,
        sink_factory=sink_factory,
        on_failure=build_failure_hook(recordings),
    )

    # Engine and external adapters
    storage = create_storage_service(settings, http_client)
    if speech is None:
        speech = ElevenLabsSpeechService(settings)
        closers.append(speech.close)
    runner = runner or FFmpegRunner(settings.ffmpeg_path, settings.ffprobe_path)
    engine = MediaTransformEngine(storage, recordings, speech, runner, settings)

    if runs_attempts:
        PipelineWorker(engine).register(queue, LANES if lanes is None else lanes)

    relay = None
    if role == "api" and uses_celery and redis_client is not None:
        relay = RedisProgressRelay(redis_client, settings.progress_channel, hub)

    service = PipelineService(queue, recordings, speech)
    return Pipeline(
        settings=settings,
        role=role,
        queue=queue,
        service=service,
        engine=engine,
        hub=hub,
        recordings=recordings,
        storage=storage,
        speech=speech,
        relay=relay,
        _startup=startup,
        _closers=closers,
    )
