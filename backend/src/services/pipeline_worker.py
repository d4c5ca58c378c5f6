"""Lane handlers: connect queued jobs to the transform engine."""

import logging
from typing import Any

from src.queue.job_queue import JobQueue
from src.render.engine import MediaTransformEngine
from src.schemas.job import ExportPayload, JobView, TransformPayload, VoicePayload
from src.services.progress import ProgressReporter

logger = logging.getLogger(__name__)


class PipelineWorker:
    """Runs one job attempt per call; retries and deadlines belong to the queue."""

    def __init__(self, engine: MediaTransformEngine):
        self.engine = engine

    async def handle_transform(self, job: JobView, progress: ProgressReporter) -> dict[str, Any]:
        payload: TransformPayload = job.payload
        logger.info(f"Processing recording {payload.recording_id} (job {job.id})")
        return await self.engine.process_recording(payload.recording_id, payload.source_url, progress)

    async def handle_voice(self, job: JobView, progress: ProgressReporter) -> dict[str, Any]:
        payload: VoicePayload = job.payload
        logger.info(f"Generating audio for {len(payload.segments)} segments of {payload.recording_id} (job {job.id})")
        return await self.engine.synthesize_segments(payload.recording_id, payload.segments, progress)

    async def handle_export(self, job: JobView, progress: ProgressReporter) -> dict[str, Any]:
        payload: ExportPayload = job.payload
        logger.info(f"Exporting recording {payload.recording_id} as {payload.format} (job {job.id})")
        result = await self.engine.export_recording(
            payload.recording_id,
            payload.format,
            payload.options,
            progress,
            job_id=job.id,
        )
        return result.model_dump(by_alias=True)

    def register(self, queue: JobQueue, lanes: tuple[str, ...] | None = None) -> None:
        """Subscribe handlers for ``lanes`` (all lanes by default)."""
        handlers = {
            "transform": self.handle_transform,
            "voice": self.handle_voice,
            "export": self.handle_export,
        }
        for lane in tuple(handlers) if lanes is None else lanes:
            queue.subscribe(lane, handlers[lane])
