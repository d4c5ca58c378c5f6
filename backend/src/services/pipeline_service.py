"""Pipeline façade: the only entry point the rest of the application uses.

Enqueue calls return as soon as the job queue accepts the job; execution
is always asynchronous. Only the presence of required fields is checked
here. Format support, resolution and time windows are validated by the
engine when the job runs, and worker-side failures surface through job
status and the recording's ``processingStatus``/``errorMessage``.
"""

import logging
from typing import Any

from src.exceptions import JobNotFoundError, MissingRequiredFieldError
from src.queue.job_queue import JobQueue
from src.render.encode_profiles import estimate_export_seconds
from src.schemas.export import ExportOptions
from src.schemas.job import ExportPayload, JobView, QueueStats, TransformPayload, VoicePayload
from src.schemas.recording import ScriptSegment
from src.services.recording_store import RecordingStore, require_recording

logger = logging.getLogger(__name__)


def _require(value: Any, field: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingRequiredFieldError(field)


class PipelineService:
    def __init__(self, queue: JobQueue, recordings: RecordingStore, speech: Any = None):
        self.queue = queue
        self.recordings = recordings
        self.speech = speech

    async def enqueue_transform(
        self,
        recording_id: str,
        source_url: str,
        events: list[dict[str, Any]] | None = None,
    ) -> str:
        _require(recording_id, "recordingId")
        _require(source_url, "sourceUrl")
        payload = TransformPayload(recording_id=recording_id, source_url=source_url, events=events or [])
        return await self.queue.enqueue("transform", payload)

    async def enqueue_voice(self, recording_id: str, segments: list[ScriptSegment]) -> str:
        _require(recording_id, "recordingId")
        _require(segments, "segments")
        payload = VoicePayload(recording_id=recording_id, segments=segments)
        return await self.queue.enqueue("voice", payload)

    async def enqueue_export(
        self,
        recording_id: str,
        fmt: str,
        options: ExportOptions | None = None,
    ) -> str:
        _require(recording_id, "recordingId")
        _require(fmt, "format")
        payload = ExportPayload(recording_id=recording_id, format=fmt, options=options or ExportOptions())
        return await self.queue.enqueue("export", payload)

    async def get_job(self, job_id: str) -> JobView:
        return await self.queue.require_job(job_id)

    async def get_export_job(self, job_id: str) -> JobView:
        job = await self.queue.get_job(job_id)
        if job is None or job.lane != "export":
            raise JobNotFoundError(job_id)
        return job

    async def queue_stats(self) -> dict[str, QueueStats]:
        return await self.queue.all_stats()

    async def retry_job(self, job_id: str) -> JobView:
        return await self.queue.retry_job(job_id)

    async def list_exports(self, recording_id: str) -> list[JobView]:
        """Completed exports of a recording, newest first."""
        jobs = await self.queue.list_jobs("export", "completed")
        exports = [j for j in jobs if j.recording_id == recording_id]
        exports.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)
        return exports

    async def estimate_export(self, recording_id: str, fmt: str) -> int:
        """Estimated export time in seconds for a recording."""
        _require(fmt, "format")
        recording = await require_recording(self.recordings, recording_id)
        return estimate_export_seconds(fmt, recording.duration)

    async def list_voices(self, refresh: bool = False) -> list:
        if self.speech is None:
            return []
        return await self.speech.list_voices(refresh=refresh)

    async def cleanup(self) -> int:
        return await self.queue.prune()
