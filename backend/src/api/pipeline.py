"""Pipeline API endpoints: enqueue work, poll jobs, browse exports."""

import logging

from fastapi import APIRouter, Query, status

from src.api.deps import PipelineServiceDep
from src.schemas.export import ExportEstimate, ExportRequest
from src.schemas.job import (
    EnqueueResponse,
    JobStatusResponse,
    QueueStats,
    TransformRequest,
    VoiceRequest,
)
from src.services.recording_store import require_recording

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/recordings/{recording_id}/process",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_recording(
    recording_id: str,
    service: PipelineServiceDep,
    body: TransformRequest | None = None,
) -> EnqueueResponse:
    """Queue thumbnail, audio extraction and duration probing for a recording.

    The source URL defaults to the recording's original video.
    """
    body = body or TransformRequest()
    source_url = body.source_url
    if source_url is None:
        recording = await require_recording(service.recordings, recording_id)
        source_url = recording.original_video_url
    job_id = await service.enqueue_transform(recording_id, source_url, body.events)
    return EnqueueResponse(job_id=job_id, lane="transform")


@router.post(
    "/recordings/{recording_id}/voice",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_voice(
    recording_id: str,
    service: PipelineServiceDep,
    body: VoiceRequest | None = None,
) -> EnqueueResponse:
    """Queue speech synthesis. Without segments the recording's script is used."""
    segments = body.segments if body else None
    if segments is None:
        recording = await require_recording(service.recordings, recording_id)
        segments = recording.script.segments
    job_id = await service.enqueue_voice(recording_id, segments)
    return EnqueueResponse(job_id=job_id, lane="voice")


@router.post(
    "/recordings/{recording_id}/export",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def export_recording(
    recording_id: str,
    body: ExportRequest,
    service: PipelineServiceDep,
) -> EnqueueResponse:
    job_id = await service.enqueue_export(recording_id, body.format, body.options)
    return EnqueueResponse(job_id=job_id, lane="export")


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, service: PipelineServiceDep) -> JobStatusResponse:
    job = await service.get_job(job_id)
    return JobStatusResponse.from_job(job)


@router.post("/jobs/{job_id}/retry", response_model=JobStatusResponse)
async def retry_job(job_id: str, service: PipelineServiceDep) -> JobStatusResponse:
    """Move a failed job back to waiting."""
    job = await service.retry_job(job_id)
    return JobStatusResponse.from_job(job)


@router.get("/exports/{job_id}", response_model=JobStatusResponse)
async def get_export_status(job_id: str, service: PipelineServiceDep) -> JobStatusResponse:
    job = await service.get_export_job(job_id)
    return JobStatusResponse.from_job(job)


@router.get("/recordings/{recording_id}/exports", response_model=list[JobStatusResponse])
async def list_exports(recording_id: str, service: PipelineServiceDep) -> list[JobStatusResponse]:
    jobs = await service.list_exports(recording_id)
    return [JobStatusResponse.from_job(job) for job in jobs]


@router.get("/recordings/{recording_id}/export-estimate", response_model=ExportEstimate)
async def estimate_export(
    recording_id: str,
    service: PipelineServiceDep,
    format: str = Query("mp4"),
) -> ExportEstimate:
    seconds = await service.estimate_export(recording_id, format)
    return ExportEstimate(format=format.lower(), estimated_seconds=seconds)


@router.get("/stats", response_model=dict[str, QueueStats])
async def queue_stats(service: PipelineServiceDep) -> dict[str, QueueStats]:
    return await service.queue_stats()


@router.get("/voices")
async def list_voices(service: PipelineServiceDep, refresh: bool = False) -> list[dict]:
    voices = await service.list_voices(refresh=refresh)
    return [voice.to_dict() for voice in voices]
