"""Recording persistence as seen by the pipeline.

Writes are field-scoped so the transform and voice lanes can run
concurrently against the same recording without overwriting each other:
transform writes only its derived fields, voice merges segment audio URLs
by segment id under a per-recording lock (memory) or row lock (SQL).
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.exceptions import RecordingNotFoundError
from src.models.recording import RecordingRow
from src.schemas.recording import Recording, RecordingUpdate, ScriptSegment

logger = logging.getLogger(__name__)


class RecordingStore(Protocol):
    async def get(self, recording_id: str) -> Recording | None: ...

    async def update(self, recording_id: str, changes: RecordingUpdate) -> None: ...

    async def merge_segment_audio(self, recording_id: str, segments: list[ScriptSegment]) -> list[ScriptSegment]: ...


async def require_recording(store: RecordingStore, recording_id: str) -> Recording:
    recording = await store.get(recording_id)
    if recording is None:
        raise RecordingNotFoundError(recording_id)
    return recording


def merge_segments(existing: list[dict[str, Any]], updates: list[ScriptSegment]) -> list[dict[str, Any]]:
    """Merge audio URLs into stored segment documents by id.

    Stored order is kept; segments not yet stored are appended in input order.
    Only ``audioUrl`` is taken from updates for segments that already exist.
    """
    merged = [dict(doc) for doc in existing]
    index = {doc.get("id"): doc for doc in merged}
    for segment in updates:
        doc = index.get(segment.id)
        if doc is None:
            doc = segment.model_dump(by_alias=True, exclude_none=True)
            merged.append(doc)
            index[segment.id] = doc
        elif segment.audio_url:
            doc["audioUrl"] = segment.audio_url
    return merged


class MemoryRecordingStore:
    """In-process recording store for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def add(self, recording: Recording) -> None:
        self._records[recording.id] = recording.model_dump(by_alias=True)

    async def get(self, recording_id: str) -> Recording | None:
        doc = self._records.get(recording_id)
        return Recording.model_validate(doc) if doc is not None else None

    async def update(self, recording_id: str, changes: RecordingUpdate) -> None:
        doc = self._records.get(recording_id)
        if doc is None:
            raise RecordingNotFoundError(recording_id)
        doc.update(changes.model_dump(by_alias=True, exclude_unset=True))

    async def merge_segment_audio(self, recording_id: str, segments: list[ScriptSegment]) -> list[ScriptSegment]:
        async with self._locks[recording_id]:
            doc = self._records.get(recording_id)
            if doc is None:
                raise RecordingNotFoundError(recording_id)
            script = doc.setdefault("script", {"segments": []})
            script["segments"] = merge_segments(script.get("segments", []), segments)
            return [ScriptSegment.model_validate(s) for s in script["segments"]]


def _row_to_recording(row: RecordingRow) -> Recording:
    return Recording.model_validate(
        {
            "id": row.id,
            "originalVideoUrl": row.original_video_url,
            "processedVideoUrl": row.processed_video_url,
            "audioUrl": row.audio_url,
            "thumbnailUrl": row.thumbnail_url,
            "duration": row.duration or 0,
            "visualEffects": row.visual_effects or [],
            "subtitles": row.subtitles or [],
            "script": row.script or {"segments": []},
            "processingStatus": row.processing_status,
            "processingProgress": row.processing_progress or 0,
            "errorMessage": row.error_message,
        }
    )


class SqlRecordingStore:
    """SQLAlchemy-backed recording store (``recordings`` table)."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def add(self, recording: Recording) -> None:
        doc = recording.model_dump(by_alias=True)
        async with self._session_maker() as session:
            session.add(
                RecordingRow(
                    id=recording.id,
                    original_video_url=recording.original_video_url,
                    processed_video_url=recording.processed_video_url,
                    audio_url=recording.audio_url,
                    thumbnail_url=recording.thumbnail_url,
                    duration=recording.duration,
                    visual_effects=doc["visualEffects"],
                    subtitles=doc["subtitles"],
                    script=doc["script"],
                    processing_status=recording.processing_status,
                    processing_progress=recording.processing_progress,
                    error_message=recording.error_message,
                )
            )
            await session.commit()

    async def get(self, recording_id: str) -> Recording | None:
        async with self._session_maker() as session:
            row = await session.get(RecordingRow, recording_id)
            return _row_to_recording(row) if row is not None else None

    async def update(self, recording_id: str, changes: RecordingUpdate) -> None:
        values = changes.model_dump(exclude_unset=True)
        if not values:
            return
        async with self._session_maker() as session:
            result = await session.execute(
                update(RecordingRow).where(RecordingRow.id == recording_id).values(**values)
            )
            if result.rowcount == 0:
                raise RecordingNotFoundError(recording_id)
            await session.commit()

    async def merge_segment_audio(self, recording_id: str, segments: list[ScriptSegment]) -> list[ScriptSegment]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(RecordingRow).where(RecordingRow.id == recording_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise RecordingNotFoundError(recording_id)
            script = dict(row.script or {})
            script["segments"] = merge_segments(script.get("segments", []), segments)
            # Reassign so SQLAlchemy sees the JSON change
            row.script = script
            await session.commit()
            return [ScriptSegment.model_validate(s) for s in script["segments"]]
