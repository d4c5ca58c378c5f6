"""Progress reporting for running jobs.

The engine reports through a ``ProgressReporter``; the reporter fans every
value out to the attached sinks (job record, recording, live channel, cross
process relay). The engine never knows which transports are attached.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from src.schemas.recording import RecordingUpdate
from src.services.progress_hub import ProgressHub

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    async def report(self, progress: int, status: str) -> None: ...


class ProgressReporter:
    """Fans progress out to sinks, keeping values clamped and non-decreasing.

    A value lower than the last reported one is dropped. A failing sink is
    logged and never interrupts the job. ``floor`` carries the high-water
    mark of earlier attempts of the same job.
    """

    def __init__(self, sinks: list[ProgressSink] | None = None, floor: int = 0):
        self._sinks: list[ProgressSink] = list(sinks or [])
        self._last = max(0, min(100, floor))
        self._started = self._last > 0

    @property
    def last(self) -> int:
        return self._last

    def attach(self, sink: ProgressSink) -> None:
        self._sinks.append(sink)

    async def report(self, progress: float, status: str = "processing") -> None:
        value = max(0, min(100, int(progress)))
        if self._started and value < self._last:
            logger.debug(f"Dropping regressive progress {value} < {self._last}")
            return
        self._started = True
        self._last = value
        for sink in self._sinks:
            try:
                await sink.report(value, status)
            except Exception as e:
                logger.warning(f"Progress sink {sink.__class__.__name__} failed: {e}")


class JobProgressSink:
    """Writes progress to the job record."""

    def __init__(self, store: Any, job_id: str):
        self._store = store
        self._job_id = job_id

    async def report(self, progress: int, status: str) -> None:
        await self._store.update_progress(self._job_id, progress, status)


class RecordingProgressSink:
    """Writes ``processing_progress`` to the recording (transform lane)."""

    def __init__(self, recordings: Any, recording_id: str):
        self._recordings = recordings
        self._recording_id = recording_id

    async def report(self, progress: int, status: str) -> None:
        await self._recordings.update(
            self._recording_id, RecordingUpdate(processing_progress=progress)
        )


def build_progress_message(key: str, value: str, progress: int, status: str) -> dict[str, Any]:
    """Create a standardized progress message."""
    return {
        key: value,
        "progress": progress,
        "status": status,
        "timestamp": datetime.now(UTC).isoformat(),
    }


class ChannelProgressSink:
    """Broadcasts progress on an in-process hub channel.

    Args:
        hub: Channel fan-out
        channel: ``processing:<recordingId>`` or ``export:<jobId>``
        event: ``processing-progress`` or ``export-progress``
        key: Identifier field name in the message (``recordingId``/``jobId``)
        value: Identifier value
    """

    def __init__(self, hub: ProgressHub, channel: str, event: str, key: str, value: str):
        self._hub = hub
        self._channel = channel
        self._event = event
        self._key = key
        self._value = value

    async def report(self, progress: int, status: str) -> None:
        message = build_progress_message(self._key, self._value, progress, status)
        await self._hub.broadcast(self._channel, self._event, message)
