"""
Media transform engine.

Three operations, each reporting 0-100 through a progress sink and running
inside its own temporary workspace:

1. process_recording: thumbnail + extracted audio for a new upload
2. synthesize_segments: speech for script segments
3. export_recording: effects, subtitles and watermark rendered to mp4/gif/webm

The engine knows nothing about queues; retries and deadlines are applied by
the job queue around these calls.
"""

import logging
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from src.config import Settings
from src.exceptions import InvalidTimeRangeError
from src.render.encode_profiles import EncodeSettings, resolve_encode_settings
from src.render.ffmpeg import FFmpegRunner
from src.render.filter_graph import FilterGraph, build_filter_graph, watermark_filter
from src.render.subtitles import subtitles_filter, write_srt
from src.schemas.export import ExportOptions, ExportResult
from src.schemas.recording import Recording, RecordingUpdate, ScriptSegment
from src.services.progress import ProgressSink
from src.services.recording_store import RecordingStore, require_recording

logger = logging.getLogger(__name__)

# Export progress band driven by the encoder
ENCODE_PROGRESS_START = 70
ENCODE_PROGRESS_END = 90


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def _source_suffix(url: str) -> str:
    return Path(urlparse(url).path).suffix or ".mp4"


def build_export_args(
    input_path: str,
    output_path: str,
    encode: EncodeSettings,
    graph: FilterGraph | None = None,
    post_filters: list[str] | None = None,
    start_time: float | None = None,
    end_time: float | None = None,
) -> list[str]:
    """Build ffmpeg arguments (without the binary) for an export.

    With an effect graph, subtitle/watermark filters are chained after the
    graph's output inside ``-filter_complex``; without one they go to
    ``-vf``. No effects and no post filters means no filter at all.
    """
    post_filters = post_filters or []
    args = ["-i", input_path]

    if graph is not None:
        if post_filters:
            graph.append_chain(post_filters, "vout")
        args += ["-filter_complex", graph.render(), "-map", f"[{graph.current_label}]"]
    else:
        args += ["-map", "0:v:0"]
        if post_filters:
            args += ["-vf", ",".join(post_filters)]

    if encode.has_audio:
        # Optional mapping: sources without audio still export
        args += ["-map", "0:a?"]

    # Output seeking keeps filter timestamps on the original timeline
    if start_time is not None:
        args += ["-ss", f"{start_time:.3f}"]
    if end_time is not None:
        args += ["-t", f"{end_time - (start_time or 0):.3f}"]

    args += encode.video_args()
    args += encode.audio_args()
    args.append(output_path)
    return args


class MediaTransformEngine:
    """Builds and runs ffmpeg work for the three pipeline operations."""

    def __init__(
        self,
        storage: Any,
        recordings: RecordingStore,
        speech: Any,
        runner: FFmpegRunner,
        settings: Settings,
    ):
        self.storage = storage
        self.recordings = recordings
        self.speech = speech
        self.runner = runner
        self.settings = settings

    @contextmanager
    def _workspace(self, kind: str, ref: str) -> Iterator[Path]:
        """Unique temp directory, removed on every exit path."""
        root = Path(self.settings.temp_dir)
        root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"smartdemo_{kind}_{ref}_", dir=root))
        try:
            yield work_dir
        finally:
            try:
                shutil.rmtree(work_dir)
            except OSError as e:
                logger.warning(f"Failed to remove workspace {work_dir}: {e}")

    # ------------------------------------------------------------------
    # Transform
    # ------------------------------------------------------------------

    async def process_recording(
        self,
        recording_id: str,
        source_url: str,
        progress: ProgressSink,
    ) -> dict[str, Any]:
        """Derive thumbnail and audio for an uploaded recording.

        A step failure marks the recording failed and re-raises so the queue
        can retry. Cancellation (shutdown, deadline) is left to the queue.
        """
        await self.recordings.update(
            recording_id,
            RecordingUpdate(processing_status="processing", error_message=None),
        )
        try:
            with self._workspace("transform", recording_id) as work_dir:
                source_path = work_dir / f"source{_source_suffix(source_url)}"
                await self.storage.download(source_url, source_path)
                await progress.report(20, "Downloaded source")

                duration = await self.runner.probe_duration(str(source_path))
                thumbnail_path = work_dir / "thumbnail.jpg"
                await self.runner.run([
                    "-ss", f"{duration * self.settings.thumbnail_offset_ratio:.3f}",
                    "-i", str(source_path),
                    "-frames:v", "1",
                    "-s", self.settings.thumbnail_size,
                    "-q:v", "3",
                    str(thumbnail_path),
                ])
                await progress.report(40, "Generated thumbnail")

                thumbnail_url = await self.storage.upload_file(
                    thumbnail_path, f"thumbnails/{recording_id}/{_timestamp_ms()}.jpg", "image/jpeg"
                )
                await progress.report(60, "Uploaded thumbnail")

                audio_path = work_dir / "audio.wav"
                await self.runner.run([
                    "-i", str(source_path),
                    "-vn",
                    "-acodec", "pcm_s16le",
                    "-ac", "1",
                    "-ar", str(self.settings.extracted_audio_sample_rate),
                    str(audio_path),
                ])
                await progress.report(80, "Extracted audio")

                audio_url = await self.storage.upload_file(
                    audio_path, f"audio/{recording_id}/{_timestamp_ms()}.wav", "audio/wav"
                )
                await progress.report(90, "Uploaded audio")
        except Exception as e:
            await self._mark_failed(recording_id, str(e) or e.__class__.__name__)
            raise

        await self.recordings.update(
            recording_id,
            RecordingUpdate(
                thumbnail_url=thumbnail_url,
                audio_url=audio_url,
                processing_status="completed",
                processing_progress=100,
            ),
        )
        await progress.report(100, "completed")
        logger.info(f"Processed recording {recording_id} ({duration:.1f}s)")
        return {
            "recordingId": recording_id,
            "thumbnailUrl": thumbnail_url,
            "audioUrl": audio_url,
            "duration": duration,
            "status": "completed",
        }

    async def _mark_failed(self, recording_id: str, message: str) -> None:
        try:
            await self.recordings.update(
                recording_id,
                RecordingUpdate(processing_status="failed", error_message=message),
            )
        except Exception as e:
            logger.error(f"Could not mark recording {recording_id} failed: {e}")

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    async def synthesize_segments(
        self,
        recording_id: str,
        segments: list[ScriptSegment],
        progress: ProgressSink,
    ) -> dict[str, Any]:
        """Synthesize speech for segments in order and merge the URLs back.

        Any segment failure aborts the attempt before anything is written.
        """
        await require_recording(self.recordings, recording_id)
        total = len(segments)
        done: list[ScriptSegment] = []

        for index, segment in enumerate(segments):
            await progress.report(int(index / total * 80), f"Synthesizing segment {index + 1}/{total}")
            if segment.audio_url:
                done.append(segment)
                continue
            audio = await self.speech.synthesize_segment(segment)
            audio_url = await self.storage.upload(
                audio, f"segments/{recording_id}/{segment.id}.mp3", "audio/mpeg"
            )
            done.append(segment.model_copy(update={"audio_url": audio_url}))

        await self.recordings.merge_segment_audio(recording_id, done)
        await progress.report(90, "Saved segment audio")
        await progress.report(100, "completed")
        return {
            "recordingId": recording_id,
            "segments": [s.model_dump(by_alias=True, exclude_none=True) for s in done],
            "status": "completed",
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def validate_time_windows(recording: Recording, options: ExportOptions) -> None:
        """Check effect, subtitle and trim windows against the duration.

        Raises:
            InvalidTimeRangeError: A window leaves ``[0, duration]``
        """
        duration = recording.duration
        if duration > 0:
            for effect in recording.visual_effects:
                if effect.end_time > duration:
                    raise InvalidTimeRangeError(
                        f"{effect.type} effect ends at {effect.end_time}s, after the recording ({duration}s)"
                    )
            for cue in recording.subtitles:
                if cue.end_time > duration:
                    raise InvalidTimeRangeError(
                        f"Subtitle '{cue.text}' ends at {cue.end_time}s, after the recording ({duration}s)"
                    )

        start, end = options.start_time, options.end_time
        if start is None and end is None:
            return
        start = start or 0.0
        end = end if end is not None else (duration or None)
        if end is not None and start >= end:
            raise InvalidTimeRangeError(start_time=start, end_time=end)
        if duration > 0 and end is not None and end > duration:
            raise InvalidTimeRangeError(f"Trim end {end}s is after the recording ({duration}s)")

    async def export_recording(
        self,
        recording_id: str,
        fmt: str,
        options: ExportOptions,
        progress: ProgressSink,
        job_id: str | None = None,
    ) -> ExportResult:
        """Render a recording with its effects into ``fmt`` and upload it."""
        encode = resolve_encode_settings(fmt, options)
        recording = await require_recording(self.recordings, recording_id)
        self.validate_time_windows(recording, options)
        await progress.report(10, "Loaded recording")

        source_url = recording.original_video_url
        with self._workspace("export", job_id or recording_id) as work_dir:
            source_path = work_dir / f"source{_source_suffix(source_url)}"
            await self.storage.download(source_url, source_path)
            await progress.report(30, "Downloaded source")

            graph = build_filter_graph(recording.visual_effects)
            await progress.report(50, "Built filter graph")

            post_filters: list[str] = []
            if options.include_subtitles and recording.subtitles:
                srt_path = write_srt(recording.subtitles, work_dir / "subtitles.srt")
                post_filters.append(subtitles_filter(srt_path))
            if options.watermark is not None:
                drawtext = watermark_filter(options.watermark)
                if drawtext:
                    post_filters.append(drawtext)

            output_path = work_dir / f"export.{encode.profile.extension}"
            args = build_export_args(
                str(source_path),
                str(output_path),
                encode,
                graph=graph,
                post_filters=post_filters,
                start_time=options.start_time,
                end_time=options.end_time,
            )
            await progress.report(ENCODE_PROGRESS_START, "Encoding")

            encode_duration = await self._encode_duration(recording, options, str(source_path))

            async def on_encode_progress(percent: int) -> None:
                band = ENCODE_PROGRESS_END - ENCODE_PROGRESS_START
                value = min(ENCODE_PROGRESS_START + percent * band / 100, ENCODE_PROGRESS_END)
                await progress.report(int(value), f"Encoding ({percent}%)")

            await self.runner.run(args, duration_s=encode_duration, on_progress=on_encode_progress)

            file_size = output_path.stat().st_size
            await progress.report(95, "Uploading export")
            export_url = await self.storage.upload_file(
                output_path,
                f"exports/{recording_id}/{_timestamp_ms()}.{encode.profile.extension}",
                encode.profile.content_type,
            )

        await progress.report(100, "completed")
        logger.info(f"Exported recording {recording_id} as {encode.profile.format} ({file_size} bytes)")
        return ExportResult(
            recording_id=recording_id,
            format=encode.profile.format,
            export_url=export_url,
            file_size=file_size,
        )

    async def _encode_duration(self, recording: Recording, options: ExportOptions, source_path: str) -> float | None:
        duration = recording.duration
        if not duration:
            try:
                duration = await self.runner.probe_duration(source_path)
            except Exception as e:
                # Progress is advisory; encode without it
                logger.warning(f"Could not probe duration for progress: {e}")
                return None
        start = options.start_time or 0.0
        end = options.end_time if options.end_time is not None else duration
        return max(end - start, 0.0) or None
