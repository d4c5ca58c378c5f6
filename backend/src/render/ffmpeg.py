"""FFmpeg/FFprobe process runner.

Runs ffmpeg with ``-progress pipe:1`` so long encodes report incremental
progress, and kills the subprocess when the awaiting task is cancelled
(lane deadline or shutdown).
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.exceptions import EncodeError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Keep the tail of stderr for error messages
STDERR_TAIL_CHARS = 2000


@dataclass
class MediaInfo:
    """Media file information."""

    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    has_video: bool = False
    has_audio: bool = False


def parse_media_info(data: dict) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -show_format -show_streams`` JSON."""
    info = MediaInfo()
    format_info = data.get("format", {})
    if "duration" in format_info:
        try:
            info.duration_s = float(format_info["duration"])
        except (TypeError, ValueError):
            pass

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
            rate = stream.get("r_frame_rate", "")
            if "/" in rate:
                num, den = rate.split("/", 1)
                try:
                    if float(den):
                        info.fps = float(num) / float(den)
                except ValueError:
                    pass
        elif codec_type == "audio" and not info.has_audio:
            info.has_audio = True
            info.audio_codec = stream.get("codec_name")
            if stream.get("sample_rate"):
                info.sample_rate = int(stream["sample_rate"])
            info.channels = stream.get("channels")
    return info


def parse_progress_line(line: str, duration_s: float | None) -> int | None:
    """Return percent complete for an ``out_time_us=`` progress line."""
    if not line.startswith("out_time_us=") or not duration_s:
        return None
    try:
        time_us = int(line.split("=", 1)[1])
    except ValueError:
        # ffmpeg prints N/A before the first frame
        return None
    return max(0, min(100, int(time_us / 1_000_000 / duration_s * 100)))


class FFmpegRunner:
    """Executes ffmpeg/ffprobe as asyncio subprocesses."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    async def run(
        self,
        args: list[str],
        duration_s: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Run ffmpeg with ``args`` (the last arg is the output path).

        Raises:
            EncodeError: Non-zero exit status
        """
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-nostats", *args[:-1], "-progress", "pipe:1", args[-1]]
        logger.debug(f"ffmpeg: {' '.join(cmd)}")

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_task = asyncio.create_task(proc.stderr.read())
        last_reported_pct = -1
        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                pct = parse_progress_line(line, duration_s)
                if pct is not None and on_progress and pct > last_reported_pct:
                    last_reported_pct = pct
                    await on_progress(pct)
                elif line.startswith("progress=end"):
                    if on_progress and last_reported_pct < 100:
                        await on_progress(100)
                    break
            stderr_output = await stderr_task
            await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                logger.warning(f"Killing ffmpeg (pid {proc.pid}) after cancellation")
                proc.kill()
                await proc.wait()
            stderr_task.cancel()
            raise

        if proc.returncode != 0:
            stderr_text = stderr_output.decode("utf-8", errors="replace")
            logger.error(f"ffmpeg exited with {proc.returncode}: {stderr_text[-STDERR_TAIL_CHARS:]}")
            raise EncodeError(f"ffmpeg failed ({proc.returncode}): {stderr_text[-STDERR_TAIL_CHARS:].strip()}")

    async def probe(self, file_path: str) -> MediaInfo:
        """Run ffprobe and return parsed media info."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        if proc.returncode != 0:
            raise EncodeError(f"ffprobe failed: {stderr.decode('utf-8', errors='replace').strip()}")
        try:
            return parse_media_info(json.loads(stdout))
        except json.JSONDecodeError as e:
            raise EncodeError(f"Failed to parse ffprobe output: {e}") from e

    async def probe_duration(self, file_path: str) -> float:
        """Get media duration in seconds.

        Raises:
            EncodeError: If ffprobe fails or duration not found
        """
        info = await self.probe(file_path)
        if info.duration_s is None:
            raise EncodeError(f"Duration not found in: {file_path}")
        return info.duration_s
