"""SRT serialization and subtitle burn-in filter."""

from pathlib import Path
from typing import Iterable

from src.schemas.recording import SubtitleCue


def format_srt_timestamp(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS,mmm``.

    >>> format_srt_timestamp(125.25)
    '00:02:05,250'
    """
    total_ms = max(0, round(seconds * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def build_srt(cues: Iterable[SubtitleCue]) -> str:
    """Serialize cues as SRT, numbered from 1 in the given order."""
    blocks = []
    for number, cue in enumerate(cues, start=1):
        blocks.append(
            f"{number}\n"
            f"{format_srt_timestamp(cue.start_time)} --> {format_srt_timestamp(cue.end_time)}\n"
            f"{cue.text.strip()}\n"
        )
    return "\n".join(blocks)


def write_srt(cues: Iterable[SubtitleCue], path: str | Path) -> Path:
    path = Path(path)
    path.write_text(build_srt(cues), encoding="utf-8")
    return path


def _escape_filter_path(path: str) -> str:
    # Escaping for a quoted filter argument: backslash, quote and colon
    return path.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")


def subtitles_filter(srt_path: str | Path) -> str:
    """``subtitles`` video filter that burns in the given SRT file."""
    return f"subtitles=filename='{_escape_filter_path(str(srt_path))}'"
