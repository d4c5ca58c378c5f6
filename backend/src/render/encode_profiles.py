"""Format-specific encode parameters."""

import math
import re
from dataclasses import dataclass

from src.exceptions import UnsupportedFormatError, UnsupportedResolutionError
from src.schemas.export import ExportOptions


@dataclass(frozen=True)
class EncodeProfile:
    """Codec settings for one export format."""

    format: str
    video_codec: str
    audio_codec: str | None  # None: output has no audio stream
    width: int
    height: int
    fps: int
    extension: str
    content_type: str
    crf: dict[str, int] | None = None  # quality tier -> crf
    video_args: tuple[str, ...] = ()
    audio_args: tuple[str, ...] = ()
    estimate_factor: float = 1.0  # relative encode cost for time estimates


PROFILES: dict[str, EncodeProfile] = {
    "mp4": EncodeProfile(
        format="mp4",
        video_codec="libx264",
        audio_codec="aac",
        width=1920,
        height=1080,
        fps=30,
        extension="mp4",
        content_type="video/mp4",
        crf={"low": 28, "medium": 23, "high": 18},
        video_args=("-preset", "medium", "-pix_fmt", "yuv420p", "-movflags", "+faststart"),
        audio_args=("-b:a", "128k"),
        estimate_factor=1.2,
    ),
    "gif": EncodeProfile(
        format="gif",
        video_codec="gif",
        audio_codec=None,
        width=800,
        height=600,
        fps=15,
        extension="gif",
        content_type="image/gif",
        video_args=("-loop", "0"),
        estimate_factor=2.0,
    ),
    "webm": EncodeProfile(
        format="webm",
        video_codec="libvpx-vp9",
        audio_codec="libvorbis",
        width=1920,
        height=1080,
        fps=30,
        extension="webm",
        content_type="video/webm",
        crf={"low": 40, "medium": 33, "high": 24},
        video_args=("-b:v", "0", "-row-mt", "1"),
        audio_args=("-b:a", "128k"),
        estimate_factor=1.5,
    ),
}

NAMED_RESOLUTIONS: dict[str, tuple[int, int]] = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "4k": (3840, 2160),
}

_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")


def get_profile(fmt: str) -> EncodeProfile:
    """Look up the profile for a format name (case-insensitive)."""
    profile = PROFILES.get((fmt or "").strip().lower())
    if profile is None:
        raise UnsupportedFormatError(fmt)
    return profile


def parse_resolution(value: str | None, profile: EncodeProfile) -> tuple[int, int]:
    """Resolve a resolution name or ``WIDTHxHEIGHT`` literal."""
    if value is None:
        return profile.width, profile.height
    key = value.strip().lower()
    if key in NAMED_RESOLUTIONS:
        return NAMED_RESOLUTIONS[key]
    match = _RESOLUTION_RE.match(key)
    if not match:
        raise UnsupportedResolutionError(value)
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise UnsupportedResolutionError(value)
    return width, height


@dataclass
class EncodeSettings:
    """Profile resolved against export options."""

    profile: EncodeProfile
    width: int
    height: int
    fps: int
    quality: str
    include_audio: bool

    @property
    def has_audio(self) -> bool:
        return self.include_audio and self.profile.audio_codec is not None

    def video_args(self) -> list[str]:
        args = ["-c:v", self.profile.video_codec]
        if self.profile.crf:
            args += ["-crf", str(self.profile.crf[self.quality])]
        args += list(self.profile.video_args)
        args += ["-s", f"{self.width}x{self.height}", "-r", str(self.fps)]
        return args

    def audio_args(self) -> list[str]:
        if not self.has_audio:
            return ["-an"]
        return ["-c:a", self.profile.audio_codec, *self.profile.audio_args]


def resolve_encode_settings(fmt: str, options: ExportOptions) -> EncodeSettings:
    profile = get_profile(fmt)
    width, height = parse_resolution(options.resolution, profile)
    return EncodeSettings(
        profile=profile,
        width=width,
        height=height,
        fps=options.frame_rate or profile.fps,
        quality=options.quality,
        include_audio=options.include_audio,
    )


def estimate_export_seconds(fmt: str, duration_s: float) -> int:
    """Rough encode time: half the duration scaled by the format's cost."""
    profile = get_profile(fmt)
    return math.ceil(duration_s * 0.5 * profile.estimate_factor)
