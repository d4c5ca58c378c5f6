"""Recording schemas.

Recordings are owned by the wider application; the pipeline reads their
playback/effect data and writes back derived fields only. JSON uses the
camelCase names of the stored documents (``originalVideoUrl`` etc.), Python
code uses snake_case.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ProcessingStatus = Literal["pending", "processing", "completed", "failed"]
EffectType = Literal["blur", "zoom", "highlight", "annotation"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(CamelModel):
    """Rectangle in source pixel space."""
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class VisualEffect(CamelModel):
    """Time-windowed declarative video operation."""
    id: str | None = None
    type: EffectType
    start_time: float = Field(ge=0)
    end_time: float = Field(ge=0)
    coordinates: Coordinates | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_window(self) -> "VisualEffect":
        if self.start_time >= self.end_time:
            raise ValueError(f"startTime ({self.start_time}) must be before endTime ({self.end_time})")
        return self


class SubtitleCue(CamelModel):
    id: str | None = None
    text: str
    start_time: float = Field(ge=0)
    end_time: float = Field(ge=0)
    style: dict[str, Any] | None = None  # Styling hints, not interpreted

    @model_validator(mode="after")
    def _check_window(self) -> "SubtitleCue":
        if self.start_time >= self.end_time:
            raise ValueError(f"startTime ({self.start_time}) must be before endTime ({self.end_time})")
        return self


class VoiceSettings(CamelModel):
    voice: str | None = None  # Voice id or name; None uses the configured default
    speed: float = Field(default=1.0, gt=0)
    emotion: str = "neutral"


class ScriptSegment(CamelModel):
    id: str
    text: str
    start_time: float = 0
    end_time: float = 0
    audio_url: str | None = None
    voice_settings: VoiceSettings | None = None


class Script(CamelModel):
    segments: list[ScriptSegment] = Field(default_factory=list)


class Recording(CamelModel):
    """Screen recording as seen by the pipeline."""
    id: str
    original_video_url: str
    processed_video_url: str | None = None
    audio_url: str | None = None
    thumbnail_url: str | None = None
    duration: float = 0  # seconds
    visual_effects: list[VisualEffect] = Field(default_factory=list)
    subtitles: list[SubtitleCue] = Field(default_factory=list)
    script: Script = Field(default_factory=Script)

    # Processing status
    processing_status: ProcessingStatus = "pending"
    processing_progress: int = Field(default=0, ge=0, le=100)
    error_message: str | None = None


class RecordingUpdate(CamelModel):
    """Field-scoped write-back from the transform lane.

    Only fields that are explicitly set are written.
    """
    thumbnail_url: str | None = None
    audio_url: str | None = None
    processing_status: ProcessingStatus | None = None
    processing_progress: int | None = Field(default=None, ge=0, le=100)
    error_message: str | None = None
