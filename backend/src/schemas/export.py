from typing import Literal

from pydantic import Field

from src.schemas.recording import CamelModel

WatermarkPosition = Literal["top-left", "top-right", "bottom-left", "bottom-right"]
QualityTier = Literal["low", "medium", "high"]


class Watermark(CamelModel):
    enabled: bool = False
    text: str = ""
    position: WatermarkPosition = "bottom-right"
    opacity: float = Field(default=0.7, ge=0, le=1)


class ExportOptions(CamelModel):
    """Export tuning. Unset resolution/frame rate fall back to the format defaults."""
    resolution: str | None = None  # 720p, 1080p, 4k or WIDTHxHEIGHT
    frame_rate: int | None = Field(default=None, gt=0, le=120)
    quality: QualityTier = "high"
    include_subtitles: bool = True
    include_audio: bool = True

    # Optional trim window (seconds)
    start_time: float | None = Field(default=None, ge=0)
    end_time: float | None = Field(default=None, gt=0)

    watermark: Watermark | None = None


class ExportRequest(CamelModel):
    format: str | None = None
    options: ExportOptions | None = None


class ExportResult(CamelModel):
    recording_id: str
    format: str
    export_url: str
    file_size: int
    status: Literal["completed"] = "completed"


class ExportEstimate(CamelModel):
    format: str
    estimated_seconds: int
