from src.schemas.export import ExportEstimate, ExportOptions, ExportRequest, ExportResult, Watermark
from src.schemas.job import (
    EnqueueResponse,
    ExportPayload,
    JobStatusResponse,
    JobView,
    QueueStats,
    TransformPayload,
    VoicePayload,
)
from src.schemas.recording import (
    Coordinates,
    Recording,
    RecordingUpdate,
    Script,
    ScriptSegment,
    SubtitleCue,
    VisualEffect,
    VoiceSettings,
)

__all__ = [
    "Coordinates",
    "VisualEffect",
    "SubtitleCue",
    "VoiceSettings",
    "ScriptSegment",
    "Script",
    "Recording",
    "RecordingUpdate",
    "Watermark",
    "ExportOptions",
    "ExportRequest",
    "ExportResult",
    "ExportEstimate",
    "TransformPayload",
    "VoicePayload",
    "ExportPayload",
    "JobView",
    "QueueStats",
    "JobStatusResponse",
    "EnqueueResponse",
]
