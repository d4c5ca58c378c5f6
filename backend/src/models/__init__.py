from src.models.base import Base
from src.models.recording import RecordingRow

__all__ = [
    "Base",
    "RecordingRow",
]
