from typing import Any

from sqlalchemy import JSON, Float, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class RecordingRow(Base, TimestampMixin):
    __tablename__ = "recordings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Source and derived media
    original_video_url: Mapped[str] = mapped_column(Text, nullable=False)
    processed_video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[float] = mapped_column(Float, default=0)

    # Editing data (camelCase documents, as stored by the editor)
    visual_effects: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    subtitles: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    script: Mapped[dict[str, Any]] = mapped_column(JSONType, default=lambda: {"segments": []})

    # Status: pending, processing, completed, failed
    processing_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    processing_progress: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Recording {self.id} ({self.processing_status})>"
