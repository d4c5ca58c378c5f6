"""Job schemas: lanes, states, typed payloads and the job record."""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from src.exceptions import InvalidJobTransitionError
from src.schemas.export import ExportOptions
from src.schemas.recording import CamelModel, ScriptSegment

Lane = Literal["transform", "voice", "export"]
JobState = Literal["waiting", "active", "completed", "failed"]

# Allowed state machine edges. failed -> waiting is the manual retry edge,
# active -> waiting is the automatic retry after backoff (progress is kept).
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "waiting": frozenset({"active"}),
    "active": frozenset({"completed", "failed", "waiting"}),
    "completed": frozenset(),
    "failed": frozenset({"waiting"}),
}

TERMINAL_STATES: tuple[str, ...] = ("completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Payloads (tagged by ``type``)
# =============================================================================


class TransformPayload(BaseModel):
    type: Literal["process"] = "process"
    recording_id: str
    source_url: str
    # Interaction events captured alongside the recording; carried for
    # downstream consumers, not interpreted by the transform.
    events: list[dict[str, Any]] = Field(default_factory=list)


class VoicePayload(BaseModel):
    type: Literal["generate-audio"] = "generate-audio"
    recording_id: str
    segments: list[ScriptSegment]


class ExportPayload(BaseModel):
    type: Literal["export"] = "export"
    recording_id: str
    format: str
    options: ExportOptions = Field(default_factory=ExportOptions)


JobPayload = Annotated[
    Union[TransformPayload, VoicePayload, ExportPayload],
    Field(discriminator="type"),
]

payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)

# Which payload type each lane accepts
LANE_PAYLOAD_TYPES: dict[str, str] = {
    "transform": "process",
    "voice": "generate-audio",
    "export": "export",
}


# =============================================================================
# Job record
# =============================================================================


class JobView(BaseModel):
    """Point-in-time view of a job.

    The same model is persisted by the job stores, so it round-trips
    through ``model_dump_json`` / ``model_validate_json``.
    """
    id: str = Field(default_factory=lambda: uuid4().hex)
    lane: Lane
    type: str
    payload: JobPayload
    state: JobState = "waiting"
    attempts: int = 0
    max_attempts: int = 1
    progress: int = Field(default=0, ge=0, le=100)
    status: str | None = None  # Last status message from the worker
    result: dict[str, Any] | None = None
    error: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def recording_id(self) -> str:
        return self.payload.recording_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition_to(self, target: JobState) -> None:
        """Move to ``target`` or raise InvalidJobTransitionError."""
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidJobTransitionError(self.id, self.state, target)
        previous, self.state = self.state, target
        if previous == "failed":
            # Manual retry starts a new run; automatic retries keep the high-water mark
            self.progress = 0


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class JobStatusResponse(CamelModel):
    """HTTP view of a job, using the original polling field names."""
    job_id: str
    lane: Lane
    type: str
    state: JobState
    progress: int
    status: str | None = None
    attempts: int
    result: dict[str, Any] | None = None
    failed_reason: str | None = None
    created_at: datetime
    processed_on: datetime | None = None
    finished_on: datetime | None = None

    @classmethod
    def from_job(cls, job: JobView) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            lane=job.lane,
            type=job.type,
            state=job.state,
            progress=job.progress,
            status=job.status,
            attempts=job.attempts,
            result=job.result,
            failed_reason=job.error,
            created_at=job.created_at,
            processed_on=job.started_at,
            finished_on=job.finished_at,
        )


class EnqueueResponse(CamelModel):
    job_id: str
    lane: Lane
    state: JobState = "waiting"


class TransformRequest(CamelModel):
    source_url: str | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)


class VoiceRequest(CamelModel):
    segments: list[ScriptSegment] | None = None

