"""Custom exceptions for the media pipeline.

Every error carries a machine-readable code; retryability is looked up in
the error codes dictionary so the HTTP layer and the job queue agree on it.
"""

from typing import Any

from src.constants.error_codes import get_error_spec


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return bool(get_error_spec(self.code).get("retryable", False))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        spec = get_error_spec(self.code)
        data: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if "suggested_fix" in spec:
            data["suggested_fix"] = spec["suggested_fix"]
        return data


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class ResourceNotFoundError(PipelineError):
    """Base class for resource not found errors."""

    status_code = 404


class JobNotFoundError(ResourceNotFoundError):
    """Job not found (never existed or already pruned)."""

    code = "JOB_NOT_FOUND"
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class RecordingNotFoundError(ResourceNotFoundError):
    """Recording not found."""

    code = "RECORDING_NOT_FOUND"
    message = "Recording not found"

    def __init__(self, recording_id: str | None = None):
        message = f"Recording not found: {recording_id}" if recording_id else self.message
        super().__init__(message)


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(PipelineError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class MissingRequiredFieldError(ValidationError):
    """Required field is missing."""

    code = "MISSING_REQUIRED_FIELD"
    message = "Required field is missing"

    def __init__(self, field: str | None = None):
        message = f"Required field is missing: {field}" if field else self.message
        self.field = field
        super().__init__(message)


class UnsupportedFormatError(ValidationError):
    """Export format is not supported."""

    code = "UNSUPPORTED_FORMAT"
    message = "Unsupported export format"

    def __init__(self, fmt: str | None = None):
        message = f"Unsupported export format: {fmt}" if fmt else self.message
        super().__init__(message)


class UnsupportedResolutionError(ValidationError):
    """Export resolution is not supported."""

    code = "UNSUPPORTED_RESOLUTION"
    message = "Unsupported resolution"

    def __init__(self, resolution: str | None = None):
        message = f"Unsupported resolution: {resolution}" if resolution else self.message
        super().__init__(message)


class InvalidTimeRangeError(ValidationError):
    """Invalid time window."""

    code = "INVALID_TIME_RANGE"
    message = "Invalid time range"

    def __init__(
        self,
        message: str | None = None,
        *,
        start_time: float | None = None,
        end_time: float | None = None,
    ):
        msg = message or self.message
        if message is None and start_time is not None and end_time is not None:
            msg = f"Invalid time range: {start_time}s to {end_time}s"
        super().__init__(msg)


# =============================================================================
# Conflict Errors (409)
# =============================================================================


class InvalidJobTransitionError(PipelineError):
    """Job state transition is not allowed."""

    code = "INVALID_JOB_TRANSITION"
    status_code = 409
    message = "Invalid job state transition"

    def __init__(self, job_id: str | None = None, current: str | None = None, target: str | None = None):
        if job_id and current and target:
            message = f"Job {job_id} cannot move from {current} to {target}"
        else:
            message = self.message
        super().__init__(message)


# =============================================================================
# Infrastructure / External Service Errors (500/502/503)
# =============================================================================


class BrokerUnavailableError(PipelineError):
    """Queue broker or job store is unreachable."""

    code = "BROKER_UNAVAILABLE"
    status_code = 503
    message = "Job queue broker is unavailable"


class StorageError(PipelineError):
    """Object storage upload/download failed."""

    code = "STORAGE_ERROR"
    status_code = 502
    message = "Storage error"


class SynthesisError(PipelineError):
    """Speech synthesis provider call failed."""

    code = "SYNTHESIS_ERROR"
    status_code = 502
    message = "Speech synthesis failed"


class EncodeError(PipelineError):
    """FFmpeg/FFprobe process failed."""

    code = "ENCODE_ERROR"
    status_code = 500
    message = "Media encoding failed"


class JobTimeoutError(PipelineError):
    """Job exceeded its lane deadline."""

    code = "JOB_TIMEOUT"
    status_code = 504
    message = "Job timed out"

    def __init__(self, job_id: str | None = None, timeout_s: float | None = None):
        if job_id and timeout_s is not None:
            message = f"Job {job_id} exceeded its {timeout_s:g}s deadline"
        else:
            message = self.message
        super().__init__(message)
