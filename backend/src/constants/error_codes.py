"""Error codes dictionary for the media pipeline.

This is the single source of truth for all error codes and their
retryability. Used by the exception classes to build machine-readable
error payloads and by the HTTP layer to render them.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Lookup errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Completed jobs are pruned after the retention window; enqueue a new job",
    },
    "RECORDING_NOT_FOUND": {
        "retryable": False,
    },
    # ==========================================================================
    # Validation errors (not retryable)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
    },
    "MISSING_REQUIRED_FIELD": {
        "retryable": False,
        "suggested_fix": "Provide every required field and resubmit",
    },
    "UNSUPPORTED_FORMAT": {
        "retryable": False,
        "suggested_fix": "Use one of: mp4, gif, webm",
    },
    "UNSUPPORTED_RESOLUTION": {
        "retryable": False,
        "suggested_fix": "Use 720p, 1080p, 4k or WIDTHxHEIGHT",
    },
    "INVALID_TIME_RANGE": {
        "retryable": False,
        "suggested_fix": "Ensure 0 <= startTime < endTime <= recording duration",
    },
    "INVALID_JOB_TRANSITION": {
        "retryable": False,
    },
    # ==========================================================================
    # Infrastructure / external service errors (retried by the lane policy)
    # ==========================================================================
    "BROKER_UNAVAILABLE": {
        "retryable": True,
        "suggested_fix": "Check the Redis connection and retry",
    },
    "STORAGE_ERROR": {
        "retryable": True,
    },
    "SYNTHESIS_ERROR": {
        "retryable": True,
    },
    "ENCODE_ERROR": {
        "retryable": True,
    },
    # ==========================================================================
    # Terminal errors
    # ==========================================================================
    "JOB_TIMEOUT": {
        "retryable": False,
        "suggested_fix": "Retry the job manually once the cause of the stall is fixed",
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get the specification for an error code.

    Unknown codes fall back to a non-retryable spec.
    """
    return ERROR_CODES.get(code, {"retryable": False})
