"""Per-lane concurrency, retry and retention policy."""

from dataclasses import dataclass, replace

from src.config import Settings

LANES: tuple[str, ...] = ("transform", "voice", "export")


@dataclass(frozen=True)
class LanePolicy:
    """Fixed policy for one lane.

    Attributes:
        lane: Lane name (also the broker queue name)
        concurrency: Maximum in-flight jobs per worker process
        max_attempts: Attempts before a job is marked failed
        backoff_base_s: Delay before the first retry; doubles each attempt
        keep_completed: Completed jobs kept per lane after pruning
        keep_failed: Failed jobs kept per lane after pruning
        timeout_s: Wall-clock deadline for a single attempt
    """

    lane: str
    concurrency: int
    max_attempts: int
    backoff_base_s: float
    keep_completed: int
    keep_failed: int
    timeout_s: float

    def backoff_delay(self, attempt: int) -> float:
        """Delay before re-running a job whose ``attempt``-th try just failed."""
        return self.backoff_base_s * 2 ** (max(attempt, 1) - 1)


DEFAULT_POLICIES: dict[str, LanePolicy] = {
    "transform": LanePolicy(
        lane="transform",
        concurrency=5,
        max_attempts=3,
        backoff_base_s=2.0,
        keep_completed=10,
        keep_failed=5,
        timeout_s=30 * 60,
    ),
    "voice": LanePolicy(
        lane="voice",
        concurrency=10,
        max_attempts=3,
        backoff_base_s=1.0,
        keep_completed=10,
        keep_failed=5,
        timeout_s=10 * 60,
    ),
    "export": LanePolicy(
        lane="export",
        concurrency=3,
        max_attempts=2,
        backoff_base_s=5.0,
        keep_completed=5,
        keep_failed=3,
        timeout_s=60 * 60,
    ),
}


def build_lane_policies(settings: Settings) -> dict[str, LanePolicy]:
    """Apply per-lane overrides from settings to the default policies."""
    policies: dict[str, LanePolicy] = {}
    for lane, default in DEFAULT_POLICIES.items():
        overrides = {
            "concurrency": getattr(settings, f"{lane}_concurrency"),
            "max_attempts": getattr(settings, f"{lane}_max_attempts"),
            "backoff_base_s": getattr(settings, f"{lane}_backoff_s"),
            "timeout_s": getattr(settings, f"{lane}_timeout_s"),
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        policies[lane] = replace(default, **overrides)
    return policies
