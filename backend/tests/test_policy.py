"""Tests for lane policies."""

import pytest

from src.config import Settings
from src.queue.policy import DEFAULT_POLICIES, LANES, LanePolicy, build_lane_policies


class TestLanePolicy:
    def test_lanes_have_default_policies(self):
        assert set(DEFAULT_POLICIES) == set(LANES) == {"transform", "voice", "export"}

    def test_default_values(self):
        transform = DEFAULT_POLICIES["transform"]
        voice = DEFAULT_POLICIES["voice"]
        export = DEFAULT_POLICIES["export"]

        assert (transform.concurrency, transform.max_attempts, transform.backoff_base_s) == (5, 3, 2.0)
        assert (voice.concurrency, voice.max_attempts, voice.backoff_base_s) == (10, 3, 1.0)
        assert (export.concurrency, export.max_attempts, export.backoff_base_s) == (3, 2, 5.0)
        assert (export.keep_completed, export.keep_failed) == (5, 3)

    @pytest.mark.parametrize(
        "attempt,expected",
        [(1, 2.0), (2, 4.0), (3, 8.0)],
    )
    def test_backoff_doubles_per_attempt(self, attempt, expected):
        """Delay before the k-th retry is base * 2^(k-1)."""
        assert DEFAULT_POLICIES["transform"].backoff_delay(attempt) == expected

    def test_backoff_never_below_base(self):
        policy = LanePolicy("x", 1, 3, 0.5, 1, 1, 10)
        assert policy.backoff_delay(0) == 0.5


class TestBuildLanePolicies:
    def test_no_overrides_keeps_defaults(self):
        policies = build_lane_policies(Settings(_env_file=None))
        assert policies == DEFAULT_POLICIES

    def test_overrides_apply_per_lane(self):
        settings = Settings(_env_file=None, export_max_attempts=4, voice_concurrency=2, transform_timeout_s=30)

        policies = build_lane_policies(settings)

        assert policies["export"].max_attempts == 4
        assert policies["voice"].concurrency == 2
        assert policies["transform"].timeout_s == 30
        # Untouched fields survive
        assert policies["export"].backoff_base_s == 5.0
