"""
Pytest fixtures for the media pipeline tests.

Nothing here needs ffmpeg, Redis, a database server or network access:
- FakeRunner stands in for FFmpegRunner and writes placeholder outputs
- FakeSpeech stands in for the ElevenLabs adapter
- Storage is LocalStorageService rooted in tmp_path
- Queue tests use MemoryJobStore with the LocalDispatcher
"""

from dataclasses import replace
from pathlib import Path

import pytest

from src.config import Settings
from src.exceptions import EncodeError, SynthesisError
from src.queue.policy import DEFAULT_POLICIES, LanePolicy
from src.schemas.recording import Recording
from src.services.recording_store import MemoryRecordingStore
from src.services.speech_service import Voice
from src.services.storage_service import LocalStorageService


class FakeRunner:
    """Records ffmpeg invocations and writes a placeholder output file."""

    def __init__(self, duration: float = 10.0, output_bytes: bytes = b"\x00" * 2048):
        self.duration = duration
        self.output_bytes = output_bytes
        self.calls: list[list[str]] = []
        self.fail_with: BaseException | None = None

    async def run(self, args, duration_s=None, on_progress=None) -> None:
        self.calls.append(list(args))
        if self.fail_with is not None:
            raise self.fail_with
        Path(args[-1]).write_bytes(self.output_bytes)
        if on_progress is not None:
            await on_progress(50)
            await on_progress(100)

    async def probe_duration(self, file_path: str) -> float:
        if not Path(file_path).exists():
            raise EncodeError(f"Duration not found in: {file_path}")
        return self.duration


class FakeSpeech:
    """Synthesizes ``mp3:<text>``; ids in ``fail_once`` fail their first call."""

    def __init__(self, fail_once: set[str] | None = None, fail_always: set[str] | None = None):
        self.fail_once = set(fail_once or ())
        self.fail_always = set(fail_always or ())
        self.calls: list[str] = []

    async def synthesize_segment(self, segment) -> bytes:
        self.calls.append(segment.id)
        if segment.id in self.fail_always:
            raise SynthesisError(f"Speech synthesis failed for {segment.id}")
        if segment.id in self.fail_once:
            self.fail_once.discard(segment.id)
            raise SynthesisError(f"Speech synthesis failed for {segment.id}")
        return f"mp3:{segment.text}".encode()

    async def list_voices(self, refresh: bool = False) -> list[Voice]:
        return [Voice(id="v1", name="Rachel"), Voice(id="v2", name="Adam")]

    async def close(self) -> None:
        pass


def fast_policies(**overrides) -> dict[str, LanePolicy]:
    """Default lane policies with millisecond backoff."""
    return {
        lane: replace(policy, backoff_base_s=0.01, **overrides)
        for lane, policy in DEFAULT_POLICIES.items()
    }


def make_recording(recording_id: str = "rec-1", source_url: str = "", **fields) -> Recording:
    return Recording(id=recording_id, original_video_url=source_url or f"https://cdn.test/{recording_id}.mp4", **fields)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        queue_backend="local",
        job_store="memory",
        recording_store="memory",
        use_local_storage=True,
        local_storage_path=str(tmp_path / "storage"),
        public_base_url="http://testserver",
        temp_dir=str(tmp_path / "work"),
        elevenlabs_api_key="test-key",
        log_level="WARNING",
    )


@pytest.fixture
def storage(settings: Settings) -> LocalStorageService:
    return LocalStorageService(settings)


@pytest.fixture
def recordings() -> MemoryRecordingStore:
    return MemoryRecordingStore()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
async def source_url(storage: LocalStorageService) -> str:
    """A source video already present in local storage."""
    return await storage.upload(b"fake-video", "uploads/rec-1/source.mp4", "video/mp4")
