"""End-to-end tests of the pipeline façade with the in-process broker.

Each test builds a full pipeline (local dispatcher, memory job store,
local storage) with FakeRunner and FakeSpeech, enqueues through the
façade and waits for the broker to drain.
"""

import asyncio

import pytest

from conftest import FakeRunner, FakeSpeech, fast_policies, make_recording
from src.bootstrap import build_pipeline
from src.exceptions import JobNotFoundError, MissingRequiredFieldError, RecordingNotFoundError
from src.schemas.export import ExportOptions
from src.schemas.recording import ScriptSegment


class SlowRunner(FakeRunner):
    """Runner whose ffmpeg invocations never finish in time."""

    async def run(self, args, duration_s=None, on_progress=None) -> None:
        self.calls.append(list(args))
        await asyncio.sleep(10)


class CollectingMember:
    """Channel member that records every message it is sent."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send_json(self, data) -> None:
        self.messages.append(data)

    @property
    def progress(self) -> list[int]:
        return [m["data"]["progress"] for m in self.messages]


@pytest.fixture
async def pipeline(settings, recordings):
    pipeline = build_pipeline(
        settings,
        role="api",
        policies=fast_policies(),
        recordings=recordings,
        runner=FakeRunner(duration=20.0),
        speech=FakeSpeech(fail_once={"s2"}),
    )
    await pipeline.start()
    yield pipeline
    await pipeline.shutdown()


async def drain(pipeline) -> None:
    await pipeline.queue.dispatcher.join()


class TestTransform:
    @pytest.mark.asyncio
    async def test_process_recording(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        member = CollectingMember()
        pipeline.hub.join("processing:rec-1", member)

        job_id = await pipeline.service.enqueue_transform("rec-1", source_url, events=[{"type": "click"}])
        await drain(pipeline)

        job = await pipeline.service.get_job(job_id)
        assert job.state == "completed"
        assert job.progress == 100
        assert job.result["thumbnailUrl"].startswith("http://testserver/api/storage/files/thumbnails/rec-1/")
        assert job.payload.events == [{"type": "click"}]

        recording = await recordings.get("rec-1")
        assert recording.processing_status == "completed"
        assert recording.processing_progress == 100
        assert recording.audio_url == job.result["audioUrl"]

        assert member.progress == sorted(member.progress)
        assert member.progress[-1] == 100
        assert {m["event"] for m in member.messages} == {"processing-progress"}
        assert member.messages[-1]["data"]["recordingId"] == "rec-1"

    @pytest.mark.asyncio
    async def test_missing_source_fails_after_retries(self, pipeline, recordings, settings):
        await recordings.add(make_recording())
        missing = "http://testserver/api/storage/files/uploads/rec-1/missing.mp4"

        job_id = await pipeline.service.enqueue_transform("rec-1", missing)
        await drain(pipeline)

        job = await pipeline.service.get_job(job_id)
        assert job.state == "failed"
        assert job.attempts == pipeline.queue.policies["transform"].max_attempts
        assert "Object not found" in job.error
        recording = await recordings.get("rec-1")
        assert recording.processing_status == "failed"
        assert recording.error_message == job.error

    @pytest.mark.asyncio
    async def test_deadline_failure_is_written_to_recording(self, settings, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        pipeline = build_pipeline(
            settings,
            policies=fast_policies(timeout_s=0.2),
            recordings=recordings,
            runner=SlowRunner(),
            speech=FakeSpeech(),
        )
        await pipeline.start()
        try:
            job_id = await pipeline.service.enqueue_transform("rec-1", source_url)
            await drain(pipeline)
        finally:
            await pipeline.shutdown()

        job = await pipeline.service.get_job(job_id)
        assert job.state == "failed"
        assert job.attempts == 1
        assert "deadline" in job.error
        recording = await recordings.get("rec-1")
        assert recording.processing_status == "failed"
        assert recording.error_message == job.error

    @pytest.mark.asyncio
    async def test_shutdown_mid_attempt_leaves_recording_processing(self, settings, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        runner = SlowRunner()
        pipeline = build_pipeline(
            settings.model_copy(update={"shutdown_drain_timeout_s": 0.1}),
            policies=fast_policies(),
            recordings=recordings,
            runner=runner,
            speech=FakeSpeech(),
        )
        await pipeline.start()
        job_id = await pipeline.service.enqueue_transform("rec-1", source_url)
        async with asyncio.timeout(5):
            while not runner.calls:
                await asyncio.sleep(0.01)

        await pipeline.shutdown()

        job = await pipeline.service.get_job(job_id)
        assert job.state == "waiting"
        assert job.attempts == 0
        recording = await recordings.get("rec-1")
        assert recording.processing_status == "processing"
        assert recording.error_message is None


    @pytest.mark.asyncio
    async def test_missing_fields(self, pipeline):
        with pytest.raises(MissingRequiredFieldError):
            await pipeline.service.enqueue_transform("rec-1", "")
        with pytest.raises(MissingRequiredFieldError):
            await pipeline.service.enqueue_transform("", "https://cdn.test/a.mp4")


class TestVoice:
    @pytest.mark.asyncio
    async def test_segment_failure_retries_whole_job(self, pipeline, recordings):
        segments = [ScriptSegment(id="s1", text="Hello"), ScriptSegment(id="s2", text="World")]
        await recordings.add(make_recording(script={"segments": [s.model_dump(by_alias=True) for s in segments]}))

        job_id = await pipeline.service.enqueue_voice("rec-1", segments)
        await drain(pipeline)

        job = await pipeline.service.get_job(job_id)
        assert job.state == "completed"
        assert job.attempts == 2
        assert pipeline.speech.calls == ["s1", "s2", "s1", "s2"]

        stored = (await recordings.get("rec-1")).script.segments
        assert all(s.audio_url and s.audio_url.endswith(f"segments/rec-1/{s.id}.mp3") for s in stored)

    @pytest.mark.asyncio
    async def test_empty_segments_rejected(self, pipeline):
        with pytest.raises(MissingRequiredFieldError):
            await pipeline.service.enqueue_voice("rec-1", None)


class TestExport:
    @pytest.mark.asyncio
    async def test_concurrent_exports(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url, duration=20.0))

        gif_id = await pipeline.service.enqueue_export("rec-1", "gif")
        mp4_id = await pipeline.service.enqueue_export("rec-1", "mp4", ExportOptions(resolution="720p"))
        await drain(pipeline)

        gif = await pipeline.service.get_export_job(gif_id)
        mp4 = await pipeline.service.get_export_job(mp4_id)
        assert gif.state == mp4.state == "completed"
        assert gif.result["exportUrl"].endswith(".gif")
        assert mp4.result["exportUrl"].endswith(".mp4")
        assert gif.result["exportUrl"] != mp4.result["exportUrl"]
        assert mp4.result["fileSize"] == 2048

        exports = await pipeline.service.list_exports("rec-1")
        assert {j.id for j in exports} == {gif_id, mp4_id}
        assert exports[0].finished_at >= exports[1].finished_at

    @pytest.mark.asyncio
    async def test_export_progress_channel(self, settings, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        pipeline = build_pipeline(
            settings, role="api", policies=fast_policies(), recordings=recordings,
            runner=FakeRunner(), speech=FakeSpeech(),
        )
        # Joined before the broker starts so no message is missed
        job_id = await pipeline.service.enqueue_export("rec-1", "webm")
        member = CollectingMember()
        pipeline.hub.join(f"export:{job_id}", member)

        await pipeline.start()
        try:
            await drain(pipeline)
        finally:
            await pipeline.shutdown()

        assert member.progress[-1] == 100
        assert member.progress == sorted(member.progress)
        assert {m["event"] for m in member.messages} == {"export-progress"}
        assert all(m["data"]["jobId"] == job_id for m in member.messages)

    @pytest.mark.asyncio
    async def test_unsupported_format_fails_without_retry(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))

        job_id = await pipeline.service.enqueue_export("rec-1", "avi")
        await drain(pipeline)

        job = await pipeline.service.get_job(job_id)
        assert job.state == "failed"
        assert job.attempts == 1
        assert "Unsupported export format" in job.error

    @pytest.mark.asyncio
    async def test_transform_job_is_not_an_export(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        job_id = await pipeline.service.enqueue_transform("rec-1", source_url)
        await drain(pipeline)

        with pytest.raises(JobNotFoundError):
            await pipeline.service.get_export_job(job_id)
        with pytest.raises(JobNotFoundError):
            await pipeline.service.get_job("no-such-job")

    @pytest.mark.asyncio
    async def test_missing_format(self, pipeline):
        with pytest.raises(MissingRequiredFieldError) as exc_info:
            await pipeline.service.enqueue_export("rec-1", " ")
        assert exc_info.value.field == "format"


class TestQueries:
    @pytest.mark.asyncio
    async def test_estimate_export(self, pipeline, recordings):
        await recordings.add(make_recording(duration=60.0))

        mp4 = await pipeline.service.estimate_export("rec-1", "mp4")
        gif = await pipeline.service.estimate_export("rec-1", "gif")

        assert mp4 > 0
        assert gif != mp4
        with pytest.raises(RecordingNotFoundError):
            await pipeline.service.estimate_export("missing", "mp4")

    @pytest.mark.asyncio
    async def test_stats_cover_every_lane(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        await pipeline.service.enqueue_export("rec-1", "mp4")
        await drain(pipeline)

        stats = await pipeline.service.queue_stats()

        assert set(stats) == {"transform", "voice", "export"}
        assert stats["export"].completed == 1
        assert stats["transform"].waiting == 0

    @pytest.mark.asyncio
    async def test_list_voices(self, pipeline):
        voices = await pipeline.service.list_voices()
        assert [v.name for v in voices] == ["Rachel", "Adam"]

    @pytest.mark.asyncio
    async def test_manual_retry_of_failed_job(self, pipeline, recordings, source_url):
        await recordings.add(make_recording(source_url=source_url))
        job_id = await pipeline.service.enqueue_export("rec-1", "avi")
        await drain(pipeline)

        job = await pipeline.service.retry_job(job_id)
        assert job.state == "waiting"
        assert job.progress == 0
        await drain(pipeline)
        assert (await pipeline.service.get_job(job_id)).state == "failed"
