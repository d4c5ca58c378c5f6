"""Tests for pipeline assembly per process role."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeRunner, FakeSpeech, make_recording
from src.bootstrap import build_failure_hook, build_pipeline, build_sink_factory, channel_for
from src.queue.dispatchers import CeleryDispatcher, LocalDispatcher
from src.schemas.job import ExportPayload, JobView, TransformPayload, VoicePayload
from src.schemas.recording import ScriptSegment
from src.services.progress import ChannelProgressSink, RecordingProgressSink
from src.services.progress_hub import ProgressHub
from src.services.progress_relay import RedisProgressPublisher


def transform_job() -> JobView:
    return JobView(lane="transform", type="process", payload=TransformPayload(recording_id="rec-1", source_url="u"))


def export_job() -> JobView:
    return JobView(lane="export", type="export", payload=ExportPayload(recording_id="rec-1", format="gif"))


class TestChannels:
    def test_transform_and_voice_report_on_recording_channel(self):
        voice = JobView(
            lane="voice",
            type="generate-audio",
            payload=VoicePayload(recording_id="rec-1", segments=[ScriptSegment(id="s1", text="Hi")]),
        )

        assert channel_for(transform_job()) == ("processing:rec-1", "processing-progress", "recordingId", "rec-1")
        assert channel_for(voice)[0] == "processing:rec-1"

    def test_export_reports_on_job_channel(self):
        job = export_job()
        assert channel_for(job) == (f"export:{job.id}", "export-progress", "jobId", job.id)


class TestSinkFactory:
    def test_hub_and_recording_sinks_for_transform(self, recordings):
        factory = build_sink_factory(recordings, hub=ProgressHub())

        sinks = factory(transform_job())

        assert [type(s) for s in sinks] == [ChannelProgressSink, RecordingProgressSink]

    def test_redis_sink_for_export(self, recordings):
        factory = build_sink_factory(recordings, redis_client=MagicMock())

        sinks = factory(export_job())

        assert [type(s) for s in sinks] == [RedisProgressPublisher]


class TestFailureHook:
    @pytest.mark.asyncio
    async def test_failed_transform_copies_error_to_recording(self, recordings):
        await recordings.add(make_recording(processing_status="processing"))
        job = transform_job()
        job.state = "failed"
        job.error = "Job exceeded its 0.2s deadline"

        await build_failure_hook(recordings)(job)

        recording = await recordings.get("rec-1")
        assert recording.processing_status == "failed"
        assert recording.error_message == "Job exceeded its 0.2s deadline"

    @pytest.mark.asyncio
    async def test_failed_export_leaves_recording_alone(self, recordings):
        await recordings.add(make_recording(processing_status="completed"))
        job = export_job()
        job.state = "failed"
        job.error = "Unsupported format"

        await build_failure_hook(recordings)(job)

        recording = await recordings.get("rec-1")
        assert recording.processing_status == "completed"
        assert recording.error_message is None


class TestBuildPipeline:
    def test_local_api_runs_every_lane(self, settings, recordings):
        pipeline = build_pipeline(settings, recordings=recordings, runner=FakeRunner(), speech=FakeSpeech())

        assert isinstance(pipeline.queue.dispatcher, LocalDispatcher)
        assert set(pipeline.queue._handlers) == {"transform", "voice", "export"}
        assert pipeline.relay is None

    def test_celery_api_only_enqueues(self, settings, recordings):
        settings = settings.model_copy(update={"queue_backend": "celery"})

        pipeline = build_pipeline(settings, recordings=recordings, runner=FakeRunner(), speech=FakeSpeech())

        assert isinstance(pipeline.queue.dispatcher, CeleryDispatcher)
        assert pipeline.queue._handlers == {}
        assert pipeline.relay is not None

    def test_worker_subscribes_selected_lanes(self, settings, recordings):
        settings = settings.model_copy(update={"queue_backend": "celery"})

        pipeline = build_pipeline(
            settings, role="worker", lanes=("voice",), recordings=recordings,
            runner=FakeRunner(), speech=FakeSpeech(),
        )

        assert set(pipeline.queue._handlers) == {"voice"}
        assert pipeline.relay is None

    @pytest.mark.asyncio
    async def test_start_and_shutdown_are_idempotent(self, settings, recordings):
        pipeline = build_pipeline(settings, recordings=recordings, runner=FakeRunner(), speech=FakeSpeech())

        await pipeline.start()
        await pipeline.start()
        await pipeline.shutdown()
        await pipeline.shutdown()
