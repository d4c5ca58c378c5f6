"""Tests for Celery wiring: queues, routes, lane tasks and worker commands."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry

from src.celery_app import celery_app
from src.exceptions import BrokerUnavailableError
from src.queue.policy import DEFAULT_POLICIES
from src.schemas.job import ExportPayload, JobView
from src.tasks import pipeline_tasks
from src import worker_entrypoint


def lane_task(name: str):
    """The registered task instance (module attributes may be lazy proxies)."""
    return celery_app.tasks[f"src.tasks.pipeline_tasks.{name}"]


def mock_pipeline(**queue_methods) -> MagicMock:
    pipeline = MagicMock()
    pipeline.start = AsyncMock()
    pipeline.shutdown = AsyncMock()
    for name, mock in queue_methods.items():
        setattr(pipeline.queue, name, mock)
    return pipeline


class TestCeleryApp:
    def test_one_queue_per_lane(self):
        assert {q.name for q in celery_app.conf.task_queues} == {"transform", "voice", "export"}

    def test_lane_tasks_are_routed_to_their_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["src.tasks.pipeline_tasks.run_voice_job"] == {"queue": "voice"}
        assert routes["src.tasks.pipeline_tasks.run_export_job"] == {"queue": "export"}

    def test_late_acknowledgement(self):
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.worker_prefetch_multiplier == 1
        assert "cleanup-jobs-hourly" in celery_app.conf.beat_schedule


class TestLaneTasks:
    def test_runs_one_attempt_on_its_lane(self):
        job = JobView(
            lane="export",
            type="export",
            payload=ExportPayload(recording_id="rec-1", format="mp4"),
            state="completed",
            attempts=1,
        )
        pipeline = mock_pipeline(run_attempt=AsyncMock(return_value=job))

        with patch.object(pipeline_tasks, "build_pipeline", return_value=pipeline) as build:
            result = lane_task("run_export_job").run(job.id)

        assert result == {"jobId": job.id, "state": "completed", "attempts": 1}
        assert build.call_args.kwargs["role"] == "worker"
        assert build.call_args.kwargs["lanes"] == ("export",)
        pipeline.queue.run_attempt.assert_awaited_once_with(job.id)
        pipeline.start.assert_awaited_once()
        pipeline.shutdown.assert_awaited_once()

    def test_missing_job(self):
        pipeline = mock_pipeline(run_attempt=AsyncMock(return_value=None))

        with patch.object(pipeline_tasks, "build_pipeline", return_value=pipeline):
            result = lane_task("run_transform_job").run("gone")

        assert result == {"status": "missing"}

    def test_unreachable_job_store_retries_task(self):
        pipeline = mock_pipeline(run_attempt=AsyncMock(side_effect=BrokerUnavailableError("redis down")))

        with patch.object(pipeline_tasks, "build_pipeline", return_value=pipeline), \
                patch.object(lane_task("run_voice_job"), "retry", side_effect=Retry()) as retry:
            with pytest.raises(Retry):
                lane_task("run_voice_job").run("job-1")

        assert isinstance(retry.call_args.kwargs["exc"], BrokerUnavailableError)
        pipeline.shutdown.assert_awaited_once()

    def test_cleanup_subscribes_no_lanes(self):
        pipeline = mock_pipeline()
        pipeline.service.cleanup = AsyncMock(return_value=4)

        with patch.object(pipeline_tasks, "build_pipeline", return_value=pipeline) as build:
            result = lane_task("cleanup_jobs").run()

        assert result == {"removed": 4}
        assert build.call_args.kwargs["lanes"] == ()


class TestWorkerCommands:
    def test_one_worker_per_lane_with_lane_concurrency(self):
        commands = worker_entrypoint.build_worker_commands(DEFAULT_POLICIES)

        assert set(commands) == {"transform", "voice", "export", "beat"}
        export = commands["export"]
        assert export[export.index("-Q") + 1] == "export"
        assert f"--concurrency={DEFAULT_POLICIES['export'].concurrency}" in export
        assert "export@%h" in export

    def test_selected_lanes_without_beat(self):
        commands = worker_entrypoint.build_worker_commands(
            DEFAULT_POLICIES, lanes=("voice",), with_beat=False, log_level="debug"
        )

        assert list(commands) == ["voice"]
        assert "--loglevel=debug" in commands["voice"]

    def test_dead_processes(self):
        alive, dead = MagicMock(), MagicMock()
        alive.poll.return_value = None
        dead.poll.return_value = 1

        with patch.dict(worker_entrypoint._processes, {"voice": alive, "export": dead}, clear=True):
            assert worker_entrypoint.dead_processes() == ["export"]
