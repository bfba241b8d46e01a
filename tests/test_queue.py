"""Tests for the rq-based queue layer."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from codeloop import queue
from codeloop.queue import (
    QUEUE_RUNS,
    check_redis_connection_safe,
    enqueue_run,
    get_queue_counts,
    get_run_job_status,
    run_job_id,
)


@pytest.fixture()
def mock_queue():
    q = MagicMock()
    q.fetch_job.return_value = None
    with (
        patch("codeloop.queue.get_queue", return_value=q),
        patch("codeloop.queue._spawn_worker") as spawn,
    ):
        q.spawn = spawn
        yield q


def test_enqueue_run_uses_project_job_id(mock_queue):
    job = enqueue_run("p1", "cron")

    assert job is mock_queue.enqueue.return_value
    args, kwargs = mock_queue.enqueue.call_args
    assert args == ("codeloop.orchestrator.run_project", "p1", "cron")
    assert kwargs["job_id"] == "run-p1"
    assert kwargs["on_failure"].func == "codeloop.orchestrator.on_run_job_failure"
    mock_queue.spawn.assert_called_once_with("run-p1")


@pytest.mark.parametrize("status", ["queued", "started"])
def test_enqueue_run_rejects_active_job(mock_queue, status):
    existing = MagicMock()
    existing.get_status.return_value = status
    mock_queue.fetch_job.return_value = existing

    with pytest.raises(RuntimeError, match=f"already {status}"):
        enqueue_run("p1")
    mock_queue.enqueue.assert_not_called()
    mock_queue.spawn.assert_not_called()


def test_enqueue_run_replaces_finished_job(mock_queue):
    existing = MagicMock()
    existing.get_status.return_value = "finished"
    mock_queue.fetch_job.return_value = existing

    enqueue_run("p1")
    existing.delete.assert_called_once()
    mock_queue.enqueue.assert_called_once()


def test_spawn_worker_writes_job_log(tmp_path):
    log_dir = tmp_path / "logs"
    with (
        patch("codeloop.queue.LOG_DIR", log_dir),
        patch("codeloop.queue.redis_url", return_value="redis://example:6379/0"),
        patch("codeloop.queue.subprocess.Popen") as popen,
    ):
        popen.return_value.pid = 4242
        pid = queue._spawn_worker("run-p1")

    cmd = popen.call_args[0][0]
    assert cmd[-4:] == ["--burst", "--url", "redis://example:6379/0", QUEUE_RUNS]
    assert popen.call_args.kwargs["start_new_session"] is True
    assert pid == 4242
    assert (log_dir / "run-p1.log").exists()


def test_run_job_status_missing():
    with patch("codeloop.queue.get_job", return_value=None):
        assert get_run_job_status("p1") == {"job_id": run_job_id("p1"), "status": None}


def test_run_job_status_finished_includes_result():
    job = MagicMock()
    job.get_status.return_value = "finished"
    job.enqueued_at = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    job.started_at = None
    job.ended_at = None
    job.return_value.return_value = {"success": True, "summary": "Completed: x"}
    with patch("codeloop.queue.get_job", return_value=job):
        info = get_run_job_status("p1")
    assert info["status"] == "finished"
    assert info["enqueued_at"] == "2024-05-01T12:00:00+00:00"
    assert info["result"]["summary"] == "Completed: x"


def test_run_job_status_failed_reports_last_traceback_line():
    job = MagicMock()
    job.get_status.return_value = "failed"
    job.enqueued_at = job.started_at = job.ended_at = None
    job.exc_info = "Traceback (most recent call last):\n  ...\nRuntimeError: boom\n"
    with patch("codeloop.queue.get_job", return_value=job):
        info = get_run_job_status("p1")
    assert info["error"] == "RuntimeError: boom"


def test_queue_counts():
    q = MagicMock()
    q.__len__.return_value = 2
    with (
        patch("codeloop.queue.get_queue", return_value=q),
        patch("codeloop.queue.StartedJobRegistry") as started,
        patch("codeloop.queue.FailedJobRegistry") as failed,
    ):
        started.return_value.__len__.return_value = 1
        failed.return_value.__len__.return_value = 0
        assert get_queue_counts() == {"queued": 2, "running": 1, "failed": 0}


def test_check_redis_connection_safe_healthy():
    with patch("codeloop.queue.get_redis") as mock_redis:
        mock_redis.return_value.ping.return_value = True
        assert check_redis_connection_safe() == {"ok": True, "error": None}


def test_check_redis_connection_safe_unavailable():
    with patch("codeloop.queue.get_redis") as mock_redis:
        mock_redis.return_value.ping.side_effect = ConnectionError("redis unavailable")
        probe = check_redis_connection_safe()
    assert probe == {"ok": False, "error": "redis unavailable"}
