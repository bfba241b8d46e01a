"""rq-based background dispatch of orchestration runs.

``codeloop run --background`` (and any scheduler calling ``enqueue_run``)
puts a run on the queue and spawns a burst worker to execute it. One job id
per project keeps two runs of the same project from overlapping.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from contextlib import suppress
from typing import Any

from redis import ConnectionPool, Redis
from rq import Callback, Queue
from rq.job import Job
from rq.registry import FailedJobRegistry, StartedJobRegistry

from codeloop.paths import LOG_DIR
from codeloop.settings import load_settings

log = logging.getLogger(__name__)

QUEUE_RUNS = "codeloop:runs"
FAILURE_TTL = 7 * 24 * 3600  # 7 days, auto-expire failed jobs from Redis
RESULT_TTL = 24 * 3600
ACTIVE_STATUSES = {"queued", "started", "deferred", "scheduled"}

_pool: ConnectionPool | None = None


def redis_url() -> str:
    return load_settings().redis_url


def get_redis() -> Redis:
    global _pool
    if _pool is None:
        _pool = ConnectionPool.from_url(redis_url())
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_RUNS) -> Queue:
    # No rq-level timeout (-1 disables); the agent driver owns inactivity timeouts.
    return Queue(name, connection=get_redis(), default_timeout=-1)


def run_job_id(project_id: str) -> str:
    return f"run-{project_id}"


def _ensure_slot(q: Queue, project_id: str) -> None:
    """Raise if the project's run job is still active; drop a stale finished one."""
    previous = q.fetch_job(run_job_id(project_id))
    if previous is None:
        return
    status = previous.get_status(refresh=True)
    if status in ACTIVE_STATUSES:
        raise RuntimeError(f"A run for project {project_id} is already {status}")
    with suppress(Exception):
        previous.delete()


def enqueue_run(project_id: str, trigger_source: str = "manual") -> Job:
    """Queue one orchestration run for *project_id* and start a worker for it.

    Raises RuntimeError while a run job for the project is still queued or
    started.
    """
    q = get_queue(QUEUE_RUNS)
    _ensure_slot(q, project_id)
    job = q.enqueue(
        "codeloop.orchestrator.run_project",
        project_id,
        trigger_source,
        job_id=run_job_id(project_id),
        on_failure=Callback("codeloop.orchestrator.on_run_job_failure"),
        failure_ttl=FAILURE_TTL,
        result_ttl=RESULT_TTL,
        description=f"Orchestration run for project {project_id} ({trigger_source})",
    )
    _spawn_worker(run_job_id(project_id))
    return job


def _worker_command(queue_name: str) -> list[str]:
    return [sys.executable, "-m", "rq.cli", "worker", "--burst", "--url", redis_url(), queue_name]


def _spawn_worker(job_id: str, queue_name: str = QUEUE_RUNS) -> int:
    """Start a detached burst worker that drains *queue_name* and exits.

    Worker output is appended to ``~/.config/codeloop/logs/<job_id>.log``.
    Returns the worker pid.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
    with open(LOG_DIR / f"{job_id}.log", "ab") as sink:
        # The child keeps its own copy of the descriptor.
        worker = subprocess.Popen(
            _worker_command(queue_name),
            stdin=subprocess.DEVNULL,
            stdout=sink,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    log.info("Spawned rq worker pid=%d for job %s", worker.pid, job_id)
    return worker.pid


def get_job(job_id: str) -> Job | None:
    """Fetch a job by ID."""
    try:
        return Job.fetch(job_id, connection=get_redis())
    except Exception:
        return None


def get_run_job_status(project_id: str) -> dict[str, Any]:
    """Describe the project's background run job, if any."""
    job_id = run_job_id(project_id)
    job = get_job(job_id)
    if job is None:
        return {"job_id": job_id, "status": None}
    status = job.get_status(refresh=True)
    info: dict[str, Any] = {
        "job_id": job_id,
        "status": getattr(status, "value", status),
        "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
    }
    if status == "finished":
        info["result"] = job.return_value()
    elif status == "failed":
        lines = (job.exc_info or "").strip().splitlines()
        info["error"] = lines[-1] if lines else None
    return info


def get_queue_counts() -> dict[str, int]:
    q = get_queue(QUEUE_RUNS)
    return {
        "queued": len(q),
        "running": len(StartedJobRegistry(queue=q)),
        "failed": len(FailedJobRegistry(queue=q)),
    }


def check_redis_connection_safe() -> dict[str, Any]:
    """Probe Redis connectivity and never raise."""
    try:
        get_redis().ping()
        return {"ok": True, "error": None}
    except Exception as exc:
        return {"ok": False, "error": str(exc) or repr(exc)}
