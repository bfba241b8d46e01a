"""Control loop for one orchestration run.

A run picks one unit of work and drives it to an outcome through four
states::

    SELECT_WORK -> EXECUTE (1..max_retries attempts) -> FINALIZE
                                                     -> RECOVER

Each handler takes an immutable ``Step`` and returns the next one, so the
transitions can be exercised one at a time. The working tree is never
reset between attempts; it is reset once, right before recovery planning.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codeloop import db, git_ops
from codeloop.agents_common import Launcher, RetryContext, pty_launcher
from codeloop.agents_developer import run_developer
from codeloop.agents_knowledge import run_knowledge_extraction
from codeloop.agents_planner import (
    FailedTaskContext,
    run_milestone_planner,
    run_planner,
    run_recovery_planner,
)
from codeloop.agents_reviewer import format_review_feedback, run_reviewer
from codeloop.paths import DEFAULT_DB_PATH
from codeloop.registry import ProcessRegistry
from codeloop.settings import Settings, load_settings

log = logging.getLogger(__name__)

MAX_RETRIES = 3
COMMIT_PREFIX = "[codeloop]"
_OUTPUT_EXCERPT = 2000


class State(enum.Enum):
    SELECT_WORK = "select_work"
    EXECUTE = "execute"
    RECOVER = "recover"
    FINALIZE = "finalize"
    DONE = "done"


@dataclass(frozen=True)
class OrchestratorResult:
    success: bool
    run_id: str | None
    task_id: str | None
    commit_sha: str | None
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class Step:
    state: State
    task_id: str | None = None
    attempt: int = 0
    retry: RetryContext = field(default_factory=RetryContext)
    has_changes: bool = False
    result: OrchestratorResult | None = None


class Orchestrator:
    """State handlers for a single run. One instance per run."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        project: db.ProjectRow,
        launcher: Launcher,
        *,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.conn = conn
        self.run_id = run_id
        self.project = project
        self.launcher = launcher
        self.max_retries = max_retries
        self.cwd = project["path"]
        self._handlers = {
            State.SELECT_WORK: self.select_work,
            State.EXECUTE: self.execute,
            State.RECOVER: self.recover,
            State.FINALIZE: self.finalize,
        }

    def run(self, step: Step | None = None) -> OrchestratorResult:
        step = step or Step(State.SELECT_WORK)
        while step.state is not State.DONE:
            log.debug("Run %s: entering %s", self.run_id, step.state.value)
            step = self._handlers[step.state](step)
        assert step.result is not None
        return step.result

    # -- helpers --

    def _task(self, task_id: str | None) -> db.TaskRow:
        task = db.get_task(self.conn, task_id) if task_id else None
        if task is None:
            raise RuntimeError(f"Task {task_id} disappeared during run {self.run_id}")
        return task

    def _finish(
        self,
        success: bool,
        summary: str,
        task_id: str | None = None,
        commit_sha: str | None = None,
    ) -> Step:
        db.finish_run(
            self.conn,
            self.run_id,
            "completed" if success else "failed",
            summary=summary,
            commit_sha=commit_sha,
        )
        db.log_agent_complete(
            self.conn,
            self.run_id,
            "orchestrator",
            {"success": success, "task_id": task_id, "commit_sha": commit_sha, "summary": summary},
        )
        log.info("Run %s finished success=%s: %s", self.run_id, success, summary)
        result = OrchestratorResult(
            success=success,
            run_id=self.run_id,
            task_id=task_id,
            commit_sha=commit_sha,
            summary=summary,
        )
        return Step(State.DONE, task_id=task_id, result=result)

    def _start_task(self, task: db.TaskRow) -> Step:
        db.set_run_task(self.conn, self.run_id, task["id"])
        log.info("Run %s: selected task '%s' (%s)", self.run_id, task["title"], task["id"])
        return Step(
            State.EXECUTE,
            task_id=task["id"],
            retry=RetryContext(max_attempts=self.max_retries),
        )

    def _advance_milestones(self) -> tuple[db.MilestoneRow | None, bool]:
        """Resolve the current milestone, completing and advancing as needed.

        Returns ``(milestone, exhausted)``. *exhausted* is True when this call
        completed the last remaining milestone.
        """
        project_id = self.project["id"]
        current = db.get_current_milestone(self.conn, project_id)
        if current is not None and current["archived"]:
            db.activate_milestone(self.conn, project_id, None)
            current = None
        advanced = False
        while True:
            if current is None:
                current = db.get_next_pending_milestone(self.conn, project_id)
                if current is None:
                    return None, advanced
                db.activate_milestone(self.conn, project_id, current["id"])
                log.info("Run %s: milestone '%s' is now current", self.run_id, current["title"])
            stats = db.milestone_task_stats(self.conn, current["id"])
            done = stats["pending"] == 0 and stats["in_progress"] == 0
            if stats["total"] and done and stats["completed"]:
                log.info("Run %s: milestone '%s' completed", self.run_id, current["title"])
                db.complete_milestone(self.conn, current["id"])
                current = None
                advanced = True
                continue
            return current, False

    # -- states --

    def select_work(self, step: Step) -> Step:
        project_id = self.project["id"]
        while True:
            milestone, exhausted = self._advance_milestones()
            if exhausted:
                return self._finish(True, "All milestones completed")

            orphan = db.get_orphaned_task(self.conn, project_id, exclude_run_id=self.run_id)
            if orphan is not None:
                log.info("Run %s: resuming interrupted task %s", self.run_id, orphan["id"])
                return self._start_task(orphan)

            milestone_id = milestone["id"] if milestone else None
            task = db.get_next_pending_task(self.conn, project_id, milestone_id)
            if task is not None:
                return self._start_task(task)

            unplanned = (
                milestone is not None
                and db.milestone_task_stats(self.conn, milestone_id)["total"] == 0
            )
            if unplanned:
                plan = run_milestone_planner(
                    self.conn, self.run_id, self.project, milestone, self.launcher
                )
                if plan.tasks:
                    db.create_tasks_for_milestone(
                        self.conn,
                        project_id=project_id,
                        milestone_id=milestone_id,
                        tasks=[
                            {"title": t.title, "description": t.description} for t in plan.tasks
                        ],
                    )
                    continue
                log.warning(
                    "Run %s: milestone breakdown failed (%s), asking for a single task",
                    self.run_id,
                    plan.error,
                )

            planned = run_planner(self.conn, self.run_id, self.project, milestone, self.launcher)
            if planned.milestone_complete:
                if milestone is None:
                    return self._finish(True, "No remaining work reported by planner")
                log.info(
                    "Run %s: planner reports milestone '%s' complete",
                    self.run_id,
                    milestone["title"],
                )
                db.complete_milestone(self.conn, milestone["id"])
                if db.get_next_pending_milestone(self.conn, project_id) is None:
                    return self._finish(True, "All milestones completed")
                continue
            if planned.task is None:
                reason = planned.error or "planner returned nothing"
                return self._finish(False, f"No task: {reason}")

            order_index = (
                db.milestone_task_stats(self.conn, milestone_id)["total"] if milestone_id else 0
            )
            task = db.create_task(
                self.conn,
                project_id=project_id,
                milestone_id=milestone_id,
                title=planned.task.title,
                description=planned.task.description,
                order_index=order_index,
            )
            return self._start_task(task)

    def execute(self, step: Step) -> Step:
        attempt = step.attempt + 1
        task = self._task(step.task_id)
        db.update_task_status(self.conn, task["id"], "in_progress")
        retry = dataclasses.replace(step.retry, attempt=attempt, max_attempts=self.max_retries)
        log.info(
            "Run %s: attempt %d/%d for task '%s'",
            self.run_id,
            attempt,
            self.max_retries,
            task["title"],
        )

        dev = run_developer(self.conn, self.run_id, self.project, task, self.launcher, retry)
        if not dev.success:
            db.increment_task_retry(self.conn, task["id"])
            error = dev.error or "Developer agent failed"
            if dev.output:
                error += f"\n{dev.output[-_OUTPUT_EXCERPT:]}"
            next_retry = dataclasses.replace(retry, last_error=error, timed_out=dev.timed_out)
            return self._after_failed_attempt(task["id"], attempt, next_retry)

        if not git_ops.status(self.cwd).has_changes:
            log.info("Run %s: developer made no changes", self.run_id)
            return Step(State.FINALIZE, task_id=task["id"], attempt=attempt, retry=retry)

        db.update_task_status(self.conn, task["id"], "review")
        reviewed = run_reviewer(self.conn, self.run_id, self.project, self.launcher)
        if reviewed.review is None:
            log.warning(
                "Run %s: reviewer unavailable (%s), accepting changes", self.run_id, reviewed.error
            )
            db.log_agent_error(
                self.conn,
                self.run_id,
                "orchestrator",
                f"Reviewer unavailable, changes accepted: {reviewed.error}",
            )
            return Step(
                State.FINALIZE, task_id=task["id"], attempt=attempt, retry=retry, has_changes=True
            )
        if reviewed.review.approved:
            log.info("Run %s: changes approved", self.run_id)
            return Step(
                State.FINALIZE, task_id=task["id"], attempt=attempt, retry=retry, has_changes=True
            )

        feedback = (
            format_review_feedback(reviewed.review.issues)
            or "Reviewer rejected the changes without listing issues"
        )
        log.info("Run %s: reviewer requested changes:\n%s", self.run_id, feedback)
        db.update_task_status(self.conn, task["id"], "in_progress")
        db.increment_task_retry(self.conn, task["id"])
        next_retry = dataclasses.replace(
            retry,
            last_error="Reviewer rejected the implementation",
            timed_out=False,
            reviewer_feedback=feedback,
        )
        return self._after_failed_attempt(task["id"], attempt, next_retry)

    def _after_failed_attempt(self, task_id: str, attempt: int, retry: RetryContext) -> Step:
        state = State.EXECUTE if attempt < self.max_retries else State.RECOVER
        return Step(state, task_id=task_id, attempt=attempt, retry=retry, has_changes=False)

    def recover(self, step: Step) -> Step:
        task = self._task(step.task_id)
        log.info(
            "Run %s: task '%s' exhausted %d attempts, recovering",
            self.run_id,
            task["title"],
            step.attempt,
        )
        git_ops.reset_to_last_commit(self.cwd)

        context = FailedTaskContext(
            task=task,
            attempts=step.attempt,
            last_error=step.retry.last_error or "Unknown error",
            reviewer_feedback=step.retry.reviewer_feedback,
        )
        recovery = run_recovery_planner(
            self.conn, self.run_id, self.project, context, self.launcher
        )

        if recovery.skip_task:
            db.add_task_comment(self.conn, task["id"], f"Skipped: {recovery.skip_reason}")
            db.update_task_status(self.conn, task["id"], "failed")
            return self._finish(
                False, f"Task skipped: {recovery.skip_reason}", task_id=task["id"]
            )

        if recovery.task is not None:
            db.add_task_comment(
                self.conn, task["id"], f"Replaced by simpler task: {recovery.task.title}"
            )
            db.update_task_status(self.conn, task["id"], "failed")
            replacement = db.create_task(
                self.conn,
                project_id=task["project_id"],
                milestone_id=task["milestone_id"],
                title=recovery.task.title,
                description=recovery.task.description,
                priority=task["priority"],
                order_index=task["order_index"],
                is_injected=bool(task["is_injected"]),
            )
            db.set_run_task(self.conn, self.run_id, replacement["id"])
            return self._finish(
                False,
                f"Task failed after {step.attempt} attempts, replaced by: {replacement['title']}",
                task_id=replacement["id"],
            )

        db.add_task_comment(self.conn, task["id"], "Recovery planning failed")
        db.update_task_status(self.conn, task["id"], "failed")
        return self._finish(
            False,
            f"Task failed after {step.attempt} attempts: {recovery.error}",
            task_id=task["id"],
        )

    def finalize(self, step: Step) -> Step:
        task = self._task(step.task_id)
        commit_sha: str | None = None
        if git_ops.status(self.cwd).has_changes:
            git_ops.stage_all(self.cwd)
            author = None
            if self.project["git_author_name"] and self.project["git_author_email"]:
                author = (self.project["git_author_name"], self.project["git_author_email"])
            commit_sha = git_ops.commit(self.cwd, f"{COMMIT_PREFIX} {task['title']}", author)
            log.info("Run %s: committed %s", self.run_id, commit_sha[:12])

            if git_ops.has_remote(self.cwd):
                branch = git_ops.current_branch(self.cwd)
                try:
                    git_ops.push(self.cwd, "origin", branch)
                except RuntimeError as e:
                    log.warning("Run %s: push to origin/%s failed: %s", self.run_id, branch, e)
                    db.log_agent_error(self.conn, self.run_id, "orchestrator", str(e))

            if self.project["use_knowledge"]:
                try:
                    run_knowledge_extraction(
                        self.conn, self.run_id, self.project, task, self.launcher
                    )
                except Exception:
                    log.warning(
                        "Run %s: knowledge extraction failed", self.run_id, exc_info=True
                    )

        db.update_task_status(self.conn, task["id"], "completed")
        return self._finish(
            True, f"Completed: {task['title']}", task_id=task["id"], commit_sha=commit_sha
        )


def run_orchestrator(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    launcher: Launcher,
    trigger_source: str = "cli",
    max_retries: int = MAX_RETRIES,
) -> OrchestratorResult:
    """Execute one run for *project_id* and return its outcome.

    Infrastructure failures are caught here, recorded in the run's logs and
    turned into a failed result.
    """
    project = db.get_project(conn, project_id)
    if project is None:
        return OrchestratorResult(
            success=False,
            run_id=None,
            task_id=None,
            commit_sha=None,
            summary=f"Project not found: {project_id}",
        )

    stale = db.fail_stale_runs(conn, project["id"], "Interrupted")
    if stale:
        log.warning("Marked %d interrupted run(s) of %s as failed", stale, project["name"])

    run = db.create_run(conn, project["id"], trigger_source=trigger_source)
    db.log_agent_start(
        conn, run["id"], "orchestrator", f"Starting run for project {project['name']}"
    )
    log.info("Run %s started for project %s (%s)", run["id"], project["name"], trigger_source)

    orchestrator = Orchestrator(conn, run["id"], project, launcher, max_retries=max_retries)
    try:
        if not Path(project["path"]).is_dir():
            raise FileNotFoundError(f"Project directory does not exist: {project['path']}")
        return orchestrator.run()
    except Exception as e:
        log.exception("Run %s failed", run["id"])
        message = f"{type(e).__name__}: {e}"
        current = db.get_run(conn, run["id"])
        task_id = current["task_id"] if current else None
        db.log_agent_error(conn, run["id"], "orchestrator", message)
        if current is not None and current["finished_at"] is None:
            db.finish_run(conn, run["id"], "failed", summary=message)
        return OrchestratorResult(
            success=False,
            run_id=run["id"],
            task_id=task_id,
            commit_sha=None,
            summary=message,
        )


def run_project(
    project_id: str,
    trigger_source: str = "cli",
    *,
    db_path: Path | None = None,
    settings: Settings | None = None,
    registry: ProcessRegistry | None = None,
) -> dict[str, Any]:
    """Open a connection, run once with the PTY launcher and return a JSON-able result.

    Entry point for both the CLI and queued background jobs.
    """
    settings = settings or load_settings()
    with db.connect(db_path or DEFAULT_DB_PATH) as conn:
        result = run_orchestrator(
            conn,
            project_id,
            launcher=pty_launcher(settings, registry),
            trigger_source=trigger_source,
            max_retries=settings.max_retries,
        )
    return result.to_dict()


def on_run_job_failure(job, connection, exc_type, exc_value, traceback) -> None:
    """rq failure callback: close out runs the dead worker left open."""
    project_id = job.args[0] if job.args else None
    if not project_id:
        return
    log.error("Run job %s for project %s failed: %s", job.id, project_id, exc_value)
    with db.connect(DEFAULT_DB_PATH) as conn:
        db.fail_stale_runs(conn, project_id, f"Worker failure: {exc_value}")
