"""Shared plumbing for agent invocations: audit logging, launchers, context."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from codeloop import db
from codeloop.pty_driver import OutputSink, RunResult, run_agent_command
from codeloop.registry import ProcessRegistry
from codeloop.settings import Settings

log = logging.getLogger(__name__)
output_log = logging.getLogger("codeloop.agent_output")


class Launcher(Protocol):
    """Runs one agent prompt to completion and reports how it went."""

    def __call__(
        self,
        prompt: str,
        cwd: str,
        *,
        role: str,
        key: str,
        on_output: OutputSink,
    ) -> RunResult: ...


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: str
    duration: float
    timed_out: bool
    exit_code: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class RetryContext:
    """What the developer needs to know about earlier attempts of a task."""

    attempt: int = 1
    max_attempts: int = 3
    last_error: str | None = None
    timed_out: bool = False
    reviewer_feedback: str | None = None


def pty_launcher(settings: Settings, registry: ProcessRegistry | None = None) -> Launcher:
    """Launcher that runs the configured agent CLI under a PTY."""

    def launch(
        prompt: str,
        cwd: str,
        *,
        role: str,
        key: str,
        on_output: OutputSink,
    ) -> RunResult:
        return run_agent_command(
            prompt,
            cwd,
            settings=settings,
            on_output=on_output,
            registry=registry,
            registry_key=key if registry is not None else None,
        )

    return launch


def run_agent(
    conn: sqlite3.Connection,
    run_id: str,
    agent: str,
    prompt: str,
    cwd: str,
    launcher: Launcher,
    *,
    role: str | None = None,
) -> AgentResult:
    """Invoke one agent and write its audit trail to the run's logs.

    Never raises for agent misbehaviour: a launcher exception becomes a
    failed ``AgentResult`` carrying whatever output arrived before it.
    """
    role = role or agent
    db.log_agent_start(conn, run_id, agent, prompt)
    db.log_agent_prompt(conn, run_id, agent, prompt)
    log.info("Run %s: invoking %s agent (%d chars prompt)", run_id, role, len(prompt))

    chunks: list[str] = []

    def on_output(text: str) -> None:
        chunks.append(text)
        output_log.debug("[%s] %s", role, text)

    try:
        result = launcher(prompt, cwd, role=role, key=f"{run_id}:{role}", on_output=on_output)
    except Exception as e:
        message = f"{type(e).__name__}: {e}"
        log.warning("Run %s: %s agent could not be run: %s", run_id, role, message)
        db.log_agent_error(conn, run_id, agent, message)
        return AgentResult(
            success=False,
            output="".join(chunks),
            duration=0.0,
            timed_out=False,
            error=message,
        )

    db.log_agent_response(conn, run_id, agent, result.output)
    error: str | None = None
    if result.timed_out:
        error = "Agent timed out due to inactivity"
        db.log_agent_error(conn, run_id, agent, error, {"duration": result.duration})
    if result.success:
        db.log_agent_complete(
            conn,
            run_id,
            agent,
            {"duration": result.duration, "exit_code": result.exit_code},
        )
    else:
        exit_error = f"Agent exited with code {result.exit_code}"
        db.log_agent_error(
            conn,
            run_id,
            agent,
            exit_error,
            {"duration": result.duration, "timed_out": result.timed_out},
        )
        error = error or exit_error
    log.info(
        "Run %s: %s agent finished success=%s timed_out=%s in %.1fs",
        run_id,
        role,
        result.success,
        result.timed_out,
        result.duration,
    )
    return AgentResult(
        success=result.success,
        output=result.output,
        duration=result.duration,
        timed_out=result.timed_out,
        exit_code=result.exit_code,
        error=error,
    )


def read_overview(project: Mapping[str, Any]) -> str:
    """Read the project's overview document. Raises OSError when unreadable."""
    path = Path(project["overview_path"])
    if not path.is_absolute():
        path = Path(project["path"]) / path
    return path.read_text(encoding="utf-8")
