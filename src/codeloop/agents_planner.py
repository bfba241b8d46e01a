"""Planner agents: next task, milestone breakdown and recovery.

All three share one shape: build a deterministic prompt from the project
overview and state, run the agent, pull a JSON payload out of its output
and validate it. Anything unusable comes back as "no result" rather than
an exception.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from codeloop import db, knowledge, schemas
from codeloop.agents_common import AgentResult, Launcher, read_overview, run_agent
from codeloop.agents_config import with_instructions
from codeloop.json_extract import extract_json

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedTask:
    title: str
    description: str


@dataclass(frozen=True)
class PlannerResult:
    agent: AgentResult | None
    task: PlannedTask | None = None
    milestone_complete: bool = False
    error: str | None = None


@dataclass(frozen=True)
class MilestonePlanResult:
    agent: AgentResult | None
    tasks: list[PlannedTask] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class FailedTaskContext:
    task: Mapping[str, Any]
    attempts: int
    last_error: str
    reviewer_feedback: str | None = None


@dataclass(frozen=True)
class RecoveryResult:
    agent: AgentResult | None
    task: PlannedTask | None = None
    skip_task: bool = False
    skip_reason: str | None = None
    error: str | None = None


_WHAT_NOT_HOW = """\
Focus on WHAT needs to be done, not HOW to implement it:
- Describe the feature, behavior or outcome expected
- Do NOT include code snippets, import statements or implementation details
- Let the developer decide the implementation approach"""


def _knowledge_section(knowledge_context: str) -> str:
    if not knowledge_context:
        return ""
    return (
        "[Project Knowledge]\n"
        "Important patterns, decisions and gotchas for this project:\n"
        f"{knowledge_context}\n\n"
    )


def _format_failed_task(task: Mapping[str, Any], index: int) -> str:
    line = f"{index}. [FAILED] {task['title']}"
    comments = db.parse_task_comments(task)
    if comments:
        line += f"\n   Failure notes: {'; '.join(comments)}"
    if task.get("retry_count"):
        line += f"\n   Attempts: {task['retry_count']}"
    return line


def build_planner_prompt(
    overview: str,
    milestone: Mapping[str, Any] | None,
    completed_tasks: Sequence[Mapping[str, Any]],
    failed_tasks: Sequence[Mapping[str, Any]],
    knowledge_context: str = "",
) -> str:
    """Prompt asking for the single next task of the current milestone."""
    history = (
        "\n".join(f"{i}. [DONE] {t['title']}" for i, t in enumerate(completed_tasks, 1))
        or "None yet"
    )
    if failed_tasks:
        failed = "\n".join(_format_failed_task(t, i) for i, t in enumerate(failed_tasks, 1))
        history += f"\n\n[Failed Tasks - Need Different Approach]\n{failed}"

    if milestone:
        milestone_section = (
            "[Current Milestone]\n"
            f"Title: {milestone['title']}\n"
            "Requirements:\n"
            f"{milestone.get('description') or 'No specific requirements listed'}\n\n"
            "The milestone is ONLY complete when every requirement above is covered by a "
            "completed task. Failed tasks do NOT count."
        )
    else:
        milestone_section = "[Current Milestone]\nNo milestone set - work on core features"

    return f"""\
You are a technical project planner. Given the project overview and the work done so far, \
produce the next task that needs implementation.

{overview}

{milestone_section}

[Task History]
{history}

{_knowledge_section(knowledge_context)}[Instructions]
1. Compare each milestone requirement against the completed tasks
2. If ANY requirement is not covered by a completed task, produce a task for it
3. For failed tasks, read the failure notes and propose a DIFFERENT approach:
   - Do not repeat the same title or description
   - Reduce the scope or split the work
   - Address the specific issues in the failure notes

{_WHAT_NOT_HOW}

Output ONLY a JSON object:
{{
  "title": "short descriptive title",
  "description": "what should be built, the expected behavior and any requirements"
}}

ONLY if every requirement of the milestone is satisfied by a completed task, output:
{{
  "milestone_complete": true,
  "verification": ["requirement - satisfied by task X"]
}}

Do not ask questions. Make reasonable assumptions based on the project overview."""


def parse_planner_output(output: str) -> tuple[PlannedTask | None, bool]:
    """Return ``(task, milestone_complete)`` from planner output."""
    payload = extract_json(
        output,
        expect="object",
        accept=lambda v: schemas.is_valid(v, schemas.PLANNER_OUTPUT_SCHEMA),
    )
    if payload is None:
        return None, False
    if payload.get("milestone_complete") is True:
        return None, True
    return PlannedTask(title=payload["title"], description=payload["description"]), False


def _prompt_knowledge(conn: sqlite3.Connection, project: Mapping[str, Any]) -> str:
    if not project.get("use_knowledge"):
        return ""
    entries = knowledge.gather_prompt_knowledge(
        conn, project["id"], categories=knowledge.PLANNING_CATEGORIES
    )
    return knowledge.format_knowledge_for_prompt(entries)


def run_planner(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    milestone: Mapping[str, Any] | None,
    launcher: Launcher,
) -> PlannerResult:
    try:
        overview = read_overview(project)
    except OSError as e:
        log.warning("Cannot read overview for project %s: %s", project["name"], e)
        return PlannerResult(agent=None, error=f"Failed to read project overview: {e}")

    milestone_id = milestone["id"] if milestone else None
    completed = db.list_completed_tasks(conn, project["id"], milestone_id)
    failed = db.list_failed_tasks(conn, project["id"], milestone_id)
    prompt = build_planner_prompt(
        overview, milestone, completed, failed, _prompt_knowledge(conn, project)
    )
    prompt = with_instructions(prompt, project["path"], "planner")

    result = run_agent(conn, run_id, "planner", prompt, project["path"], launcher)
    task, complete = parse_planner_output(result.output)
    error = None
    if task is None and not complete:
        error = result.error or "Planner produced no usable task"
    return PlannerResult(agent=result, task=task, milestone_complete=complete, error=error)


# -- Milestone breakdown -------------------------------------------------------


def build_milestone_planner_prompt(
    overview: str, milestone: Mapping[str, Any], knowledge_context: str = ""
) -> str:
    """Prompt asking for an ordered task list covering one milestone."""
    return f"""\
You are a technical project planner. Break the milestone below into detailed, actionable \
tasks that a developer can execute one by one.

{overview}

[Milestone to Break Down]
Title: {milestone['title']}
Description:
{milestone.get('description') or 'No specific description provided'}

{_knowledge_section(knowledge_context)}[Instructions]
Each task must be:
1. SPECIFIC and ACTIONABLE
2. SELF-CONTAINED, producing a working, testable increment
3. Described with ACCEPTANCE CRITERIA
4. ORDERED so that dependencies come first

Create 3-10 tasks depending on the milestone's complexity. Each task should fit in a single \
development session. Include setup and verification tasks where needed.

{_WHAT_NOT_HOW}

Output ONLY a JSON object:
{{
  "tasks": [
    {{"title": "First task title", "description": "What to build and how to verify it"}},
    {{"title": "Second task title", "description": "..."}}
  ]
}}"""


def parse_milestone_tasks(output: str) -> list[PlannedTask]:
    """Return the valid task entries of a milestone plan, in order."""
    payload = extract_json(
        output,
        expect="object",
        accept=lambda v: schemas.is_valid(v, schemas.MILESTONE_PLAN_SCHEMA),
    )
    if payload is None:
        return []
    tasks = []
    for entry in payload["tasks"]:
        if schemas.is_valid(entry, schemas.TASK_SCHEMA):
            tasks.append(PlannedTask(title=entry["title"], description=entry["description"]))
        else:
            log.debug("Dropping malformed milestone task entry: %r", entry)
    return tasks


def run_milestone_planner(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    milestone: Mapping[str, Any],
    launcher: Launcher,
) -> MilestonePlanResult:
    try:
        overview = read_overview(project)
    except OSError as e:
        log.warning("Cannot read overview for project %s: %s", project["name"], e)
        return MilestonePlanResult(agent=None, error=f"Failed to read project overview: {e}")

    prompt = build_milestone_planner_prompt(
        overview, milestone, _prompt_knowledge(conn, project)
    )
    prompt = with_instructions(prompt, project["path"], "planner")
    log.info("Breaking down milestone '%s'", milestone["title"])

    result = run_agent(conn, run_id, "planner", prompt, project["path"], launcher)
    tasks = parse_milestone_tasks(result.output)
    if tasks:
        log.info("Milestone '%s' planned into %d tasks", milestone["title"], len(tasks))
        return MilestonePlanResult(agent=result, tasks=tasks)
    log.warning("No tasks extracted for milestone '%s'", milestone["title"])
    return MilestonePlanResult(
        agent=result, error=result.error or "Milestone planner produced no tasks"
    )


# -- Recovery ------------------------------------------------------------------


def build_recovery_prompt(overview: str, context: FailedTaskContext) -> str:
    """Prompt asking for a simpler replacement of a task that exhausted its retries."""
    feedback = (
        f"\nReviewer feedback: {context.reviewer_feedback}" if context.reviewer_feedback else ""
    )
    return f"""\
You are a technical project planner. A task has failed after {context.attempts} attempts and \
needs to be replaced with something simpler.

[Project Overview]
{overview}

[Failed Task]
Title: {context.task['title']}
Description: {context.task['description']}

[What Went Wrong]
{context.last_error}{feedback}

[Instructions]
Propose a SIMPLER, more focused task that:
1. Covers a smaller piece of the original goal
2. Avoids the issues that caused the failure
3. Can be completed in a single session

{_WHAT_NOT_HOW}

Output ONLY a JSON object:
{{
  "title": "short descriptive title for the simpler task",
  "description": "what should be built. No code."
}}

If the task fundamentally cannot be done (missing dependencies, wrong approach), output:
{{
  "skip_task": true,
  "reason": "why this task should be skipped"
}}

Do not ask questions. Propose a concrete simpler alternative."""


def parse_recovery_output(output: str) -> tuple[PlannedTask | None, bool, str | None]:
    """Return ``(replacement, skip, reason)`` from recovery planner output."""
    payload = extract_json(
        output,
        expect="object",
        accept=lambda v: schemas.is_valid(v, schemas.RECOVERY_OUTPUT_SCHEMA),
    )
    if payload is None:
        return None, False, None
    if payload.get("skip_task") is True:
        return None, True, payload.get("reason") or "No reason given"
    return PlannedTask(title=payload["title"], description=payload["description"]), False, None


def run_recovery_planner(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    context: FailedTaskContext,
    launcher: Launcher,
) -> RecoveryResult:
    try:
        overview = read_overview(project)
    except OSError as e:
        log.warning("Cannot read overview for project %s: %s", project["name"], e)
        return RecoveryResult(agent=None, error=f"Failed to read project overview: {e}")

    prompt = build_recovery_prompt(overview, context)
    prompt = with_instructions(prompt, project["path"], "planner")
    result = run_agent(conn, run_id, "planner", prompt, project["path"], launcher)
    task, skip, reason = parse_recovery_output(result.output)
    error = None
    if task is None and not skip:
        error = result.error or "Recovery planner produced no usable result"
    return RecoveryResult(
        agent=result, task=task, skip_task=skip, skip_reason=reason, error=error
    )
