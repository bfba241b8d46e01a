"""Developer agent: implements one task in the project working tree."""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from typing import Any

from codeloop import knowledge
from codeloop.agents_common import AgentResult, Launcher, RetryContext, run_agent
from codeloop.agents_config import with_instructions


def _retry_section(retry: RetryContext) -> str:
    lines = [
        "[Retry Context]",
        f"This is attempt {retry.attempt} of {retry.max_attempts} for this task.",
    ]
    if retry.timed_out:
        lines.append(
            "The previous attempt TIMED OUT because it produced no output for too long. "
            "Work in smaller steps and avoid long-running commands that print nothing."
        )
    if retry.last_error:
        lines.append(f"Previous error:\n{retry.last_error}")
    return "\n".join(lines)


def build_developer_prompt(
    task: Mapping[str, Any],
    retry: RetryContext | None = None,
    knowledge_context: str = "",
) -> str:
    """Prompt for one implementation attempt.

    A retry section is added from the second attempt on. Reviewer feedback is
    included whenever present.
    """
    prompt = f"""\
You are a software developer implementing a feature. Here is your task:

Title: {task['title']}

Description:
{task['description']}

[Instructions]
1. Implement this task completely
2. Write clean, well-structured code
3. Follow existing code patterns in the project
4. Do NOT commit changes - git operations are handled for you
5. Make reasonable assumptions if anything is unclear

Do not ask clarifying questions. Just implement the task."""

    if knowledge_context:
        prompt += f"\n\n[Project Knowledge]\n{knowledge_context}"

    if retry is not None and retry.attempt > 1:
        prompt += f"\n\n{_retry_section(retry)}"

    if retry is not None and retry.reviewer_feedback:
        prompt += f"""

[IMPORTANT: Reviewer Feedback]
The previous implementation had issues that need to be fixed:

{retry.reviewer_feedback}

Address ALL the issues above in your implementation."""

    return prompt


def run_developer(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    task: Mapping[str, Any],
    launcher: Launcher,
    retry: RetryContext | None = None,
) -> AgentResult:
    knowledge_context = ""
    if project.get("use_knowledge"):
        entries = knowledge.get_relevant_knowledge(
            conn,
            project["id"],
            keywords=knowledge.extract_keywords(f"{task['title']} {task['description']}"),
            categories=knowledge.DEVELOPMENT_CATEGORIES,
            limit=5,
        )
        knowledge_context = knowledge.format_knowledge_for_prompt(entries)
    prompt = build_developer_prompt(task, retry, knowledge_context)
    prompt = with_instructions(prompt, project["path"], "developer")
    return run_agent(conn, run_id, "developer", prompt, project["path"], launcher)
