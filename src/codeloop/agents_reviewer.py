"""Reviewer agent: judges the uncommitted working-tree diff."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from codeloop import git_ops, schemas
from codeloop.agents_common import AgentResult, Launcher, run_agent
from codeloop.agents_config import with_instructions
from codeloop.json_extract import extract_json

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewIssue:
    severity: str
    description: str
    file: str | None = None
    line: int | None = None


@dataclass(frozen=True)
class Review:
    approved: bool
    issues: list[ReviewIssue] = field(default_factory=list)


@dataclass(frozen=True)
class ReviewResult:
    agent: AgentResult | None
    review: Review | None
    error: str | None = None


def build_reviewer_prompt(diff: str) -> str:
    return f"""\
You are a senior code reviewer. Review these code changes for issues:

```diff
{diff}
```

[Review Criteria]
1. Security vulnerabilities (injection, unsafe deserialization, secrets)
2. Bugs and logic errors
3. Missing error handling
4. Performance issues
5. Code quality and maintainability

[Instructions]
- Focus on substantive issues, not style preferences
- Only mark as NOT approved if there are blocking issues
- Be specific about what needs to change

Output ONLY a JSON object:
{{
  "approved": true or false,
  "issues": [
    {{
      "severity": "blocking" | "warning" | "info",
      "description": "description of the issue",
      "file": "path/to/file",
      "line": 42
    }}
  ]
}}

If there are no issues, output:
{{"approved": true, "issues": []}}

Do not ask questions. Provide your review."""


def parse_review_output(output: str) -> Review | None:
    """Return the review verdict, or ``None`` when no valid verdict is present."""
    payload = extract_json(
        output,
        expect="object",
        accept=lambda v: schemas.is_valid(v, schemas.REVIEW_OUTPUT_SCHEMA),
    )
    if payload is None:
        return None
    issues = []
    for raw in payload.get("issues") or []:
        if not schemas.is_valid(raw, schemas.REVIEW_ISSUE_SCHEMA):
            log.debug("Dropping malformed review issue: %r", raw)
            continue
        issues.append(
            ReviewIssue(
                severity=raw["severity"],
                description=raw["description"],
                file=raw.get("file"),
                line=raw.get("line"),
            )
        )
    return Review(approved=payload["approved"], issues=issues)


def _format_issue(index: int, issue: ReviewIssue) -> str:
    line = f"{index}. {issue.description}"
    if issue.file:
        location = f"{issue.file}:{issue.line}" if issue.line else issue.file
        line += f" ({location})"
    return line


def format_review_feedback(issues: Iterable[ReviewIssue]) -> str:
    """Render blocking issues then warnings as developer-facing feedback."""
    issues = list(issues)
    blocking = [i for i in issues if i.severity == "blocking"]
    warnings = [i for i in issues if i.severity == "warning"]
    sections = []
    if blocking:
        lines = "\n".join(_format_issue(n, i) for n, i in enumerate(blocking, 1))
        sections.append(f"BLOCKING ISSUES (must fix):\n{lines}")
    if warnings:
        lines = "\n".join(_format_issue(n, i) for n, i in enumerate(warnings, 1))
        sections.append(f"WARNINGS (should fix):\n{lines}")
    return "\n\n".join(sections)


def run_reviewer(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    launcher: Launcher,
    max_diff_chars: int = git_ops.MAX_DIFF_CHARS,
) -> ReviewResult:
    try:
        diff = git_ops.diff_head(project["path"], max_chars=max_diff_chars)
    except RuntimeError as e:
        log.warning("Cannot collect diff for review: %s", e)
        return ReviewResult(agent=None, review=None, error=str(e))
    if not diff:
        return ReviewResult(agent=None, review=Review(approved=True))

    prompt = with_instructions(build_reviewer_prompt(diff), project["path"], "reviewer")
    result = run_agent(conn, run_id, "reviewer", prompt, project["path"], launcher)
    if not result.success:
        return ReviewResult(agent=result, review=None, error=result.error or "Reviewer failed")
    review = parse_review_output(result.output)
    error = None
    if review is None:
        error = result.error or "Reviewer produced no verdict"
    return ReviewResult(agent=result, review=review, error=error)
