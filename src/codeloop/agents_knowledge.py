"""Knowledge extraction from the commit a task just produced."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from typing import Any

from codeloop import db, git_ops, schemas
from codeloop.agents_common import Launcher, run_agent
from codeloop.agents_config import with_instructions
from codeloop.json_extract import extract_json

log = logging.getLogger(__name__)

MAX_ENTRIES = 3


def build_extraction_prompt(
    task: Mapping[str, Any], changed_files: list[str], diff_stat: str
) -> str:
    files = "\n".join(changed_files)
    return f"""\
You are analyzing a completed development task to extract reusable knowledge for future work.

[Completed Task]
Title: {task['title']}
Description: {task['description']}

[Changed Files]
{files}

[Change Summary]
{diff_stat}

[Instructions]
Extract 0-{MAX_ENTRIES} reusable learnings. Only keep what helps with future similar work.

Categories:
- pattern: an approach that worked well
- gotcha: a pitfall that was discovered and solved
- decision: an architectural or design decision
- preference: a convention the project follows
- file_note: important information about a specific file

Keep each entry under 100 words, actionable and specific, with tags for searchability and an \
importance from 1 to 10 (10 = critical for future work).

Output ONLY a JSON array:
[
  {{
    "category": "pattern" | "gotcha" | "decision" | "preference" | "file_note",
    "tags": ["tag1", "tag2"],
    "content": "concise description of the learning",
    "file_path": "optional/path/to/file",
    "importance": 5
  }}
]

If nothing is worth extracting, output an empty array: []"""


def parse_extraction_output(output: str) -> list[dict[str, Any]]:
    """Return valid knowledge entries (at most ``MAX_ENTRIES``)."""
    payload = extract_json(
        output,
        expect="array",
        accept=lambda v: schemas.is_valid(v, schemas.KNOWLEDGE_OUTPUT_SCHEMA),
    )
    if not payload:
        return []
    entries = []
    for raw in payload:
        if not schemas.is_valid(raw, schemas.KNOWLEDGE_ENTRY_SCHEMA):
            log.debug("Dropping malformed knowledge entry: %r", raw)
            continue
        file_path = raw.get("file_path")
        entries.append(
            {
                "category": raw["category"],
                "tags": [t for t in raw["tags"] if isinstance(t, str)],
                "content": raw["content"],
                "file_path": file_path if isinstance(file_path, str) else None,
                "importance": int(raw["importance"]),
            }
        )
    return entries[:MAX_ENTRIES]


def run_knowledge_extraction(
    conn: sqlite3.Connection,
    run_id: str,
    project: Mapping[str, Any],
    task: Mapping[str, Any],
    launcher: Launcher,
) -> int:
    """Extract and store knowledge for *task*. Returns the number of entries saved."""
    changed_files, diff_stat = git_ops.last_commit_changes(project["path"])
    if not changed_files:
        return 0

    prompt = build_extraction_prompt(task, changed_files, diff_stat)
    prompt = with_instructions(prompt, project["path"], "knowledge")
    result = run_agent(
        conn, run_id, "orchestrator", prompt, project["path"], launcher, role="knowledge"
    )
    if not result.success:
        log.info("Knowledge extraction for task %s did not succeed", task["id"])
        return 0

    entries = parse_extraction_output(result.output)
    for entry in entries:
        db.create_knowledge(
            conn,
            project_id=project["id"],
            source_task_id=task["id"],
            **entry,
        )
    log.info("Saved %d knowledge entries from task %s", len(entries), task["id"])
    return len(entries)
