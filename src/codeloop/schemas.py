"""JSON schemas for structured agent output.

Agents reply in free text; ``json_extract`` finds the payload and the
schemas below decide whether it is usable. A payload that fails
validation is treated the same as no payload at all.
"""

from __future__ import annotations

from typing import Any

from jsonschema import Draft202012Validator


_NON_EMPTY_STRING: dict = {"type": "string", "minLength": 1}

# -- Task schemas ------------------------------------------------------------
# A single task proposal, shared by the next-task, milestone and recovery
# planners.

TASK_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "title": {
            **_NON_EMPTY_STRING,
            "description": "Short task title in imperative form",
        },
        "description": {
            **_NON_EMPTY_STRING,
            "description": "Implementation details and acceptance criteria",
        },
    },
    "required": ["title", "description"],
}

MILESTONE_COMPLETE_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "milestone_complete": {"const": True},
        "reason": {"type": "string"},
    },
    "required": ["milestone_complete"],
}

PLANNER_OUTPUT_SCHEMA: dict = {
    "anyOf": [MILESTONE_COMPLETE_SCHEMA, TASK_SCHEMA],
}

# Individual entries are validated against TASK_SCHEMA so one malformed
# task does not discard the batch.
MILESTONE_PLAN_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "tasks": {"type": "array"},
    },
    "required": ["tasks"],
}

# -- Recovery schema ---------------------------------------------------------

SKIP_TASK_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "skip_task": {"const": True},
        "reason": {
            "type": "string",
            "description": "Why the task cannot be completed",
        },
    },
    "required": ["skip_task"],
}

RECOVERY_OUTPUT_SCHEMA: dict = {
    "anyOf": [SKIP_TASK_SCHEMA, TASK_SCHEMA],
}

# -- Review schema -----------------------------------------------------------

REVIEW_ISSUE_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "severity": {"enum": ["blocking", "warning", "info"]},
        "description": _NON_EMPTY_STRING,
        "file": {"type": ["string", "null"]},
        "line": {"type": ["integer", "null"]},
    },
    "required": ["severity", "description"],
}

# Malformed issues are dropped individually; only the verdict is required.
REVIEW_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "issues": {"type": "array"},
    },
    "required": ["approved"],
}

# -- Knowledge schema --------------------------------------------------------

KNOWLEDGE_ENTRY_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "category": {"enum": ["pattern", "gotcha", "decision", "preference", "file_note"]},
        "content": _NON_EMPTY_STRING,
        "tags": {"type": "array", "items": {"type": "string"}},
        "file_path": {"type": ["string", "null"]},
        "importance": {"type": "number"},
    },
    "required": ["category", "content", "tags", "importance"],
}

KNOWLEDGE_OUTPUT_SCHEMA: dict = {
    "type": "array",
    "items": {"type": "object"},
}


def is_valid(instance: Any, schema: dict) -> bool:
    """Return True when *instance* satisfies *schema*."""
    return Draft202012Validator(schema).is_valid(instance)
