"""Project knowledge retrieval and prompt formatting.

The database computes a relevance score (importance and recency); this
module re-ranks by keyword matches, marks what it hands out as used, and
renders entries for agent prompts.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from codeloop import db

log = logging.getLogger(__name__)

PLANNING_CATEGORIES = ("decision", "preference", "gotcha")
DEVELOPMENT_CATEGORIES = ("pattern", "gotcha", "file_note")

_CATEGORY_MARKERS = {
    "pattern": "PATTERN",
    "gotcha": "GOTCHA",
    "decision": "DECISION",
    "preference": "PREFERENCE",
    "file_note": "FILE",
}

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_\-]+")
_STOPWORDS = frozenset(
    "a an and are as at be by for from in into is it of on or that the this to "
    "with add adds make create update implement support should when then".split()
)


def parse_tags(entry: Mapping[str, Any]) -> list[str]:
    try:
        tags = json.loads(entry.get("tags") or "[]")
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


def keyword_score(entry: Mapping[str, Any], keywords: Iterable[str]) -> int:
    """+3 per keyword found in any tag, +1 per keyword found in the content."""
    tags = [t.lower() for t in parse_tags(entry)]
    content = str(entry.get("content") or "").lower()
    score = 0
    for keyword in keywords:
        needle = keyword.lower()
        if any(needle in tag for tag in tags):
            score += 3
        if needle in content:
            score += 1
    return score


def extract_keywords(text: str, limit: int = 8) -> list[str]:
    """Distinct lowercase words of *text* worth searching for, in order."""
    seen: list[str] = []
    for word in _WORD_RE.findall(text.lower()):
        if len(word) < 4 or word in _STOPWORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) >= limit:
            break
    return seen


def get_relevant_knowledge(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    keywords: Sequence[str] | None = None,
    categories: Sequence[str] | None = None,
    file_paths: Sequence[str] | None = None,
    limit: int = 10,
) -> list[db.ScoredKnowledgeRow]:
    """Return up to *limit* entries ranked for the current work.

    Without keywords the database order applies. With keywords, ordering is
    keyword score, then relevance score, then ``last_used_at`` (all
    descending). Every returned entry is marked as used.
    """
    if keywords:
        candidates = db.query_scored_knowledge(
            conn, project_id, categories=categories, file_paths=file_paths
        )
        candidates.sort(
            key=lambda e: (keyword_score(e, keywords), e["relevance_score"], e["last_used_at"]),
            reverse=True,
        )
        results = candidates[:limit]
    else:
        results = db.query_scored_knowledge(
            conn, project_id, categories=categories, file_paths=file_paths, limit=limit
        )
    if results:
        db.mark_knowledge_used(conn, [entry["id"] for entry in results])
    return results


def gather_prompt_knowledge(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    categories: Sequence[str],
    keywords: Sequence[str] | None = None,
    limit: int = 8,
) -> list[db.KnowledgeRow]:
    """Essential entries first, then relevant ones, deduplicated by id."""
    entries: list[db.KnowledgeRow] = list(db.get_essential_knowledge(conn, project_id, limit=5))
    seen = {entry["id"] for entry in entries}
    for entry in get_relevant_knowledge(
        conn, project_id, keywords=keywords, categories=categories, limit=5
    ):
        if entry["id"] not in seen:
            entries.append(entry)
            seen.add(entry["id"])
    selected = entries[:limit]
    if selected:
        db.mark_knowledge_used(conn, [entry["id"] for entry in selected])
    return selected


def format_knowledge_for_prompt(entries: Iterable[Mapping[str, Any]]) -> str:
    """One line per entry: ``[MARKER] content [tags] (file)``."""
    lines = []
    for entry in entries:
        marker = _CATEGORY_MARKERS.get(str(entry.get("category")), "NOTE")
        tags = parse_tags(entry)
        tag_str = f" [{', '.join(tags)}]" if tags else ""
        file_str = f" ({entry['file_path']})" if entry.get("file_path") else ""
        lines.append(f"[{marker}] {entry['content']}{tag_str}{file_str}")
    return "\n".join(lines)


def prune(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    max_entries: int = 100,
    max_age_days: int = 90,
) -> int:
    deleted = db.prune_knowledge(
        conn, project_id, max_entries=max_entries, max_age_days=max_age_days
    )
    if deleted:
        log.info("Pruned %d knowledge entries for project %s", deleted, project_id)
    return deleted
