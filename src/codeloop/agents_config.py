"""Extra per-role prompt instructions kept in ``agents.toml``.

Two scopes are layered, global first, then project::

    ~/.config/codeloop/agents.toml
    <project>/.codeloop/agents.toml

A role is either a table with an ``instructions`` key or a bare string::

    [developer]
    instructions = \"\"\"
    Run the test suite before finishing.
    \"\"\"

    reviewer = "Flag missing tests."
"""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path

from codeloop import paths

log = logging.getLogger(__name__)

ROLES = ("planner", "developer", "reviewer", "knowledge")

_HEADERS = {
    "planner": "Next-task, milestone and recovery planning",
    "developer": "Implementation attempts",
    "reviewer": "Diff review",
    "knowledge": "Knowledge extraction after a commit",
}


def _role(name: str) -> str | None:
    name = name.strip().lower()
    return name if name in ROLES else None


def _require_role(name: str) -> str:
    role = _role(name)
    if role is None:
        raise ValueError(f"Unknown role: {name}. Supported: {', '.join(ROLES)}")
    return role


def config_path(project_dir: str | None) -> Path:
    """The project's ``agents.toml``, or the global one when *project_dir* is None."""
    if project_dir is None:
        return paths.CODELOOP_CONFIG_DIR / "agents.toml"
    if not project_dir:
        raise ValueError("project_dir must not be empty")
    return Path(project_dir) / paths.PROJECT_STATE_DIRNAME / "agents.toml"


def _load(path: Path) -> dict[str, str]:
    """Role -> stripped instructions for every known role set in *path*."""
    try:
        document = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        log.warning("Ignoring unreadable %s: %s", path, e)
        return {}

    found: dict[str, str] = {}
    for role in ROLES:
        value = document.get(role)
        if isinstance(value, dict):
            value = value.get("instructions")
        if isinstance(value, str) and value.strip():
            found[role] = value.strip()
    return found


def read_instructions(project_dir: str | None, role: str) -> str:
    """Instructions for *role* from one scope only."""
    known = _role(role)
    if known is None:
        return ""
    return _load(config_path(project_dir)).get(known, "")


def merged_instructions(project_dir: str | None, role: str) -> str:
    """Global then project instructions for *role*, blank-line separated."""
    known = _role(role)
    if known is None:
        return ""
    scopes = [None, project_dir] if project_dir else [None]
    parts = [_load(config_path(scope)).get(known, "") for scope in scopes]
    return "\n\n".join(part for part in parts if part)


def with_instructions(prompt: str, project_dir: str | None, role: str) -> str:
    extra = merged_instructions(project_dir, role)
    if not extra:
        return prompt
    return f"{prompt}\n\n[Additional Instructions]\n{extra}"


def _toml_block(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"""', '""\\"')
    return f'"""\n{escaped}\n"""'


def _dump(roles: dict[str, str]) -> str:
    blocks = [
        f"# {_HEADERS[role]}\n[{role}]\ninstructions = {_toml_block(roles[role])}"
        for role in ROLES
        if roles.get(role)
    ]
    return "\n\n".join(blocks) + "\n" if blocks else ""


def _save(path: Path, roles: dict[str, str]) -> None:
    content = _dump(roles)
    if content:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    elif path.exists():
        path.unlink()


def write_instructions(project_dir: str | None, role: str, text: str) -> Path:
    """Store *text* for *role*; blank text removes the role. Returns the file path."""
    known = _require_role(role)
    path = config_path(project_dir)
    roles = _load(path)
    roles[known] = text.strip()
    _save(path, roles)
    return path


def clear_instructions(project_dir: str | None, role: str) -> Path:
    """Remove *role*, deleting the file once no role is left."""
    return write_instructions(project_dir, role, "")
