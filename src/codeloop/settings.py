"""Runtime settings for the orchestrator and the agent driver.

Values come from ``~/.config/codeloop/config.toml`` and are overridden by
environment variables::

    [agent]
    command = "claude"
    args = ["--dangerously-skip-permissions", "--verbose"]
    inactivity_timeout = 600

    [orchestrator]
    max_retries = 3

    [queue]
    redis_url = "redis://localhost:6379/0"
"""

from __future__ import annotations

import logging
import os
import shlex
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codeloop.paths import CONFIG_TOML

log = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_AGENT_ARGS = ("--dangerously-skip-permissions", "--verbose")
DEFAULT_INACTIVITY_TIMEOUT = 600.0  # 10 minutes without output
DEFAULT_MAX_RETRIES = 3
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass(frozen=True)
class Settings:
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_args: tuple[str, ...] = field(default=DEFAULT_AGENT_ARGS)
    inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    redis_url: str = DEFAULT_REDIS_URL


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _section(document: dict[str, Any], name: str) -> dict[str, Any]:
    raw = document.get(name)
    return raw if isinstance(raw, dict) else {}


def _positive_float(value: object, name: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{name} must be positive, got {number}")
    return number


def _positive_int(value: object, name: str) -> int:
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if number < 1:
        raise ValueError(f"{name} must be at least 1, got {number}")
    return number


def load_settings(
    config_path: Path = CONFIG_TOML,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Resolve settings from the TOML file then environment overrides.

    Raises ``ValueError`` when a configured value is malformed.
    """
    env = os.environ if env is None else env
    document = _read_toml_file(config_path)
    agent = _section(document, "agent")
    orchestrator = _section(document, "orchestrator")
    queue = _section(document, "queue")

    command = env.get("CODELOOP_AGENT_COMMAND") or agent.get("command") or DEFAULT_AGENT_COMMAND

    args: tuple[str, ...]
    if "CODELOOP_AGENT_ARGS" in env:
        args = tuple(shlex.split(env["CODELOOP_AGENT_ARGS"]))
    elif isinstance(agent.get("args"), list):
        args = tuple(str(a) for a in agent["args"])
    else:
        args = DEFAULT_AGENT_ARGS

    timeout_raw = env.get("CODELOOP_INACTIVITY_TIMEOUT", agent.get("inactivity_timeout"))
    inactivity_timeout = (
        DEFAULT_INACTIVITY_TIMEOUT
        if timeout_raw is None
        else _positive_float(timeout_raw, "inactivity_timeout")
    )

    retries_raw = env.get("CODELOOP_MAX_RETRIES", orchestrator.get("max_retries"))
    max_retries = (
        DEFAULT_MAX_RETRIES if retries_raw is None else _positive_int(retries_raw, "max_retries")
    )

    redis_url = env.get("CODELOOP_REDIS_URL") or queue.get("redis_url") or DEFAULT_REDIS_URL

    return Settings(
        agent_command=str(command),
        agent_args=args,
        inactivity_timeout=inactivity_timeout,
        max_retries=max_retries,
        redis_url=str(redis_url),
    )
