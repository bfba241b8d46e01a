"""Canonical filesystem paths for codeloop configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

_env_config = os.environ.get("CODELOOP_CONFIG_DIR")
CODELOOP_CONFIG_DIR = (
    Path(_env_config).expanduser() if _env_config else Path.home() / ".config" / "codeloop"
)

CONFIG_TOML = CODELOOP_CONFIG_DIR / "config.toml"

LOG_DIR = CODELOOP_CONFIG_DIR / "logs"

_env_db = os.environ.get("CODELOOP_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else CODELOOP_CONFIG_DIR / "codeloop.db"

# Per-project state directory inside the working tree.
PROJECT_STATE_DIRNAME = ".codeloop"
