"""Shared test fixtures: template DB for fast per-test isolation, fake agents."""

from __future__ import annotations

import shutil
import sqlite3
import subprocess
import tempfile
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from codeloop.db import create_project, get_connection
from codeloop.pty_driver import RunResult


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with full schema + a default project.

    Copying this file is much cheaper than running the schema and
    migrations from scratch in every test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        create_project(
            conn, name="testproj", path="/tmp/testproj", overview_path="OVERVIEW.md"
        )
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with schema + testproj pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def db_conn_path(tmp_path: Path, _db_template_path: Path) -> tuple[sqlite3.Connection, Path]:
    """Per-test DB connection + path (for tests that re-open the DB)."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn, db_path
    finally:
        conn.close()


@pytest.fixture()
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "codeloop-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "codeloop-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "codeloop-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "codeloop-tests@example.com")


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True)


@pytest.fixture()
def git_repo(tmp_path: Path, git_identity_env) -> Path:
    """A git repo with one commit containing OVERVIEW.md."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "OVERVIEW.md").write_text("# Widget service\n\nA small HTTP service for widgets.\n")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "init")
    return repo


@pytest.fixture(autouse=True)
def _isolated_config_dir(tmp_path: Path, monkeypatch):
    """Keep the user's ~/.config/codeloop (agents.toml, logs) out of tests."""
    config_dir = tmp_path / "codeloop-config"
    monkeypatch.setattr("codeloop.paths.CODELOOP_CONFIG_DIR", config_dir)
    return config_dir


# ---------------------------------------------------------------------------
# Scripted agent launcher
# ---------------------------------------------------------------------------


@dataclass
class AgentStep:
    output: str = ""
    exit_code: int = 0
    timed_out: bool = False
    action: Callable[[Path], None] | None = None
    raises: Exception | None = None


class FakeLauncher:
    """Stand-in for the PTY launcher that replays scripted agent replies per role.

    ``action`` runs against the working directory before the reply, which is
    how a scripted developer "edits files".
    """

    def __init__(self) -> None:
        self.steps: dict[str, list[AgentStep]] = defaultdict(list)
        self.calls: list[dict] = []

    def script(self, role: str, output: str = "", **kwargs) -> FakeLauncher:
        self.steps[role].append(AgentStep(output=output, **kwargs))
        return self

    def prompts(self, role: str) -> list[str]:
        return [call["prompt"] for call in self.calls if call["role"] == role]

    def roles(self) -> list[str]:
        return [call["role"] for call in self.calls]

    def __call__(self, prompt, cwd, *, role, key, on_output) -> RunResult:
        self.calls.append({"role": role, "prompt": prompt, "cwd": cwd, "key": key})
        assert self.steps[role], f"unexpected {role} invocation"
        step = self.steps[role].pop(0)
        if step.action is not None:
            step.action(Path(cwd))
        if step.raises is not None:
            raise step.raises
        if step.output:
            on_output(step.output)
        return RunResult(
            success=step.exit_code == 0 and not step.timed_out,
            output=step.output,
            timed_out=step.timed_out,
            duration=0.01,
            exit_code=-15 if step.timed_out else step.exit_code,
        )


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()
