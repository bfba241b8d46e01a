"""Git operations used by the orchestrator and the agents.

Functions raise RuntimeError on failure (not ClickException),
so they can be used from both cli.py and queued workers.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

MAX_DIFF_CHARS = 50_000


@dataclass(frozen=True)
class GitStatus:
    has_changes: bool
    staged: list[str] = field(default_factory=list)
    unstaged: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)


def _git(
    args: list[str],
    cwd: str,
    *,
    what: str,
    env: dict[str, str] | None = None,
) -> str:
    """Run git and return stdout. Raises RuntimeError with git's stderr."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            env=env,
        )
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise RuntimeError(f"Failed to {what}: {detail}") from None
    except FileNotFoundError as e:
        raise RuntimeError(f"Failed to {what}: {e}") from None
    return result.stdout


def _succeeds(args: list[str], cwd: str) -> bool:
    try:
        result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return result.returncode == 0


def is_git_repo(cwd: str) -> bool:
    return _succeeds(["rev-parse", "--git-dir"], cwd)


def has_commits(cwd: str) -> bool:
    return _succeeds(["rev-parse", "--verify", "--quiet", "HEAD"], cwd)


def status(cwd: str) -> GitStatus:
    """Parse ``git status --porcelain`` into staged/unstaged/untracked paths."""
    out = _git(
        ["status", "--porcelain", "--untracked-files=all"], cwd, what="read git status"
    )
    staged: list[str] = []
    unstaged: list[str] = []
    untracked: list[str] = []
    lines = [line for line in out.splitlines() if line.strip()]
    for line in lines:
        index_status, work_status, path = line[0], line[1], line[3:]
        if index_status == "?":
            untracked.append(path)
            continue
        if index_status != " ":
            staged.append(path)
        if work_status != " ":
            unstaged.append(path)
    return GitStatus(
        has_changes=bool(lines), staged=staged, unstaged=unstaged, untracked=untracked
    )


def stage_all(cwd: str) -> None:
    _git(["add", "-A"], cwd, what="stage changes")


def latest_commit_sha(cwd: str) -> str:
    return _git(["rev-parse", "HEAD"], cwd, what="resolve HEAD").strip()


def commit(cwd: str, message: str, author: tuple[str, str] | None = None) -> str:
    """Commit the index and return the new commit sha.

    *author* is an optional ``(name, email)`` override applied to both the
    author and committer identity.
    """
    env = None
    if author is not None:
        name, email = author
        env = {
            **os.environ,
            "GIT_AUTHOR_NAME": name,
            "GIT_AUTHOR_EMAIL": email,
            "GIT_COMMITTER_NAME": name,
            "GIT_COMMITTER_EMAIL": email,
        }
    _git(["commit", "-m", message], cwd, what="commit", env=env)
    return latest_commit_sha(cwd)


def current_branch(cwd: str) -> str:
    """Current branch name; ``main`` when detached or unresolvable."""
    try:
        branch = _git(["branch", "--show-current"], cwd, what="read current branch").strip()
    except RuntimeError:
        return "main"
    return branch or "main"


def has_remote(cwd: str, remote: str = "origin") -> bool:
    return _succeeds(["remote", "get-url", remote], cwd)


def push(cwd: str, remote: str = "origin", branch: str | None = None) -> None:
    branch = branch or current_branch(cwd)
    _git(["push", remote, branch], cwd, what=f"push to {remote}/{branch}")


def reset_to_last_commit(cwd: str) -> None:
    """Discard tracked changes and remove untracked files and directories."""
    log.info("Resetting working tree %s to HEAD", cwd)
    _git(["reset", "--hard", "HEAD"], cwd, what="reset working tree")
    _git(["clean", "-fd"], cwd, what="clean untracked files")


def diff_head(cwd: str, max_chars: int = MAX_DIFF_CHARS) -> str:
    """Working tree diff against HEAD plus a listing of untracked files.

    Returns an empty string when there is nothing to review. Output longer
    than *max_chars* is truncated with a marker line.
    """
    diff = _git(["diff", "HEAD"], cwd, what="diff against HEAD") if has_commits(cwd) else ""
    untracked = status(cwd).untracked
    parts: list[str] = []
    if diff.strip():
        parts.append(diff.rstrip("\n"))
    if untracked:
        listing = "\n".join(f"  {path}" for path in untracked)
        parts.append(f"Untracked files:\n{listing}")
    text = "\n\n".join(parts)
    if len(text) > max_chars:
        text = text[:max_chars] + f"\n\n[diff truncated at {max_chars} characters]"
    return text


def last_commit_changes(cwd: str) -> tuple[list[str], str]:
    """Files changed by HEAD and its ``--stat`` summary.

    Works for the root commit too. Returns ``([], "")`` when there is no HEAD.
    """
    if not has_commits(cwd):
        return [], ""
    names = _git(
        ["diff-tree", "--root", "--no-commit-id", "-r", "--name-only", "HEAD"],
        cwd,
        what="list changed files",
    )
    stat = _git(["show", "--stat", "--format=", "HEAD"], cwd, what="summarize last commit")
    return [line for line in names.splitlines() if line.strip()], stat.strip()
