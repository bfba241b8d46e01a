"""Tests for the CLI commands."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from codeloop import __version__
from codeloop.cli import main
from codeloop.db import (
    activate_milestone,
    add_task_comment,
    create_milestone,
    create_project,
    create_run,
    create_task,
    get_connection,
    get_project,
    log_agent_complete,
    log_agent_start,
)
from codeloop.registry import ProcessRegistry


@pytest.fixture()
def cli(db_conn_path):
    """Invoke the CLI against the per-test DB; returns (invoke, conn)."""
    conn, db_path = db_conn_path
    runner = CliRunner()

    def invoke(*args, input=None):
        return runner.invoke(main, list(args), input=input)

    with (
        patch("codeloop.db.get_connection", side_effect=lambda *_: get_connection(db_path)),
        patch("codeloop.cli._configure_logging"),
    ):
        yield invoke, conn


def _ok(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def _error(result):
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    return payload["error"]


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_unknown_command_suggests_close_match():
    error = _error(CliRunner().invoke(main, ["projekt"]))
    assert "No such command 'projekt'" in error
    assert "Did you mean: project?" in error


def test_unknown_option_is_json():
    error = _error(CliRunner().invoke(main, ["runs", "--no-such-flag"]))
    assert "no-such-flag" in error.lower() or "no such option" in error.lower()


# -- project --


def test_project_add(cli, git_repo):
    invoke, conn = cli
    payload = _ok(invoke("project", "add", "widgets", "-d", str(git_repo)))
    assert payload["name"] == "widgets"
    assert payload["path"] == str(git_repo)
    assert payload["overview_path"] == "OVERVIEW.md"
    assert payload["use_knowledge"] == 1
    assert payload["warnings"] == []
    assert get_project(conn, "widgets")["id"] == payload["id"]


def test_project_add_options_and_missing_overview(cli, git_repo):
    invoke, _ = cli
    payload = _ok(
        invoke(
            "project", "add", "widgets", "-d", str(git_repo),
            "--overview", "docs/PLAN.md", "--no-knowledge",
            "--author-name", "Loop Bot", "--author-email", "bot@example.com",
        )
    )
    assert payload["use_knowledge"] == 0
    assert payload["git_author_name"] == "Loop Bot"
    assert payload["warnings"] == [f"Overview document not found at {git_repo}/docs/PLAN.md"]


def test_project_add_rejects_plain_directory(cli, tmp_path):
    invoke, _ = cli
    plain = tmp_path / "plain"
    plain.mkdir()
    assert "is not a git repository" in _error(invoke("project", "add", "x", "-d", str(plain)))


def test_project_add_requires_both_author_fields(cli, git_repo):
    invoke, _ = cli
    error = _error(invoke("project", "add", "x", "-d", str(git_repo), "--author-name", "A"))
    assert "--author-email" in error


def test_project_add_duplicates(cli, git_repo):
    invoke, _ = cli
    _ok(invoke("project", "add", "widgets", "-d", str(git_repo)))
    assert "already registered" in _error(invoke("project", "add", "widgets", "-d", str(git_repo)))
    assert "already registered" in _error(invoke("project", "add", "other", "-d", str(git_repo)))


def test_project_list_and_show(cli):
    invoke, conn = cli
    names = [p["name"] for p in _ok(invoke("project", "list"))]
    assert names == ["testproj"]

    shown = _ok(invoke("project", "show", "testproj"))
    assert shown["current_milestone"] is None

    proj = get_project(conn, "testproj")
    milestone = create_milestone(conn, project_id=proj["id"], title="Auth")
    activate_milestone(conn, proj["id"], milestone["id"])
    create_task(
        conn, project_id=proj["id"], milestone_id=milestone["id"], title="Login", description="d"
    )
    shown = _ok(invoke("project", "show", proj["id"]))
    assert shown["current_milestone"]["title"] == "Auth"
    assert shown["current_milestone"]["tasks"]["pending"] == 1


def test_project_show_not_found(cli):
    invoke, _ = cli
    error = _error(invoke("project", "show", "ghost"))
    assert "Project 'ghost' not found." in error
    assert "codeloop project list" in error


def test_project_set(cli):
    invoke, _ = cli
    payload = _ok(
        invoke(
            "project", "set", "testproj",
            "--no-knowledge", "--cron", "--cron-schedule", "0 * * * *",
        )
    )
    assert payload["use_knowledge"] == 0
    assert payload["cron_enabled"] == 1
    assert payload["cron_schedule"] == "0 * * * *"
    assert "Nothing to update" in _error(invoke("project", "set", "testproj"))


# -- milestone --


def test_milestone_add_and_list(cli):
    invoke, conn = cli
    first = _ok(invoke("milestone", "add", "testproj", "Auth", "-d", "Login and logout"))
    second = _ok(invoke("milestone", "add", "testproj", "Billing"))
    assert (first["order_index"], second["order_index"]) == (0, 1)

    proj = get_project(conn, "testproj")
    activate_milestone(conn, proj["id"], first["id"])
    rows = _ok(invoke("milestone", "list", "testproj"))
    assert [(m["title"], m["current"]) for m in rows] == [("Auth", True), ("Billing", False)]
    assert rows[0]["tasks"]["total"] == 0


# -- task --


def test_task_inject_defaults_to_high_priority(cli):
    invoke, _ = cli
    payload = _ok(invoke("task", "inject", "testproj", "Fix typo", "-d", "README typo"))
    assert payload["is_injected"] == 1
    assert payload["priority"] == 100
    assert payload["status"] == "pending"
    assert payload["comments"] == []

    custom = _ok(invoke("task", "inject", "testproj", "Later", "-d", "x", "--priority", "5"))
    assert custom["priority"] == 5


def test_task_inject_unknown_milestone(cli):
    invoke, _ = cli
    error = _error(invoke("task", "inject", "testproj", "T", "-d", "x", "--milestone", "m-404"))
    assert "Milestone 'm-404' not found." in error


def test_task_list_filters_and_comments(cli):
    invoke, conn = cli
    proj = get_project(conn, "testproj")
    task = create_task(conn, project_id=proj["id"], title="A", description="d")
    add_task_comment(conn, task["id"], "Skipped: no redis")
    create_task(conn, project_id=proj["id"], title="B", description="d")

    rows = _ok(invoke("task", "list", "testproj"))
    assert [t["title"] for t in rows] == ["A", "B"]
    assert rows[0]["comments"] == ["Skipped: no redis"]
    assert _ok(invoke("task", "list", "testproj", "--status", "failed")) == []
    _error(invoke("task", "list", "testproj", "--status", "bogus"))


# -- knowledge --


def test_knowledge_add_list_prune(cli):
    invoke, _ = cli
    added = _ok(
        invoke(
            "knowledge", "add", "testproj", "Use WAL mode",
            "--category", "decision", "--tag", "sqlite", "--tag", "db", "--importance", "9",
        )
    )
    assert added["tags"] == ["sqlite", "db"]
    assert added["importance"] == 9
    _ok(invoke("knowledge", "add", "testproj", "Tabs not spaces"))

    entries = _ok(invoke("knowledge", "list", "testproj"))
    assert [e["content"] for e in entries][0] == "Use WAL mode"
    prefs = _ok(invoke("knowledge", "list", "testproj", "--category", "preference"))
    assert [e["content"] for e in prefs] == ["Tabs not spaces"]

    assert _ok(invoke("knowledge", "prune", "testproj", "--max-entries", "1")) == {"deleted": 1}


def test_knowledge_add_rejects_out_of_range_importance(cli):
    invoke, _ = cli
    _error(invoke("knowledge", "add", "testproj", "x", "--importance", "11"))


# -- run --


def test_run_foreground_success(cli):
    invoke, conn = cli
    proj = get_project(conn, "testproj")
    outcome = {
        "success": True,
        "run_id": "r1",
        "task_id": "t1",
        "commit_sha": None,
        "summary": "Completed: x",
    }
    with patch("codeloop.cli.run_project", return_value=outcome) as run_project:
        payload = _ok(invoke("run", "testproj"))
    assert payload == outcome
    args, kwargs = run_project.call_args
    assert args == (proj["id"], "cli")
    assert isinstance(kwargs["registry"], ProcessRegistry)


def test_run_foreground_failure_exits_nonzero(cli):
    invoke, _ = cli
    outcome = {
        "success": False,
        "run_id": "r1",
        "task_id": None,
        "commit_sha": None,
        "summary": "No task",
    }
    with patch("codeloop.cli.run_project", return_value=outcome) as run_project:
        result = invoke("run", "testproj", "--trigger", "cron")
    assert result.exit_code == 1
    assert json.loads(result.output)["summary"] == "No task"
    assert run_project.call_args[0][1] == "cron"


def test_run_unknown_project(cli):
    invoke, _ = cli
    with patch("codeloop.cli.run_project") as run_project:
        assert "Project 'ghost' not found." in _error(invoke("run", "ghost"))
    run_project.assert_not_called()


def test_run_background_enqueues(cli):
    invoke, conn = cli
    proj = get_project(conn, "testproj")
    with patch("codeloop.queue.enqueue_run", return_value=MagicMock(id="run-x")) as enqueue:
        payload = _ok(invoke("run", "testproj", "--background"))
    assert payload == {"ok": True, "project_id": proj["id"], "job_id": "run-x"}
    enqueue.assert_called_once_with(proj["id"], "manual")


def test_run_background_already_running(cli):
    invoke, _ = cli
    with patch("codeloop.queue.enqueue_run", side_effect=RuntimeError("already started")):
        assert _error(invoke("run", "testproj", "--background")) == "already started"


def test_runs_and_run_log(cli):
    invoke, conn = cli
    proj = get_project(conn, "testproj")
    run = create_run(conn, proj["id"])
    log_agent_start(conn, run["id"], "planner", "plan please")
    log_agent_complete(conn, run["id"], "planner", {"duration": 1.5})
    log_agent_start(conn, run["id"], "developer", "build")

    runs = _ok(invoke("runs", "testproj"))
    assert [r["id"] for r in runs] == [run["id"]]

    payload = _ok(invoke("run-log", run["id"]))
    assert payload["run"]["status"] == "running"
    assert [(log["agent"], log["event"]) for log in payload["logs"]] == [
        ("planner", "started"),
        ("planner", "completed"),
        ("developer", "started"),
    ]
    assert payload["logs"][1]["metadata"] == {"duration": 1.5}

    planner_only = _ok(invoke("run-log", run["id"], "--agent", "planner"))
    assert len(planner_only["logs"]) == 2
    assert "Run 'nope' not found." in _error(invoke("run-log", "nope"))


# -- job --


def test_job_status(cli):
    invoke, conn = cli
    proj = get_project(conn, "testproj")
    with (
        patch("codeloop.queue.check_redis_connection_safe", return_value={"ok": True}),
        patch("codeloop.queue.get_run_job_status", return_value={"status": "finished"}) as status,
        patch("codeloop.queue.get_queue_counts", return_value={"queued": 0}),
    ):
        payload = _ok(invoke("job", "status", "testproj"))
    assert payload == {"job": {"status": "finished"}, "queue": {"queued": 0}}
    status.assert_called_once_with(proj["id"])


def test_job_status_redis_down(cli):
    invoke, _ = cli
    probe = {"ok": False, "error": "Connection refused"}
    with patch("codeloop.queue.check_redis_connection_safe", return_value=probe):
        error = _error(invoke("job", "status", "testproj"))
    assert error == "Redis unavailable: Connection refused"


# -- agents --


@pytest.fixture()
def agents_project(cli, tmp_path):
    invoke, conn = cli
    workdir = tmp_path / "agents-proj"
    workdir.mkdir()
    create_project(conn, name="agentsproj", path=str(workdir), overview_path="OVERVIEW.md")
    return workdir


def test_agents_set_show_reset(cli, agents_project, _isolated_config_dir):
    invoke, _ = cli
    payload = _ok(invoke("agents", "set", "developer", "--global", input="Run the tests.\n"))
    assert payload["path"] == str(_isolated_config_dir / "agents.toml")
    _ok(invoke("agents", "set", "Developer", "-p", "agentsproj", input="Use pytest.\n"))

    roles = _ok(invoke("agents", "show", "-p", "agentsproj"))["roles"]
    assert roles["developer"] == {
        "global": "Run the tests.",
        "project": "Use pytest.",
        "effective": "Run the tests.\n\nUse pytest.",
    }
    assert roles["planner"]["effective"] == ""

    _ok(invoke("agents", "reset", "developer", "-p", "agentsproj"))
    roles = _ok(invoke("agents", "show", "-p", "agentsproj"))["roles"]
    assert roles["developer"]["project"] == ""
    assert roles["developer"]["effective"] == "Run the tests."


def test_agents_set_empty_input_resets(cli, agents_project):
    invoke, _ = cli
    _ok(invoke("agents", "set", "reviewer", "-p", "agentsproj", input="Be strict."))
    _ok(invoke("agents", "set", "reviewer", "-p", "agentsproj", input="  \n"))
    assert not (agents_project / ".codeloop" / "agents.toml").exists()


def test_agents_requires_scope_and_known_role(cli):
    invoke, _ = cli
    assert "--global" in _error(invoke("agents", "reset", "developer"))
    assert "Unknown role: tester" in _error(invoke("agents", "reset", "tester", "--global"))
