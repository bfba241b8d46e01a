from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path

import click

from codeloop import __version__, git_ops
from codeloop.agents_config import (
    ROLES,
    clear_instructions,
    merged_instructions,
    read_instructions,
    write_instructions,
)
from codeloop.db import (
    VALID_KNOWLEDGE_CATEGORIES,
    VALID_TASK_STATUSES,
    VALID_TRIGGER_SOURCES,
    ProjectRow,
    connect,
    create_injected_task,
    create_knowledge,
    create_milestone,
    create_project,
    get_current_milestone,
    get_milestone,
    get_project,
    get_run,
    list_knowledge,
    list_logs,
    list_milestones,
    list_projects,
    list_runs,
    list_tasks,
    milestone_task_stats,
    parse_task_comments,
    update_project,
)
from codeloop.knowledge import parse_tags, prune
from codeloop.orchestrator import run_project
from codeloop.registry import ProcessRegistry

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every codeloop
    command prints JSON, so this subclass intercepts Click exceptions and
    emits a JSON error object on stdout. Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging, including agent output.")
def main(verbose: bool):
    """Drive coding agents through plan, develop, review and commit cycles.

    \b
    Quick start:
      codeloop project add NAME -d DIR            Register a git repo
      codeloop milestone add NAME "Auth"          Queue a milestone
      codeloop run NAME                           Execute one run now
      codeloop run NAME --background              Queue a run on rq
      codeloop run-log RUN_ID                     Inspect what the agents did

    \b
    Key concepts:
      project    A git repo with an overview document
      milestone  An ordered goal the planner breaks into tasks
      task       One unit of work for the developer agent
      run        One pass of select, execute, recover or finalize
    """
    _configure_logging(verbose)


def _echo(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "project": "Run 'codeloop project list' to see registered projects.",
        "milestone": "Run 'codeloop milestone list PROJECT' to see milestones.",
        "run": "Run 'codeloop runs PROJECT' to see runs.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _project_or_error(conn, name_or_id: str) -> ProjectRow:
    proj = get_project(conn, name_or_id)
    if not proj:
        raise _not_found("project", name_or_id)
    return proj


def _with_comments(task: dict) -> dict:
    return {**task, "comments": parse_task_comments(task)}


# -- run --


def _install_signal_handlers(registry: ProcessRegistry) -> dict[int, object]:
    """Kill agent process groups on SIGINT/SIGTERM, then exit."""

    def handler(signum, frame):
        pids = registry.terminate_all()
        log.warning("Received signal %d, terminated %d agent process(es)", signum, len(pids))
        raise SystemExit(128 + signum)

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


@main.command("run")
@click.argument("project_name")
@click.option(
    "--trigger",
    type=click.Choice(sorted(VALID_TRIGGER_SOURCES)),
    default=None,
    help="Trigger source recorded on the run (default: cli, or manual with --background).",
)
@click.option("--background", is_flag=True, help="Queue the run on rq instead of running it here.")
def run_cmd(project_name: str, trigger: str | None, background: bool):
    """Execute one orchestration run for PROJECT_NAME.

    Exits 0 when the run succeeds and 1 otherwise.
    """
    with connect() as conn:
        proj = _project_or_error(conn, project_name)

    if background:
        from codeloop.queue import enqueue_run

        try:
            job = enqueue_run(proj["id"], trigger or "manual")
        except RuntimeError as e:
            raise click.ClickException(str(e)) from e
        _echo({"ok": True, "project_id": proj["id"], "job_id": job.id})
        return

    registry = ProcessRegistry()
    previous = _install_signal_handlers(registry)
    try:
        result = run_project(proj["id"], trigger or "cli", registry=registry)
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old if old is not None else signal.SIG_DFL)
    _echo(result)
    if not result["success"]:
        raise SystemExit(1)


@main.command("runs")
@click.argument("project_name")
@click.option("--limit", "-n", default=20, show_default=True, type=click.IntRange(min=1))
def runs_cmd(project_name: str, limit: int):
    """List recent runs of a project, newest first."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        runs = list_runs(conn, proj["id"], limit=limit)
    _echo(runs)


@main.command("run-log")
@click.argument("run_id")
@click.option("--agent", default=None, help="Only show logs from this agent.")
def run_log(run_id: str, agent: str | None):
    """Show a run and its agent logs in the order they were written."""
    with connect() as conn:
        run = get_run(conn, run_id)
        if run is None:
            raise _not_found("run", run_id)
        logs = []
        for row in list_logs(conn, run_id, agent=agent):
            item = dict(row)
            item["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
            logs.append(item)
    _echo({"run": run, "logs": logs})


# -- project --


@main.group()
def project():
    """Register, configure, and inspect projects."""


@project.command("add")
@click.argument("name")
@click.option(
    "--dir",
    "-d",
    "directory",
    required=True,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option(
    "--overview",
    default="OVERVIEW.md",
    show_default=True,
    help="Overview document, relative to the project directory or absolute.",
)
@click.option("--no-knowledge", is_flag=True, help="Disable knowledge extraction and retrieval.")
@click.option("--author-name", default=None, help="Commit author name for agent commits.")
@click.option("--author-email", default=None, help="Commit author email for agent commits.")
def project_add(
    name: str,
    directory: str,
    overview: str,
    no_knowledge: bool,
    author_name: str | None,
    author_email: str | None,
):
    """Register a git repository as a project."""
    if not git_ops.is_git_repo(directory):
        raise click.ClickException(f"'{directory}' is not a git repository. Run 'git init' first.")
    if bool(author_name) != bool(author_email):
        raise click.ClickException("Pass both --author-name and --author-email, or neither.")
    with connect() as conn:
        if get_project(conn, name):
            raise click.ClickException(f"Project name '{name}' is already registered.")
        try:
            proj = create_project(
                conn,
                name=name,
                path=directory,
                overview_path=overview,
                use_knowledge=not no_knowledge,
                git_author_name=author_name,
                git_author_email=author_email,
            )
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    warnings = []
    overview_path = Path(overview) if Path(overview).is_absolute() else Path(directory) / overview
    if not overview_path.is_file():
        warnings.append(f"Overview document not found at {overview_path}")
    _echo({**proj, "warnings": warnings})


@project.command("list")
def project_list():
    """List all projects."""
    with connect() as conn:
        projects = list_projects(conn)
    _echo(projects)


@project.command("show")
@click.argument("name_or_id")
def project_show(name_or_id: str):
    """Show project details with its current milestone."""
    with connect() as conn:
        proj = _project_or_error(conn, name_or_id)
        current = get_current_milestone(conn, proj["id"])
        output = dict(proj)
        output["current_milestone"] = (
            {**current, "tasks": milestone_task_stats(conn, current["id"])} if current else None
        )
    _echo(output)


@project.command("set")
@click.argument("name_or_id")
@click.option("--overview", default=None, help="Overview document path.")
@click.option("--knowledge/--no-knowledge", "use_knowledge", default=None)
@click.option("--author-name", default=None)
@click.option("--author-email", default=None)
@click.option("--cron/--no-cron", "cron_enabled", default=None, help="Enable scheduled runs.")
@click.option("--cron-schedule", default=None, help="Cron expression for scheduled runs.")
def project_set(
    name_or_id: str,
    overview: str | None,
    use_knowledge: bool | None,
    author_name: str | None,
    author_email: str | None,
    cron_enabled: bool | None,
    cron_schedule: str | None,
):
    """Update project settings."""
    candidates = {
        "overview_path": overview,
        "use_knowledge": use_knowledge,
        "git_author_name": author_name,
        "git_author_email": author_email,
        "cron_enabled": cron_enabled,
        "cron_schedule": cron_schedule,
    }
    fields = {key: value for key, value in candidates.items() if value is not None}
    if not fields:
        raise click.ClickException("Nothing to update. See 'codeloop project set --help'.")
    with connect() as conn:
        proj = _project_or_error(conn, name_or_id)
        updated = update_project(conn, proj["id"], **fields)
    _echo(updated)


# -- milestone --


@main.group()
def milestone():
    """Plan the ordered goals of a project."""


@milestone.command("add")
@click.argument("project_name")
@click.argument("title")
@click.option("--description", "-d", default=None)
@click.option("--order", "order_index", default=None, type=int, help="Position (default: last).")
def milestone_add(project_name: str, title: str, description: str | None, order_index: int | None):
    """Append a milestone to a project."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        row = create_milestone(
            conn,
            project_id=proj["id"],
            title=title,
            description=description,
            order_index=order_index,
        )
    _echo(row)


@milestone.command("list")
@click.argument("project_name")
@click.option("--all", "include_archived", is_flag=True, help="Include archived milestones.")
def milestone_list(project_name: str, include_archived: bool):
    """List milestones in execution order with task counts."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        rows = []
        for m in list_milestones(conn, proj["id"], include_archived=include_archived):
            item = dict(m)
            item["current"] = m["id"] == proj["current_milestone_id"]
            item["tasks"] = milestone_task_stats(conn, m["id"])
            rows.append(item)
    _echo(rows)


# -- task --


@main.group()
def task():
    """Inspect and inject tasks."""


@task.command("list")
@click.argument("project_name")
@click.option("--milestone", "milestone_id", default=None, help="Only tasks of this milestone.")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
def task_list(project_name: str, milestone_id: str | None, status: str | None):
    """List tasks of a project."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        tasks = list_tasks(conn, proj["id"], milestone_id=milestone_id, status=status)
    _echo([_with_comments(t) for t in tasks])


@task.command("inject")
@click.argument("project_name")
@click.argument("title")
@click.option("--description", "-d", required=True, help="What to do and how to verify it.")
@click.option("--milestone", "milestone_id", default=None)
@click.option("--priority", type=int, default=None, help="Higher runs first (default: 100).")
def task_inject(
    project_name: str,
    title: str,
    description: str,
    milestone_id: str | None,
    priority: int | None,
):
    """Inject a task that runs before planned milestone work."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        if milestone_id and get_milestone(conn, milestone_id) is None:
            raise _not_found("milestone", milestone_id)
        kwargs = {"priority": priority} if priority is not None else {}
        row = create_injected_task(
            conn,
            project_id=proj["id"],
            title=title,
            description=description,
            milestone_id=milestone_id,
            **kwargs,
        )
    _echo(_with_comments(row))


# -- knowledge --


@main.group()
def knowledge():
    """Browse and curate learned project knowledge."""


@knowledge.command("list")
@click.argument("project_name")
@click.option("--category", type=click.Choice(sorted(VALID_KNOWLEDGE_CATEGORIES)), default=None)
def knowledge_list(project_name: str, category: str | None):
    """List knowledge entries, most important first."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        entries = [
            {**entry, "tags": parse_tags(entry)}
            for entry in list_knowledge(conn, proj["id"], category=category)
        ]
    _echo(entries)


@knowledge.command("add")
@click.argument("project_name")
@click.argument("content")
@click.option(
    "--category",
    type=click.Choice(sorted(VALID_KNOWLEDGE_CATEGORIES)),
    default="preference",
    show_default=True,
)
@click.option("--tag", "tags", multiple=True, help="Searchable tag (repeatable).")
@click.option("--file", "file_path", default=None, help="File this note is about.")
@click.option("--importance", type=click.IntRange(1, 10), default=5, show_default=True)
def knowledge_add(
    project_name: str,
    content: str,
    category: str,
    tags: tuple[str, ...],
    file_path: str | None,
    importance: int,
):
    """Record a piece of knowledge by hand."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        entry = create_knowledge(
            conn,
            project_id=proj["id"],
            category=category,
            content=content,
            tags=tags,
            file_path=file_path,
            importance=importance,
        )
    _echo({**entry, "tags": parse_tags(entry)})


@knowledge.command("prune")
@click.argument("project_name")
@click.option("--max-entries", type=click.IntRange(min=0), default=100, show_default=True)
@click.option("--max-age-days", type=click.IntRange(min=1), default=90, show_default=True)
def knowledge_prune(project_name: str, max_entries: int, max_age_days: int):
    """Drop stale low-importance entries and cap the total."""
    with connect() as conn:
        proj = _project_or_error(conn, project_name)
        deleted = prune(conn, proj["id"], max_entries=max_entries, max_age_days=max_age_days)
    _echo({"deleted": deleted})


# -- job --


@main.group()
def job():
    """Inspect background run jobs."""


@job.command("status")
@click.argument("project_name")
def job_status(project_name: str):
    """Show the rq job for a project's background run, plus queue health."""
    from codeloop.queue import check_redis_connection_safe, get_queue_counts, get_run_job_status

    with connect() as conn:
        proj = _project_or_error(conn, project_name)

    redis = check_redis_connection_safe()
    if not redis["ok"]:
        raise click.ClickException(f"Redis unavailable: {redis['error']}")
    _echo({"job": get_run_job_status(proj["id"]), "queue": get_queue_counts()})


# -- agents --


def _validate_role(role: str) -> str:
    """Normalize and validate a role name. Raises ClickException on invalid."""
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise click.ClickException(f"Unknown role: {role}. Supported: {', '.join(ROLES)}")
    return normalized


def _agents_project_dir(global_scope: bool, project_name: str | None) -> str | None:
    """Project directory the command targets, or None for the global file."""
    if global_scope:
        return None
    if not project_name:
        raise click.ClickException("Use -p PROJECT to target a project, or --global.")
    with connect() as conn:
        return _project_or_error(conn, project_name)["path"]


_agents_shared_options = [
    click.option("--global", "global_scope", is_flag=True, help="Use the global agents.toml."),
    click.option("-p", "--project", "project_name", default=None, help="Target project by name."),
]


def _apply_agents_options(fn):  # type: ignore[no-untyped-def]
    for decorator in reversed(_agents_shared_options):
        fn = decorator(fn)
    return fn


@main.group(invoke_without_command=True)
@click.pass_context
def agents(ctx: click.Context) -> None:
    """Manage extra per-role instructions for the agents."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@agents.command()
@click.option("-p", "--project", "project_name", default=None, help="Target project by name.")
def show(project_name: str | None) -> None:
    """Show global, project and effective instructions per role."""
    project_dir = None
    if project_name:
        with connect() as conn:
            project_dir = _project_or_error(conn, project_name)["path"]
    roles: dict[str, dict[str, str]] = {}
    for role in ROLES:
        roles[role] = {
            "global": read_instructions(None, role),
            "project": read_instructions(project_dir, role) if project_dir else "",
            "effective": merged_instructions(project_dir, role),
        }
    _echo({"roles": roles})


@agents.command("set")
@_apply_agents_options
@click.argument("role")
def agents_set(global_scope: bool, project_name: str | None, role: str) -> None:
    """Set role instructions from stdin (e.g. codeloop agents set developer -p NAME)."""
    role_normalized = _validate_role(role)
    project_dir = _agents_project_dir(global_scope, project_name)
    path = write_instructions(project_dir, role_normalized, sys.stdin.read())
    _echo({"ok": True, "role": role_normalized, "path": str(path)})


@agents.command()
@_apply_agents_options
@click.argument("role")
def reset(global_scope: bool, project_name: str | None, role: str) -> None:
    """Clear role instructions (e.g. codeloop agents reset reviewer --global)."""
    role_normalized = _validate_role(role)
    project_dir = _agents_project_dir(global_scope, project_name)
    path = clear_instructions(project_dir, role_normalized)
    _echo({"ok": True, "role": role_normalized, "path": str(path)})
