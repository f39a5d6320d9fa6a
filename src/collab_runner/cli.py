"""Provide the ``collab-runner`` command line.

Subcommands cover project setup, the watcher loop, the two worker roles the
watcher launches, and a few operator tools (status, settings, approve).
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import load_settings, save_settings
from .constants import ROLE_EXECUTOR, ROLE_SUPERVISOR
from .dashboard import build_snapshot
from .domain.models import TaskStage, TaskStatus
from .logging_utils import configure_logging
from .projects import RegistryError, load_projects, remove_project, set_enabled
from .storage.bootstrap import init_project
from .storage.container import ProjectContext
from .watcher import Watcher
from .workers.executor import Executor
from .workers.launcher import WorkerLauncher
from .workers.supervisor import Supervisor, approve_task


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _context(project_dir: Optional[str]) -> ProjectContext:
    return ProjectContext(_resolve_project_dir(project_dir), settings=load_settings())


# -- project setup ----------------------------------------------------------

def _init(args: argparse.Namespace) -> int:
    record = init_project(_resolve_project_dir(args.path), args.name)
    Console().print(f"[green]Initialized[/green] {record.name} at {record.path}")
    return 0


def _projects_list(args: argparse.Namespace) -> int:
    projects = load_projects()
    if args.json:
        sys.stdout.write(json.dumps({"projects": [p.to_dict() for p in projects]}, indent=2) + "\n")
        return 0
    table = Table(title="Registered projects")
    table.add_column("Name", style="cyan")
    table.add_column("Path")
    table.add_column("Enabled")
    table.add_column("Last activity", style="dim")
    for project in projects:
        table.add_row(
            project.name,
            project.path,
            "[green]yes[/green]" if project.enabled else "[red]no[/red]",
            project.last_activity or "-",
        )
    Console().print(table)
    return 0


def _projects_toggle(args: argparse.Namespace, enabled: bool) -> int:
    path = _resolve_project_dir(args.path)
    if not set_enabled(path, enabled):
        sys.stderr.write(f"Project not registered: {path}\n")
        return 1
    sys.stdout.write(f"{'Enabled' if enabled else 'Disabled'} {path}\n")
    return 0


def _projects_remove(args: argparse.Namespace) -> int:
    path = _resolve_project_dir(args.path)
    if not remove_project(path):
        sys.stderr.write(f"Project not registered: {path}\n")
        return 1
    sys.stdout.write(f"Removed {path}\n")
    return 0


def _settings(args: argparse.Namespace) -> int:
    settings = load_settings()
    changed = False
    if args.max_executors is not None:
        settings.max_executors = max(1, args.max_executors)
        changed = True
    if args.check_interval is not None:
        settings.check_interval_seconds = max(1, args.check_interval)
        changed = True
    if changed:
        save_settings(settings)
    sys.stdout.write(json.dumps(settings.to_dict(), indent=2) + "\n")
    return 0


# -- status -----------------------------------------------------------------

def _status_table(snapshots: list[dict[str, Any]]) -> Table:
    table = Table(title="Collaboration status")
    table.add_column("Project", style="cyan")
    table.add_column("Queue", justify="right")
    table.add_column("Executing", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Executors", justify="right")
    table.add_column("Inbox")
    for snap in snapshots:
        counts = snap["counts"]
        table.add_row(
            snap["project"],
            str(counts.get(TaskStage.QUEUE.value, 0)),
            str(counts.get(TaskStage.EXECUTING.value, 0)),
            str(counts.get(TaskStage.COMPLETED.value, 0)),
            f"{snap['running_executors']}/{snap['max_executors']}",
            "[yellow]pending[/yellow]" if snap["inbox_pending"] else "-",
        )
    return table


def _tasks_table(snap: dict[str, Any]) -> Table:
    table = Table(title=f"{snap['project']} tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Iter", justify="right")
    table.add_column("Description")
    for stage in (TaskStage.EXECUTING, TaskStage.QUEUE):
        for task in snap["tasks"].get(stage.value, []):
            table.add_row(task["id"], stage.value, task["status"], str(task["iteration"]), task["description"])
    return table


def _status(args: argparse.Namespace) -> int:
    if args.project_dir:
        paths = [_resolve_project_dir(args.project_dir)]
    else:
        paths = [Path(p.path) for p in load_projects()]
    settings = load_settings()
    snapshots = []
    for path in paths:
        if not path.is_dir():
            logger.warning("Project directory missing: {}", path)
            continue
        snapshots.append(build_snapshot(ProjectContext(path, settings=settings)))

    if args.json:
        sys.stdout.write(json.dumps({"projects": snapshots}, indent=2) + "\n")
        return 0
    console = Console()
    console.print(_status_table(snapshots))
    for snap in snapshots:
        if snap["counts"].get(TaskStage.QUEUE.value) or snap["counts"].get(TaskStage.EXECUTING.value):
            console.print(_tasks_table(snap))
    return 0


# -- watcher and workers ----------------------------------------------------

def _watch(args: argparse.Namespace) -> int:
    configure_logging(args.log_level, "watcher")
    watcher = Watcher(WorkerLauncher(log_level=args.log_level))
    if args.once:
        tick = watcher.run_once()
        logger.info("Launched {} worker(s)", len(tick.launched))
        return 0

    stop_event = threading.Event()

    def _stop(signum: int, _frame: Any) -> None:
        logger.info("Received signal {}; stopping watcher", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    watcher.run_forever(stop_event)
    return 0


def _executor(args: argparse.Namespace) -> int:
    configure_logging(args.log_level, ROLE_EXECUTOR)
    outcome = Executor(_context(args.project), resume_task_id=args.resume).run()
    if outcome.executed:
        logger.info("Task {} ended with outcome {}", outcome.task_id, outcome.outcome)
    return 0


def _supervisor(args: argparse.Namespace) -> int:
    configure_logging(args.log_level, ROLE_SUPERVISOR)
    Supervisor(_context(args.project)).run()
    return 0


def _approve(args: argparse.Namespace) -> int:
    context = _context(args.project_dir)
    task = context.tasks.get_task(TaskStage.EXECUTING, args.task_id)
    if task is None:
        sys.stderr.write(f"Task not found in executing/: {args.task_id}\n")
        return 1
    if task.status != TaskStatus.REVIEW:
        sys.stderr.write(f"Task {task.id} is {task.status.value}, not REVIEW\n")
        return 1
    moved = approve_task(context, task, note=args.note)
    sys.stdout.write(f"Approved {moved.id} -> {moved.stage.value}/\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collab-runner",
        description="Coordinate agent workers on shared project task queues",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    sub = parser.add_subparsers(dest="command")

    init = sub.add_parser("init", help="Create the collaboration folder and register a project")
    init.add_argument("path", nargs="?", default=None, help="Project directory (default: current directory)")
    init.add_argument("--name", default=None, help="Display name")
    init.set_defaults(func=_init)

    status = sub.add_parser("status", help="Show queue, executor and inbox status")
    status.add_argument("--project-dir", default=None, help="Only this project (default: all registered)")
    status.add_argument("--json", action="store_true", help="Emit JSON")
    status.set_defaults(func=_status)

    projects = sub.add_parser("projects", help="Manage the project registry")
    projects_sub = projects.add_subparsers(dest="projects_command")
    p_list = projects_sub.add_parser("list")
    p_list.add_argument("--json", action="store_true")
    p_list.set_defaults(func=_projects_list)
    p_enable = projects_sub.add_parser("enable")
    p_enable.add_argument("path")
    p_enable.set_defaults(func=lambda args: _projects_toggle(args, True))
    p_disable = projects_sub.add_parser("disable")
    p_disable.add_argument("path")
    p_disable.set_defaults(func=lambda args: _projects_toggle(args, False))
    p_remove = projects_sub.add_parser("remove")
    p_remove.add_argument("path")
    p_remove.set_defaults(func=_projects_remove)

    settings = sub.add_parser("settings", help="Show or update global settings")
    settings.add_argument("--max-executors", type=int, default=None)
    settings.add_argument("--check-interval", type=int, default=None, help="Seconds between watcher polls")
    settings.set_defaults(func=_settings)

    watch = sub.add_parser("watch", help="Run the watcher loop")
    watch.add_argument("--once", action="store_true", help="Run a single poll and exit")
    watch.set_defaults(func=_watch)

    executor = sub.add_parser(ROLE_EXECUTOR, help="Run one Executor pass (launched by the watcher)")
    executor.add_argument("project")
    executor.add_argument("--resume", default=None, help="Orphaned task id to resume")
    executor.set_defaults(func=_executor)

    supervisor = sub.add_parser(ROLE_SUPERVISOR, help="Run one Supervisor pass (launched by the watcher)")
    supervisor.add_argument("project")
    supervisor.set_defaults(func=_supervisor)

    approve = sub.add_parser("approve", help="Manually approve a task awaiting review")
    approve.add_argument("task_id")
    approve.add_argument("--project-dir", default=None, help="Project directory (default: current directory)")
    approve.add_argument("--note", default=None, help="Note recorded with the approval")
    approve.set_defaults(func=_approve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    configure_logging(args.log_level)
    try:
        return int(handler(args) or 0)
    except (OSError, RegistryError) as exc:
        logger.error("{}: {}", args.command, exc)
        return 1
