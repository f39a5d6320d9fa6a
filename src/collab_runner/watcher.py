"""Poll registered projects and launch workers within the executor ceiling.

The watcher is the only long-lived process. Each tick it reloads settings and
the enabled projects, decides per project whether a Supervisor or Executors
are needed, and launches them detached. It never waits on a worker.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import Settings, load_settings
from .constants import DEFAULT_CHECK_INTERVAL_SECONDS, ROLE_EXECUTOR, ROLE_SUPERVISOR, SUPERVISOR_LOCK_ID
from .dashboard import refresh_dashboard
from .domain.models import TaskStage, TaskStatus
from .projects import ProjectRecord, enabled_projects, touch_project
from .storage.container import ProjectContext
from .workers.launcher import LaunchedWorker, WorkerLauncher


@dataclass
class ProjectCheck:
    needs_supervisor: bool = False
    needs_executor: bool = False
    orphaned_tasks: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    error: Optional[str] = None


def check_project(context: ProjectContext) -> ProjectCheck:
    """Classify what a project needs this tick.

    A task in ``executing`` with status EXECUTING and no live lock is
    orphaned: its worker died, and it needs a resuming Executor.
    """
    check = ProjectCheck()
    if not context.paths.collab_dir.is_dir():
        check.error = f"collaboration directory missing: {context.paths.collab_dir}"
        return check

    tasks = context.tasks
    if tasks.read_inbox() is not None:
        check.needs_supervisor = True
        check.reasons.append("inbox has new requirements")

    executing = tasks.list_tasks(TaskStage.EXECUTING)
    in_review = [t.id for t in executing if t.status == TaskStatus.REVIEW]
    if in_review:
        check.needs_supervisor = True
        check.reasons.append(f"{len(in_review)} task(s) awaiting review")

    queued = tasks.list_tasks(TaskStage.QUEUE)
    if queued:
        check.needs_executor = True
        check.reasons.append(f"{len(queued)} task(s) queued")

    for task in executing:
        if task.status != TaskStatus.EXECUTING:
            continue
        if not context.locks.is_held(task.id):
            check.orphaned_tasks.append(task.id)
    if check.orphaned_tasks:
        check.needs_executor = True
        check.reasons.append(f"orphaned: {', '.join(check.orphaned_tasks)}")
    return check


@dataclass
class WatcherTick:
    settings: Settings
    launched: list[LaunchedWorker] = field(default_factory=list)
    checks: dict[str, ProjectCheck] = field(default_factory=dict)


def _default_context(path: Path, settings: Settings) -> ProjectContext:
    return ProjectContext(path, settings=settings)


class Watcher:
    """Single-threaded scheduler over the project registry.

    Args:
        launcher: Starts worker processes.
        settings_loader: Returns current :class:`Settings`; called every tick.
        projects_loader: Returns the enabled projects; called every tick.
        context_factory: Builds a :class:`ProjectContext` for a project path.
        on_project_checked: Best-effort hook run after each project (the
            dashboard snapshot by default); its failures are only logged.
        on_launched: Called with the project path whenever workers start.
    """

    def __init__(
        self,
        launcher: WorkerLauncher,
        *,
        settings_loader: Callable[[], Settings] = load_settings,
        projects_loader: Callable[[], list[ProjectRecord]] = enabled_projects,
        context_factory: Callable[[Path, Settings], ProjectContext] = _default_context,
        on_project_checked: Optional[Callable[[ProjectContext], object]] = refresh_dashboard,
        on_launched: Optional[Callable[[str], None]] = touch_project,
    ) -> None:
        self.launcher = launcher
        self.settings_loader = settings_loader
        self.projects_loader = projects_loader
        self.context_factory = context_factory
        self.on_project_checked = on_project_checked
        self.on_launched = on_launched

    def schedule(self, context: ProjectContext, check: ProjectCheck, settings: Settings) -> list[LaunchedWorker]:
        """Launch the workers ``check`` calls for, honouring ``max_executors``."""
        project = str(context.project_dir)
        launched: list[LaunchedWorker] = []

        if check.needs_supervisor:
            if context.supervisor_locks.is_held(SUPERVISOR_LOCK_ID):
                logger.debug("Supervisor already active for {}", context.name)
            else:
                launched.append(self.launcher.launch(ROLE_SUPERVISOR, project))

        if not check.needs_executor:
            return launched

        running = context.locks.count_live()
        limit = settings.max_executors
        if running >= limit:
            logger.info("Max executors reached for {} ({}/{})", context.name, running, limit)
            return launched

        if check.orphaned_tasks:
            started = 0
            for task_id in check.orphaned_tasks:
                if running + started >= limit:
                    logger.info("Max executors reached for {}; deferring resume of {}", context.name, task_id)
                    break
                logger.warning("Resuming orphaned task {} in {}", task_id, context.name)
                launched.append(self.launcher.launch(ROLE_EXECUTOR, project, resume_task_id=task_id))
                started += 1
        else:
            launched.append(self.launcher.launch(ROLE_EXECUTOR, project))
        return launched

    def process_project(self, record: ProjectRecord, settings: Settings, tick: WatcherTick) -> None:
        context = self.context_factory(Path(record.path), settings)
        check = check_project(context)
        tick.checks[record.path] = check
        if check.error:
            logger.warning("Skipping {}: {}", record.name, check.error)
            return
        if check.reasons:
            logger.debug("{}: {}", record.name, "; ".join(check.reasons))

        launched = self.schedule(context, check, settings)
        tick.launched.extend(launched)
        if launched and self.on_launched is not None:
            self.on_launched(record.path)

        if self.on_project_checked is not None:
            try:
                self.on_project_checked(context)
            except Exception as exc:
                logger.warning("Dashboard refresh failed for {}: {}", record.name, exc)

    def run_once(self) -> WatcherTick:
        """Run one poll over every enabled project."""
        settings = self.settings_loader()
        tick = WatcherTick(settings=settings)
        self.launcher.reap()
        for record in self.projects_loader():
            try:
                self.process_project(record, settings, tick)
            except Exception:
                logger.exception("Error checking project {}", record.path)
        return tick

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Poll immediately, then every ``check_interval_seconds`` until stopped."""
        stop_event = stop_event or threading.Event()
        logger.info("Watcher started")
        while not stop_event.is_set():
            interval = DEFAULT_CHECK_INTERVAL_SECONDS
            try:
                interval = self.run_once().settings.check_interval_seconds
            except Exception:
                logger.exception("Watcher tick failed")
            stop_event.wait(interval)
        logger.info("Watcher stopped")
