"""Build the per-project status snapshot shown by ``status`` and dashboards."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import SUPERVISOR_LOCK_ID
from .domain.models import TaskStage
from .io_utils import _atomic_write_json
from .storage.container import ProjectContext
from .utils import _now_iso


def _task_summary(task) -> dict[str, Any]:
    data = task.to_dict()
    data.pop("path", None)
    return data


def build_snapshot(context: ProjectContext) -> dict[str, Any]:
    tasks = {stage.value: [_task_summary(t) for t in context.tasks.list_tasks(stage)] for stage in TaskStage}
    locks = []
    for lock in context.locks.list_locks():
        locks.append(
            {
                "task_id": lock.task_id,
                "pid": lock.pid,
                "hostname": lock.hostname,
                "started_at": lock.started_at,
                "alive": context.locks.holder_alive(lock),
            }
        )
    supervisor = context.supervisor_locks.read(SUPERVISOR_LOCK_ID)
    return {
        "project": context.name,
        "path": str(context.project_dir),
        "generated_at": _now_iso(),
        "counts": {stage: len(items) for stage, items in tasks.items()},
        "tasks": tasks,
        "locks": locks,
        "running_executors": sum(1 for lock in locks if lock["alive"]),
        "max_executors": context.settings.max_executors,
        "supervisor_pid": supervisor.pid if supervisor and context.supervisor_locks.holder_alive(supervisor) else None,
        "inbox_pending": context.tasks.read_inbox() is not None,
    }


def refresh_dashboard(context: ProjectContext) -> Path:
    """Write the snapshot to the project's ``status.json`` and return its path."""
    path = context.paths.status_file
    _atomic_write_json(path, build_snapshot(context))
    return path
