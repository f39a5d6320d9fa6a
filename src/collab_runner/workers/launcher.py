"""Spawn detached worker processes for the watcher.

Workers report nothing back to the launcher; their results are observed by
re-reading the task store on the next poll. Handles are kept only for PID
introspection and reaping.
"""

from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import ROLE_EXECUTOR, ROLE_SUPERVISOR


@dataclass(frozen=True)
class LaunchedWorker:
    pid: int
    role: str
    project_path: str
    task_id: Optional[str] = None


class WorkerLauncher:
    """Start ``python -m collab_runner <role> <project>`` in a new session."""

    def __init__(self, python: Optional[str] = None, log_level: str = "INFO") -> None:
        self.python = python or sys.executable
        self.log_level = log_level
        self.supervisor_processes: dict[str, subprocess.Popen] = {}
        self.executor_processes: dict[str, subprocess.Popen] = {}

    def command_for(self, role: str, project_path: Path | str, resume_task_id: Optional[str] = None) -> list[str]:
        if role not in (ROLE_EXECUTOR, ROLE_SUPERVISOR):
            raise ValueError(f"Unknown worker role: {role}")
        argv = [self.python, "-m", "collab_runner", "--log-level", self.log_level, role, str(project_path)]
        if resume_task_id:
            if role != ROLE_EXECUTOR:
                raise ValueError("Only executors can resume a task")
            argv.extend(["--resume", resume_task_id])
        return argv

    def launch(self, role: str, project_path: Path | str, resume_task_id: Optional[str] = None) -> LaunchedWorker:
        """Start a worker and return its PID; never waits for it."""
        argv = self.command_for(role, project_path, resume_task_id)
        process = subprocess.Popen(
            argv,
            cwd=str(project_path),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        worker = LaunchedWorker(pid=process.pid, role=role, project_path=str(project_path), task_id=resume_task_id)
        if role == ROLE_SUPERVISOR:
            self.supervisor_processes[str(project_path)] = process
        else:
            key = f"{project_path}:{resume_task_id or process.pid}"
            self.executor_processes[key] = process
        logger.info(
            "Started {} for {} (PID {}){}",
            role,
            project_path,
            process.pid,
            f" resuming {resume_task_id}" if resume_task_id else "",
        )
        return worker

    def reap(self) -> int:
        """Forget workers that have exited; returns how many were reaped."""
        reaped = 0
        for table in (self.supervisor_processes, self.executor_processes):
            for key, process in list(table.items()):
                if process.poll() is not None:
                    logger.debug("Worker PID {} exited with {}", process.pid, process.returncode)
                    del table[key]
                    reaped += 1
        return reaped

    def running_pids(self) -> list[int]:
        self.reap()
        return [p.pid for p in (*self.supervisor_processes.values(), *self.executor_processes.values())]
