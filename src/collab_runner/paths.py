"""Resolve application and per-project directory layouts."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

from .constants import (
    APP_DIR_NAME,
    APP_LOGS_DIR,
    APP_NAME,
    COLLAB_DIR_NAME,
    EXECUTOR_GUIDE_FILE,
    HOME_ENV_VAR,
    INBOX_FILE,
    LOCK_DIR_NAME,
    LOGS_DIR_NAME,
    PROJECT_CONFIG_FILE,
    PROJECT_PLAN_FILE,
    PROJECTS_FILE,
    SETTINGS_FILE,
    STATE_DIR_NAME,
    STATUS_FILE,
    SUPERVISOR_GUIDE_FILE,
    SUPERVISOR_LOCK_DIR_NAME,
)
from .domain.models import TaskStage


def app_data_dir() -> Path:
    """Return the global directory holding settings, the registry and logs.

    ``$COLLAB_RUNNER_HOME`` wins when set; otherwise the platform default.
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_DIR_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    return Path.home() / ".config" / APP_NAME


def settings_file() -> Path:
    return app_data_dir() / SETTINGS_FILE


def projects_file() -> Path:
    return app_data_dir() / PROJECTS_FILE


def app_logs_dir() -> Path:
    return app_data_dir() / APP_LOGS_DIR


@dataclass(frozen=True)
class ProjectPaths:
    """Every location a worker or the watcher touches for one project."""

    project_dir: Path
    collab_dir: Path
    state_dir: Path
    lock_dir: Path
    supervisor_lock_dir: Path
    logs_dir: Path

    @classmethod
    def for_project(cls, project_dir: Path) -> "ProjectPaths":
        project_dir = Path(project_dir)
        collab_dir = project_dir / COLLAB_DIR_NAME
        state_dir = collab_dir / STATE_DIR_NAME
        lock_dir = state_dir / LOCK_DIR_NAME
        return cls(
            project_dir=project_dir,
            collab_dir=collab_dir,
            state_dir=state_dir,
            lock_dir=lock_dir,
            supervisor_lock_dir=lock_dir / SUPERVISOR_LOCK_DIR_NAME,
            logs_dir=state_dir / LOGS_DIR_NAME,
        )

    def stage_dir(self, stage: TaskStage) -> Path:
        return self.collab_dir / stage.value

    @property
    def inbox(self) -> Path:
        return self.collab_dir / INBOX_FILE

    @property
    def project_plan(self) -> Path:
        return self.collab_dir / PROJECT_PLAN_FILE

    @property
    def supervisor_guide(self) -> Path:
        return self.collab_dir / SUPERVISOR_GUIDE_FILE

    @property
    def executor_guide(self) -> Path:
        return self.collab_dir / EXECUTOR_GUIDE_FILE

    @property
    def config_file(self) -> Path:
        return self.state_dir / PROJECT_CONFIG_FILE

    @property
    def status_file(self) -> Path:
        return self.state_dir / STATUS_FILE
