from __future__ import annotations

from pathlib import Path
from typing import Optional

from ..config import ProjectConfig, Settings, load_project_config
from ..paths import ProjectPaths
from .file_locks import FileLockManager
from .file_tasks import FileTaskStore
from .interfaces import LockManager, TaskStore


class ProjectContext:
    """Wire a project's task store, lock managers and config together.

    Stores default to the filesystem implementations rooted at the project's
    collaboration directory; tests pass in-memory replacements.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        settings: Optional[Settings] = None,
        tasks: Optional[TaskStore] = None,
        locks: Optional[LockManager] = None,
        supervisor_locks: Optional[LockManager] = None,
        config: Optional[ProjectConfig] = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.paths = ProjectPaths.for_project(self.project_dir)
        self.settings = settings or Settings()
        stale = self.settings.lock_stale_seconds
        self.tasks = tasks or FileTaskStore(self.paths)
        self.locks = locks or FileLockManager(self.paths.lock_dir, stale_after_seconds=stale)
        self.supervisor_locks = supervisor_locks or FileLockManager(
            self.paths.supervisor_lock_dir, stale_after_seconds=stale
        )
        self._config = config

    @property
    def name(self) -> str:
        return self.project_dir.name

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            self._config = load_project_config(self.paths)
        return self._config

    def ensure_runtime_dirs(self) -> None:
        """Create the lock and log directories; failure here is fatal for a worker."""
        self.paths.lock_dir.mkdir(parents=True, exist_ok=True)
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
