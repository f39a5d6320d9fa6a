"""Coordinate short-lived agent workers through a project's filesystem."""

from .config import Settings, load_settings
from .domain.models import TaskRecord, TaskStage, TaskStatus
from .storage.container import ProjectContext
from .watcher import Watcher
from .workers.executor import Executor
from .workers.supervisor import Supervisor

__version__ = "0.1.0"

__all__ = [
    "Executor",
    "ProjectContext",
    "Settings",
    "Supervisor",
    "TaskRecord",
    "TaskStage",
    "TaskStatus",
    "Watcher",
    "load_settings",
    "__version__",
]
