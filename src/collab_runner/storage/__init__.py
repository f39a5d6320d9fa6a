from .container import ProjectContext
from .file_locks import FileLockManager
from .file_tasks import FileTaskStore
from .interfaces import LockManager, TaskMoveError, TaskStore
from .memory import InMemoryLockManager, InMemoryTaskStore

__all__ = [
    "FileLockManager",
    "FileTaskStore",
    "InMemoryLockManager",
    "InMemoryTaskStore",
    "LockManager",
    "ProjectContext",
    "TaskMoveError",
    "TaskStore",
]
