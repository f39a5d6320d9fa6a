from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..domain.models import AcquireResult, Holder, LockInfo, TaskRecord, TaskStage, TaskStatus

TaskTransform = Callable[[str], str]


class TaskMoveError(OSError):
    """A task could not be written to its destination or removed from its source."""


class TaskStore(ABC):
    @abstractmethod
    def list_tasks(self, stage: TaskStage) -> list[TaskRecord]:
        raise NotImplementedError

    @abstractmethod
    def get_task(self, stage: TaskStage, task_id: str) -> Optional[TaskRecord]:
        raise NotImplementedError

    @abstractmethod
    def create_task(self, stage: TaskStage, task_id: str, content: str) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def move_task(
        self,
        task: TaskRecord,
        from_stage: TaskStage,
        to_stage: TaskStage,
        transform: Optional[TaskTransform] = None,
    ) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def update_task(self, task: TaskRecord, transform: TaskTransform) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def append_annotation(self, task: TaskRecord, text: str, status: Optional[TaskStatus] = None) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def read_inbox(self) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def clear_inbox(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_guide(self, role: str) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def queue_location(self) -> str:
        """Where the inbox-intake agent should write new task files."""
        raise NotImplementedError


class LockManager(ABC):
    @abstractmethod
    def acquire(self, task_id: str, holder: Optional[Holder] = None) -> AcquireResult:
        raise NotImplementedError

    @abstractmethod
    def release(self, lock: LockInfo) -> bool:
        raise NotImplementedError

    @abstractmethod
    def refresh(self, lock: LockInfo) -> bool:
        """Restart the staleness clock of a lock the caller still holds."""
        raise NotImplementedError

    @abstractmethod
    def read(self, task_id: str) -> Optional[LockInfo]:
        raise NotImplementedError

    @abstractmethod
    def list_locks(self) -> list[LockInfo]:
        raise NotImplementedError

    @abstractmethod
    def holder_alive(self, lock: LockInfo) -> bool:
        raise NotImplementedError

    def is_held(self, task_id: str) -> bool:
        lock = self.read(task_id)
        return lock is not None and self.holder_alive(lock)

    def count_live(self) -> int:
        return sum(1 for lock in self.list_locks() if self.holder_alive(lock))
