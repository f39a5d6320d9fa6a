"""In-memory TaskStore and LockManager.

Same contracts as the filesystem implementations, without touching disk. Used
by tests of the watcher and the worker roles.
"""

from __future__ import annotations

import errno
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from ..constants import INBOX_TEMPLATE, LOCK_STALE_SECONDS, TASK_SUFFIX
from ..domain.models import (
    Acquired,
    AcquireResult,
    HeldByOther,
    Holder,
    LockInfo,
    TaskRecord,
    TaskStage,
    TaskStatus,
    append_text,
    inbox_has_content,
    parse_task,
    set_header_field,
)
from ..utils import _now_iso
from .interfaces import LockManager, TaskMoveError, TaskStore, TaskTransform


class InMemoryTaskStore(TaskStore):
    def __init__(self, *, inbox: str = INBOX_TEMPLATE, guides: Optional[dict[str, str]] = None) -> None:
        self._stages: dict[TaskStage, dict[str, str]] = {stage: {} for stage in TaskStage}
        self._lock = threading.RLock()
        self.inbox = inbox
        self.guides = dict(guides or {})

    def list_tasks(self, stage: TaskStage) -> list[TaskRecord]:
        with self._lock:
            items = sorted(self._stages[stage].items(), key=lambda kv: f"{kv[0]}{TASK_SUFFIX}")
        return [parse_task(task_id, stage, content) for task_id, content in items]

    def get_task(self, stage: TaskStage, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            content = self._stages[stage].get(task_id)
        if content is None:
            return None
        return parse_task(task_id, stage, content)

    def create_task(self, stage: TaskStage, task_id: str, content: str) -> TaskRecord:
        with self._lock:
            self._stages[stage][task_id] = content
        return parse_task(task_id, stage, content)

    def move_task(
        self,
        task: TaskRecord,
        from_stage: TaskStage,
        to_stage: TaskStage,
        transform: Optional[TaskTransform] = None,
    ) -> TaskRecord:
        with self._lock:
            content = self._stages[from_stage].get(task.id)
            if content is None:
                raise TaskMoveError(errno.ENOENT, f"task {task.id} not in {from_stage.value}")
            new_content = transform(content) if transform else content
            del self._stages[from_stage][task.id]
            self._stages[to_stage][task.id] = new_content
        return parse_task(task.id, to_stage, new_content)

    def update_task(self, task: TaskRecord, transform: TaskTransform) -> TaskRecord:
        with self._lock:
            content = self._stages[task.stage].get(task.id)
            if content is None:
                raise FileNotFoundError(errno.ENOENT, f"task {task.id} not in {task.stage.value}")
            new_content = transform(content)
            self._stages[task.stage][task.id] = new_content
        return parse_task(task.id, task.stage, new_content)

    def append_annotation(self, task: TaskRecord, text: str, status: Optional[TaskStatus] = None) -> TaskRecord:
        def _annotate(content: str) -> str:
            if status is not None:
                content = set_header_field(content, "status", status.value)
            return append_text(content, text)

        return self.update_task(task, _annotate)

    def read_inbox(self) -> Optional[str]:
        return self.inbox if inbox_has_content(self.inbox) else None

    def clear_inbox(self) -> None:
        self.inbox = INBOX_TEMPLATE

    def read_guide(self, role: str) -> str:
        return self.guides.get(role, "")

    @property
    def queue_location(self) -> str:
        return "queue/"


class InMemoryLockManager(LockManager):
    def __init__(
        self,
        *,
        stale_after_seconds: int = LOCK_STALE_SECONDS,
        is_alive: Callable[[int], bool] = lambda pid: True,
    ) -> None:
        self._locks: dict[str, LockInfo] = {}
        self._guard = threading.Lock()
        self._stale_after = stale_after_seconds
        self._is_alive = is_alive

    def holder_alive(self, lock: LockInfo) -> bool:
        return bool(self._is_alive(lock.pid))

    def _is_stale(self, lock: LockInfo) -> bool:
        started = lock.started
        if started is None:
            return True
        return (datetime.now(timezone.utc) - started).total_seconds() > self._stale_after

    def acquire(self, task_id: str, holder: Optional[Holder] = None) -> AcquireResult:
        holder = holder or Holder.current()
        with self._guard:
            existing = self._locks.get(task_id)
            if existing is not None and not self._is_stale(existing) and self.holder_alive(existing):
                return HeldByOther(existing)
            lock = LockInfo(task_id=task_id, pid=holder.pid, hostname=holder.hostname)
            self._locks[task_id] = lock
            return Acquired(lock)

    def release(self, lock: LockInfo) -> bool:
        with self._guard:
            current = self._locks.get(lock.task_id)
            if current is None or current.token != lock.token:
                return False
            del self._locks[lock.task_id]
            return True

    def refresh(self, lock: LockInfo) -> bool:
        with self._guard:
            current = self._locks.get(lock.task_id)
            if current is None or current.token != lock.token:
                return False
            current.started_at = lock.started_at = _now_iso()
            return True

    def read(self, task_id: str) -> Optional[LockInfo]:
        with self._guard:
            return self._locks.get(task_id)

    def list_locks(self) -> list[LockInfo]:
        with self._guard:
            return [self._locks[key] for key in sorted(self._locks)]

    def put(self, lock: LockInfo) -> None:
        """Install a lock directly, e.g. one left behind by a dead worker."""
        with self._guard:
            self._locks[lock.task_id] = lock
