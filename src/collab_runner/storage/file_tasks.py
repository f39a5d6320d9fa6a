"""Filesystem-backed task store.

One markdown file per task, in one of the ``queue``, ``executing`` and
``completed`` directories of a project's collaboration folder. Every write
goes through a temp file plus ``os.replace``, so concurrent readers see
either the old or the new text of a task, never a torn file.
"""

from __future__ import annotations

import errno
from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import INBOX_TEMPLATE, ROLE_EXECUTOR, ROLE_SUPERVISOR, TASK_SUFFIX
from ..domain.models import (
    TaskRecord,
    TaskStage,
    TaskStatus,
    append_text,
    inbox_has_content,
    parse_task,
    set_header_field,
)
from ..io_utils import _atomic_write_text, _read_text_safe
from ..paths import ProjectPaths
from .interfaces import TaskMoveError, TaskStore, TaskTransform


class FileTaskStore(TaskStore):
    def __init__(self, paths: ProjectPaths) -> None:
        self._paths = paths

    def _task_path(self, stage: TaskStage, task_id: str) -> Path:
        return self._paths.stage_dir(stage) / f"{task_id}{TASK_SUFFIX}"

    def _read(self, stage: TaskStage, path: Path) -> Optional[TaskRecord]:
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            # Moved by another worker between listing and reading.
            return None
        except OSError as exc:
            logger.warning("Could not read task file {}: {}", path, exc)
            return None
        return parse_task(path.stem, stage, content, path=path, mtime=mtime)

    # -- queries ------------------------------------------------------------

    def list_tasks(self, stage: TaskStage) -> list[TaskRecord]:
        directory = self._paths.stage_dir(stage)
        try:
            names = sorted(
                entry.name
                for entry in directory.iterdir()
                if entry.name.endswith(TASK_SUFFIX) and not entry.name.startswith(".")
            )
        except FileNotFoundError:
            return []
        tasks: list[TaskRecord] = []
        for name in names:
            task = self._read(stage, directory / name)
            if task is not None:
                tasks.append(task)
        return tasks

    def get_task(self, stage: TaskStage, task_id: str) -> Optional[TaskRecord]:
        return self._read(stage, self._task_path(stage, task_id))

    # -- mutations ----------------------------------------------------------

    def create_task(self, stage: TaskStage, task_id: str, content: str) -> TaskRecord:
        path = self._task_path(stage, task_id)
        _atomic_write_text(path, content)
        return parse_task(task_id, stage, content, path=path)

    def _read_source(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise TaskMoveError(errno.EILSEQ, f"cannot decode {path}: {exc}") from exc
        except OSError as exc:
            raise TaskMoveError(exc.errno or errno.EIO, f"cannot read {path}: {exc}") from exc

    def move_task(
        self,
        task: TaskRecord,
        from_stage: TaskStage,
        to_stage: TaskStage,
        transform: Optional[TaskTransform] = None,
    ) -> TaskRecord:
        """Write the (transformed) task into ``to_stage`` and delete the source.

        Raises:
            TaskMoveError: When the source cannot be read or decoded, the destination
                cannot be written, or the source cannot be removed. In the last
                case the task is visible in both stages.
        """
        source = self._task_path(from_stage, task.id)
        dest = self._task_path(to_stage, task.id)
        content = self._read_source(source)

        new_content = transform(content) if transform else content
        try:
            _atomic_write_text(dest, new_content)
        except OSError as exc:
            raise TaskMoveError(exc.errno or errno.EIO, f"cannot write {dest}: {exc}") from exc

        if source != dest:
            try:
                source.unlink()
            except OSError as exc:
                logger.error("Task {} written to {} but {} could not be removed", task.id, to_stage.value, source)
                raise TaskMoveError(exc.errno or errno.EIO, f"cannot remove {source}: {exc}") from exc

        logger.debug("Moved task {} {} -> {}", task.id, from_stage.value, to_stage.value)
        return parse_task(task.id, to_stage, new_content, path=dest)

    def update_task(self, task: TaskRecord, transform: TaskTransform) -> TaskRecord:
        path = self._task_path(task.stage, task.id)
        content = self._read_source(path)
        new_content = transform(content)
        _atomic_write_text(path, new_content)
        return parse_task(task.id, task.stage, new_content, path=path)

    def append_annotation(self, task: TaskRecord, text: str, status: Optional[TaskStatus] = None) -> TaskRecord:
        def _annotate(content: str) -> str:
            if status is not None:
                content = set_header_field(content, "status", status.value)
            return append_text(content, text)

        return self.update_task(task, _annotate)

    # -- inbox and guides ---------------------------------------------------

    def read_inbox(self) -> Optional[str]:
        content = _read_text_safe(self._paths.inbox)
        return content if inbox_has_content(content) else None

    def clear_inbox(self) -> None:
        _atomic_write_text(self._paths.inbox, INBOX_TEMPLATE)

    def read_guide(self, role: str) -> str:
        guides = {
            ROLE_EXECUTOR: self._paths.executor_guide,
            ROLE_SUPERVISOR: self._paths.supervisor_guide,
        }
        path = guides.get(role)
        return _read_text_safe(path) if path else ""

    @property
    def queue_location(self) -> str:
        return str(self._paths.stage_dir(TaskStage.QUEUE))
