"""Executor worker: claim one task, run the agent on it, hand it to review.

One invocation handles at most one task. The task lock is held from claim to
finalize; finalize always runs, so a normal exit never leaves a task
EXECUTING without a live lock.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..constants import ROLE_EXECUTOR, SUMMARY_TAIL_CHARS
from ..domain.models import (
    Holder,
    LockInfo,
    TaskRecord,
    TaskStage,
    TaskStatus,
    format_section,
    get_header_field,
    set_header_field,
)
from ..storage.container import ProjectContext
from ..storage.interfaces import TaskMoveError
from ..utils import _now_iso, _now_ms
from .agent import AgentRunResult, invoke_agent, run_agent_command
from .prompts import build_executor_prompt


@dataclass
class ExecutorOutcome:
    task_id: Optional[str] = None
    executed: bool = False
    resumed: bool = False
    result: Optional[AgentRunResult] = None
    reason: str = ""

    @property
    def outcome(self) -> Optional[str]:
        return self.result.outcome if self.result else None


def _summarize(result: Optional[AgentRunResult]) -> str:
    if result is None:
        return "Executor stopped before the agent finished"
    if result.spawn_error:
        return result.spawn_error
    if result.timed_out:
        return "Task timed out - may need manual review"
    return result.output[-SUMMARY_TAIL_CHARS:].strip() or "(no output)"


def execution_result_section(result: Optional[AgentRunResult]) -> str:
    """Render the ``## Execution Result`` annotation for a finished run."""
    items = {
        "Completed": _now_iso(),
        "Outcome": result.outcome if result else "failure",
        "Success": "true" if result and result.success else "false",
        "Exit code": result.exit_code if result and result.exit_code is not None else "n/a",
    }
    if result is not None:
        items["Log"] = str(result.log_path)
    items["Summary"] = _summarize(result)
    return format_section("Execution Result", items)


class Executor:
    """Run a single Executor pass for one project.

    Args:
        context: Project wiring (task store, locks, settings).
        resume_task_id: Orphaned task in ``executing`` to take over.
        runner: Agent runner; replaced in tests.
        holder: Lock identity; defaults to this process.
    """

    def __init__(
        self,
        context: ProjectContext,
        *,
        resume_task_id: Optional[str] = None,
        runner=run_agent_command,
        holder: Optional[Holder] = None,
    ) -> None:
        self.context = context
        self.resume_task_id = resume_task_id
        self.runner = runner
        self.holder = holder or Holder.current()

    # -- selection ----------------------------------------------------------

    def _mark_claimed(self, content: str, *, overwrite: bool) -> str:
        content = set_header_field(content, "status", TaskStatus.EXECUTING.value)
        if overwrite or get_header_field(content, "executor") is None:
            content = set_header_field(content, "executor", self.holder.pid)
        if overwrite or get_header_field(content, "executor_start") is None:
            content = set_header_field(content, "executor_start", _now_iso())
        return content

    def _take_over(self, task_id: str) -> Optional[tuple[TaskRecord, LockInfo]]:
        tasks, locks = self.context.tasks, self.context.locks
        result = locks.acquire(task_id, self.holder)
        if not result.acquired:
            holder = result.holder.pid if result.holder else "unknown"
            logger.info("Task {} already taken over by PID {}", task_id, holder)
            return None
        lock = result.lock
        # Re-read under the lock: another worker may have finished it meanwhile.
        task = tasks.get_task(TaskStage.EXECUTING, task_id)
        if task is None or task.status != TaskStatus.EXECUTING:
            logger.info("Task {} is no longer orphaned; nothing to resume", task_id)
            locks.release(lock)
            return None
        try:
            task = tasks.update_task(task, lambda content: self._mark_claimed(content, overwrite=True))
        except TaskMoveError as exc:
            locks.release(lock)
            logger.error("Cannot resume task {}: {}", task_id, exc)
            return None
        except BaseException:
            locks.release(lock)
            raise
        logger.info("Resuming orphaned task {}", task_id)
        return task, lock

    def _claim_next(self) -> Optional[tuple[TaskRecord, LockInfo]]:
        tasks, locks = self.context.tasks, self.context.locks
        for candidate in tasks.list_tasks(TaskStage.QUEUE):
            result = locks.acquire(candidate.id, self.holder)
            if not result.acquired:
                continue
            lock = result.lock
            try:
                task = tasks.move_task(
                    candidate,
                    TaskStage.QUEUE,
                    TaskStage.EXECUTING,
                    lambda content: self._mark_claimed(content, overwrite=False),
                )
            except TaskMoveError as exc:
                locks.release(lock)
                if exc.errno == errno.ENOENT:
                    logger.info("Task {} vanished before it could be claimed; skipping", candidate.id)
                else:
                    logger.error("Cannot claim task {}: {}; skipping", candidate.id, exc)
                continue
            except BaseException:
                locks.release(lock)
                raise
            logger.info("Claimed task {}", task.id)
            return task, lock
        return None

    # -- execution ----------------------------------------------------------

    def _run_agent(self, task: TaskRecord) -> AgentRunResult:
        context = self.context
        guide = context.tasks.read_guide(ROLE_EXECUTOR)
        prompt = build_executor_prompt(guide, task.content)
        log_path = context.paths.logs_dir / f"{task.id}_{_now_ms()}.log"
        logger.info("Executing task {} (log: {})", task.id, log_path)
        return invoke_agent(
            prompt,
            project_dir=context.project_dir,
            log_path=log_path,
            settings=context.settings,
            config=context.config,
            timeout_seconds=context.settings.executor_timeout_seconds,
            runner=self.runner,
        )

    def _finalize(self, task: TaskRecord, lock: LockInfo, result: Optional[AgentRunResult]) -> None:
        try:
            self.context.tasks.append_annotation(task, execution_result_section(result), status=TaskStatus.REVIEW)
        finally:
            self.context.locks.release(lock)

    def _execute(self, task: TaskRecord, lock: LockInfo, *, resumed: bool) -> ExecutorOutcome:
        result: Optional[AgentRunResult] = None
        try:
            result = self._run_agent(task)
        finally:
            self._finalize(task, lock, result)

        if result.success:
            logger.success("Task {} finished; awaiting review", task.id)
        else:
            logger.warning("Task {} ended with outcome {}; awaiting review", task.id, result.outcome)
        return ExecutorOutcome(task_id=task.id, executed=True, resumed=resumed, result=result, reason=result.outcome)

    def run(self) -> ExecutorOutcome:
        """Select, claim, execute and finalize at most one task.

        Raises:
            OSError: The runtime directories or the task store cannot be
                written. Agent failures never raise; they are recorded on the
                task.
        """
        context = self.context
        logger.info("Executor started for {}", context.project_dir)
        context.ensure_runtime_dirs()

        if self.resume_task_id:
            if context.tasks.get_task(TaskStage.EXECUTING, self.resume_task_id) is None:
                logger.warning("Task {} is not in executing; scanning the queue instead", self.resume_task_id)
            else:
                claimed = self._take_over(self.resume_task_id)
                if claimed is None:
                    return ExecutorOutcome(task_id=self.resume_task_id, reason="not-resumable")
                task, lock = claimed
                return self._execute(task, lock, resumed=True)

        claimed = self._claim_next()
        if claimed is None:
            logger.info("No tasks available")
            return ExecutorOutcome(reason="no-work")
        task, lock = claimed
        return self._execute(task, lock, resumed=False)
