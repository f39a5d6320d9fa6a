"""Supervisor worker: inbox intake and review of finished tasks.

Only one Supervisor runs per project at a time; the singleton is enforced
with a lock in its own directory so it never counts as a running Executor.
"""

from __future__ import annotations

import errno
import re
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from ..constants import REJECTION_REASON, REVIEW_DECISION_TAIL_CHARS, ROLE_SUPERVISOR, SUPERVISOR_LOCK_ID
from ..domain.models import (
    Holder,
    LockInfo,
    TaskRecord,
    TaskStage,
    TaskStatus,
    append_text,
    format_section,
    set_header_field,
)
from ..storage.container import ProjectContext
from ..storage.interfaces import TaskMoveError
from ..utils import _now_iso, _now_ms
from .agent import AgentRunResult, invoke_agent, run_agent_command
from .prompts import build_inbox_prompt, build_review_prompt

APPROVE_RE = re.compile(r"\bAPPROVE", re.I)
REJECT_RE = re.compile(r"\bREJECT", re.I)


def is_approved(result: AgentRunResult) -> bool:
    """Approve iff the run finished, said APPROVE, and did not end on REJECT."""
    if result.timed_out or result.spawn_error:
        return False
    output = result.output
    if not APPROVE_RE.search(output):
        return False
    return not REJECT_RE.search(output[-REVIEW_DECISION_TAIL_CHARS:])


def _approve_transform(content: str) -> str:
    content = set_header_field(content, "status", TaskStatus.COMPLETED.value)
    return set_header_field(content, "completed", _now_iso())


def _reject_transform(task: TaskRecord, log_path: Optional[str]):
    def _transform(content: str) -> str:
        content = set_header_field(content, "status", TaskStatus.PENDING.value)
        content = set_header_field(content, "iteration", task.iteration + 1)
        items = {"Time": _now_iso(), "Reason": REJECTION_REASON}
        if log_path:
            items["Review log"] = log_path
        return append_text(content, format_section("Rejected", items))

    return _transform


def approve_task(context: ProjectContext, task: TaskRecord, note: Optional[str] = None) -> TaskRecord:
    """Move a REVIEW task to ``completed`` by hand.

    Args:
        context: Project the task belongs to.
        task: Task currently in ``executing``.
        note: Optional operator note recorded in the approval section.

    Returns:
        The task as written to ``completed``.
    """

    def _transform(content: str) -> str:
        content = _approve_transform(content)
        items = {"Time": _now_iso(), "Approved by": "operator"}
        if note:
            items["Note"] = note
        return append_text(content, format_section("Manual Approval", items))

    moved = context.tasks.move_task(task, TaskStage.EXECUTING, TaskStage.COMPLETED, _transform)
    logger.success("Task {} manually approved", task.id)
    return moved


@dataclass
class ReviewDecision:
    task_id: str
    approved: bool
    timed_out: bool = False
    skipped: bool = False


@dataclass
class SupervisorOutcome:
    ran: bool = False
    inbox_processed: bool = False
    inbox_cleared: bool = False
    reviews: list[ReviewDecision] = field(default_factory=list)
    reason: str = ""


class Supervisor:
    def __init__(
        self,
        context: ProjectContext,
        *,
        runner=run_agent_command,
        holder: Optional[Holder] = None,
    ) -> None:
        self.context = context
        self.runner = runner
        self.holder = holder or Holder.current()
        self._lock: Optional[LockInfo] = None

    def _keep_lock(self) -> None:
        if self._lock is not None:
            self.context.supervisor_locks.refresh(self._lock)

    def _invoke(self, prompt: str, log_name: str, timeout_seconds: int) -> AgentRunResult:
        context = self.context
        return invoke_agent(
            prompt,
            project_dir=context.project_dir,
            log_path=context.paths.logs_dir / f"{log_name}_{_now_ms()}.log",
            settings=context.settings,
            config=context.config,
            timeout_seconds=timeout_seconds,
            runner=self.runner,
        )

    def process_inbox(self, outcome: SupervisorOutcome) -> None:
        tasks = self.context.tasks
        inbox = tasks.read_inbox()
        if inbox is None:
            logger.debug("Inbox is empty")
            return

        logger.info("Processing inbox requirements")
        guide = tasks.read_guide(ROLE_SUPERVISOR)
        prompt = build_inbox_prompt(guide, inbox, tasks.queue_location)
        result = self._invoke(prompt, "supervisor_inbox", self.context.settings.inbox_timeout_seconds)
        outcome.inbox_processed = True

        if result.timed_out:
            logger.warning("Inbox processing timed out; leaving inbox for the next cycle")
            return
        if result.spawn_error:
            logger.error("Inbox processing could not start; leaving inbox for the next cycle")
            return
        tasks.clear_inbox()
        outcome.inbox_cleared = True
        logger.info("Inbox processing completed with code {}", result.exit_code)

    def review_task(self, task: TaskRecord) -> ReviewDecision:
        """Ask the agent to judge one REVIEW task and move it accordingly."""
        tasks = self.context.tasks
        logger.info("Reviewing task {}", task.id)
        guide = tasks.read_guide(ROLE_SUPERVISOR)
        prompt = build_review_prompt(guide, task.content)
        result = self._invoke(prompt, f"supervisor_review_{task.id}", self.context.settings.review_timeout_seconds)

        if result.spawn_error:
            logger.error("Review of task {} could not start; leaving it in review", task.id)
            return ReviewDecision(task_id=task.id, approved=False, skipped=True)

        approved = is_approved(result)
        if approved:
            tasks.move_task(task, TaskStage.EXECUTING, TaskStage.COMPLETED, _approve_transform)
        else:
            tasks.move_task(
                task,
                TaskStage.EXECUTING,
                TaskStage.QUEUE,
                _reject_transform(task, str(result.log_path)),
            )
        logger.info(
            "Task {} {}{}",
            task.id,
            "approved" if approved else "rejected",
            " (review timed out)" if result.timed_out else "",
        )
        return ReviewDecision(task_id=task.id, approved=approved, timed_out=result.timed_out)

    def review_pending(self, outcome: SupervisorOutcome) -> None:
        for task in self.context.tasks.list_tasks(TaskStage.EXECUTING):
            if task.status != TaskStatus.REVIEW:
                continue
            # The singleton lock must stay younger than the staleness ceiling.
            self._keep_lock()
            try:
                outcome.reviews.append(self.review_task(task))
            except TaskMoveError as exc:
                if exc.errno == errno.ENOENT:
                    logger.info("Task {} left executing during review; skipping", task.id)
                else:
                    logger.error("Cannot move reviewed task {}: {}; skipping", task.id, exc)

    def run(self) -> SupervisorOutcome:
        """Run inbox intake then the review pass, holding the supervisor lock."""
        context = self.context
        logger.info("Supervisor started for {}", context.project_dir)
        context.ensure_runtime_dirs()

        acquired = context.supervisor_locks.acquire(SUPERVISOR_LOCK_ID, self.holder)
        if not acquired.acquired:
            holder = acquired.holder.pid if acquired.holder else "unknown"
            logger.info("Another Supervisor (PID {}) is active; exiting", holder)
            return SupervisorOutcome(reason="busy")

        outcome = SupervisorOutcome(ran=True)
        self._lock = acquired.lock
        try:
            self.process_inbox(outcome)
            self.review_pending(outcome)
        finally:
            context.supervisor_locks.release(acquired.lock)
            self._lock = None
        outcome.reason = "done"
        logger.info(
            "Supervisor finished: inbox={}, reviewed={}",
            "processed" if outcome.inbox_processed else "empty",
            len(outcome.reviews),
        )
        return outcome
