"""Tests for the Supervisor worker: inbox intake, review decisions, approval."""

from __future__ import annotations

import json
import os
import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from collab_runner.constants import INBOX_TEMPLATE, SUPERVISOR_LOCK_ID
from collab_runner.domain.models import Holder, TaskStage, TaskStatus, get_header_field
from collab_runner.storage.container import ProjectContext
from collab_runner.utils import _now_iso
from collab_runner.workers.agent import AgentRunResult
from collab_runner.workers.supervisor import Supervisor, approve_task, is_approved

HOST = socket.gethostname()


def _result(output: str, **kwargs) -> AgentRunResult:
    now = _now_iso()
    return AgentRunResult(exit_code=0, output=output, log_path=Path("review.log"), start_time=now, end_time=now, **kwargs)


def _stage_file(context: ProjectContext, stage: TaskStage, task_id: str) -> Path:
    return context.paths.stage_dir(stage) / f"{task_id}.md"


class TestDecision:
    def test_approve_at_end(self) -> None:
        assert is_approved(_result("Looks good.\nAPPROVE"))

    def test_reject_in_tail_wins(self) -> None:
        assert not is_approved(_result("I would APPROVE the style but tests fail.\nREJECT"))

    def test_reject_outside_tail_is_ignored(self) -> None:
        output = "Earlier I thought to reject this. " + ("x" * 200) + "\nAPPROVE"
        assert is_approved(_result(output))

    def test_timeout_always_rejects(self) -> None:
        assert not is_approved(_result("APPROVE", timed_out=True))

    def test_no_keyword_rejects(self) -> None:
        assert not is_approved(_result("I am not sure."))


class TestReview:
    def test_approve_moves_to_completed(self, make_context, write_task) -> None:
        write_task(TaskStage.EXECUTING, "a", status="REVIEW")
        context = make_context("print('All criteria met.'); print('APPROVE')")

        outcome = Supervisor(context).run()

        assert [d.approved for d in outcome.reviews] == [True]
        assert not _stage_file(context, TaskStage.EXECUTING, "a").exists()
        content = _stage_file(context, TaskStage.COMPLETED, "a").read_text()
        assert get_header_field(content, "status") == "COMPLETED"
        assert get_header_field(content, "completed")

    def test_reject_returns_to_queue(self, make_context, write_task) -> None:
        write_task(TaskStage.EXECUTING, "a", status="REVIEW", description="Original description")
        context = make_context("print('Tests are missing.'); print('REJECT')")

        outcome = Supervisor(context).run()

        assert [d.approved for d in outcome.reviews] == [False]
        task = context.tasks.get_task(TaskStage.QUEUE, "a")
        assert task.status == TaskStatus.PENDING
        assert task.iteration == 2
        assert task.description == "Original description"
        assert "## Acceptance Criteria\nIt works." in task.content
        assert "## Rejected" in task.content
        assert "- Reason: Review failed, needs rework" in task.content
        assert "- Review log:" in task.content

    @pytest.mark.skipif(os.name == "nt", reason="POSIX signals")
    def test_review_timeout_rejects(self, make_context, write_task) -> None:
        write_task(TaskStage.EXECUTING, "a", status="REVIEW")
        context = make_context(
            "import time; print('APPROVE', flush=True); time.sleep(60)",
            review_timeout_seconds=1,
        )

        outcome = Supervisor(context).run()

        assert outcome.reviews[0].timed_out
        assert context.tasks.get_task(TaskStage.QUEUE, "a").status == TaskStatus.PENDING

    def test_spawn_error_leaves_task_in_review(self, make_context, write_task) -> None:
        write_task(TaskStage.EXECUTING, "a", status="REVIEW")
        context = make_context(agent_command="collab-runner-no-such-agent-binary {prompt}")

        outcome = Supervisor(context).run()

        assert outcome.reviews[0].skipped
        assert context.tasks.get_task(TaskStage.EXECUTING, "a").status == TaskStatus.REVIEW

    def test_only_review_tasks_are_reviewed(self, make_context, write_task) -> None:
        write_task(TaskStage.EXECUTING, "busy", status="EXECUTING")
        context = make_context("print('APPROVE')")

        outcome = Supervisor(context).run()

        assert outcome.reviews == []
        assert _stage_file(context, TaskStage.EXECUTING, "busy").exists()


class TestInbox:
    def test_inbox_cleared_after_intake(self, make_context) -> None:
        context = make_context(
            "import sys, pathlib; "
            "pathlib.Path('collaboration/queue/task_1_new.md').write_text('---\\nstatus: PENDING\\n---\\n')"
        )
        context.paths.inbox.write_text(INBOX_TEMPLATE + "Build a settings page\n")

        outcome = Supervisor(context).run()

        assert outcome.inbox_processed and outcome.inbox_cleared
        assert context.paths.inbox.read_text() == INBOX_TEMPLATE
        assert [t.id for t in context.tasks.list_tasks(TaskStage.QUEUE)] == ["task_1_new"]

    @pytest.mark.skipif(os.name == "nt", reason="POSIX signals")
    def test_inbox_kept_on_timeout(self, make_context) -> None:
        context = make_context("import time; time.sleep(60)", inbox_timeout_seconds=1)
        text = INBOX_TEMPLATE + "Build a settings page\n"
        context.paths.inbox.write_text(text)

        outcome = Supervisor(context).run()

        assert outcome.inbox_processed and not outcome.inbox_cleared
        assert context.paths.inbox.read_text() == text

    def test_inbox_kept_on_spawn_error(self, make_context) -> None:
        context = make_context(agent_command="collab-runner-no-such-agent-binary {prompt}")
        text = INBOX_TEMPLATE + "Build a settings page\n"
        context.paths.inbox.write_text(text)

        Supervisor(context).run()

        assert context.paths.inbox.read_text() == text

    def test_template_inbox_is_not_processed(self, make_context) -> None:
        context = make_context("raise SystemExit('agent should not run')")
        context.paths.inbox.write_text(INBOX_TEMPLATE)

        outcome = Supervisor(context).run()

        assert not outcome.inbox_processed


def test_second_supervisor_exits_while_first_is_active(make_context, write_task) -> None:
    write_task(TaskStage.EXECUTING, "a", status="REVIEW")
    context = make_context("print('APPROVE')")
    held = context.supervisor_locks.acquire(SUPERVISOR_LOCK_ID, Holder(pid=os.getpid(), hostname=HOST))
    assert held.acquired

    outcome = Supervisor(context).run()

    assert not outcome.ran
    assert outcome.reason == "busy"
    assert context.tasks.get_task(TaskStage.EXECUTING, "a").status == TaskStatus.REVIEW


def test_supervisor_lock_does_not_count_as_executor(make_context) -> None:
    context = make_context()
    context.supervisor_locks.acquire(SUPERVISOR_LOCK_ID, Holder(pid=os.getpid(), hostname=HOST))
    assert context.locks.count_live() == 0


def test_manual_approval(make_context, write_task) -> None:
    write_task(TaskStage.EXECUTING, "a", status="REVIEW")
    context = make_context()
    task = context.tasks.get_task(TaskStage.EXECUTING, "a")

    moved = approve_task(context, task, note="checked by hand")

    assert moved.stage == TaskStage.COMPLETED
    assert moved.status == TaskStatus.COMPLETED
    assert "## Manual Approval" in moved.content
    assert "- Note: checked by hand" in moved.content
    assert not _stage_file(context, TaskStage.EXECUTING, "a").exists()


def test_undecodable_review_task_does_not_block_others(make_context, write_task) -> None:
    context = make_context("print('APPROVE')")
    bad = context.paths.stage_dir(TaskStage.EXECUTING) / "a.md"
    bad.write_bytes(b"---\nstatus: REVIEW\n---\n## Task Description\ncaf\xe9\n")
    write_task(TaskStage.EXECUTING, "b", status="REVIEW")

    outcome = Supervisor(context).run()

    assert [d.task_id for d in outcome.reviews] == ["b"]
    assert bad.exists()
    assert _stage_file(context, TaskStage.COMPLETED, "b").exists()
    assert context.supervisor_locks.read(SUPERVISOR_LOCK_ID) is None


def test_supervisor_lock_is_refreshed_between_reviews(make_context, write_task) -> None:
    write_task(TaskStage.EXECUTING, "a", status="REVIEW")
    write_task(TaskStage.EXECUTING, "b", status="REVIEW")
    context = make_context()
    ages: list[float] = []

    def _runner(argv, *, cwd, log_path, timeout_seconds, kill_grace_seconds) -> AgentRunResult:
        lock = context.supervisor_locks.read(SUPERVISOR_LOCK_ID)
        ages.append((datetime.now(timezone.utc) - lock.started).total_seconds())
        # Age the lock as a long review would.
        data = json.loads(lock.path.read_text())
        data["startTime"] = data["locked_at"] = (datetime.now(timezone.utc) - timedelta(minutes=50)).isoformat()
        lock.path.write_text(json.dumps(data))
        return _result("APPROVE")

    outcome = Supervisor(context, runner=_runner).run()

    assert len(outcome.reviews) == 2
    assert len(ages) == 2 and ages[1] < 60
    assert context.supervisor_locks.read(SUPERVISOR_LOCK_ID) is None
