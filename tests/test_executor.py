"""Tests for the Executor worker: claiming, resuming and finalizing tasks."""

from __future__ import annotations

import os
import socket
import threading
from pathlib import Path

import pytest

from collab_runner.domain.models import Holder, LockInfo, TaskStage, TaskStatus, get_header_field
from collab_runner.paths import ProjectPaths
from collab_runner.storage.file_locks import FileLockManager
from collab_runner.storage.file_tasks import FileTaskStore
from collab_runner.storage.container import ProjectContext
from collab_runner.utils import _now_iso
from collab_runner.workers.agent import AgentRunResult
from collab_runner.workers.executor import Executor

HOST = socket.gethostname()
DEAD_PID = 999_999


def _read(context: ProjectContext, stage: TaskStage, task_id: str) -> str:
    return (context.paths.stage_dir(stage) / f"{task_id}.md").read_text()


def test_fresh_queue_claims_lexically_first_task(make_context, write_task) -> None:
    for task_id in ("c", "a", "b"):
        write_task(TaskStage.QUEUE, task_id, description=f"Task {task_id}")
    context = make_context("print('implemented the feature')")

    outcome = Executor(context).run()

    assert outcome.executed and outcome.task_id == "a"
    assert outcome.outcome == "success"
    content = _read(context, TaskStage.EXECUTING, "a")
    assert get_header_field(content, "status") == "REVIEW"
    assert get_header_field(content, "executor") == str(os.getpid())
    assert get_header_field(content, "executor_start")
    assert "## Execution Result" in content
    assert "- Success: true" in content
    assert "implemented the feature" in content
    assert "Task a" in content
    assert [t.id for t in context.tasks.list_tasks(TaskStage.QUEUE)] == ["b", "c"]
    assert context.locks.read("a") is None


def test_locked_candidate_is_skipped(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "a")
    write_task(TaskStage.QUEUE, "b")
    context = make_context("print('ok')")
    other = context.locks.acquire("a", Holder(pid=os.getpid(), hostname=HOST))
    assert other.acquired

    outcome = Executor(context).run()

    assert outcome.task_id == "b"
    assert context.tasks.get_task(TaskStage.QUEUE, "a") is not None
    assert context.locks.read("a").token == other.lock.token


def test_racing_executors_claim_distinct_tasks(make_context, write_task) -> None:
    for task_id in ("a", "b", "c"):
        write_task(TaskStage.QUEUE, task_id)
    context = make_context()
    barrier = threading.Barrier(3)
    claimed: list[str] = []
    guard = threading.Lock()

    def _runner(argv, *, cwd, log_path, timeout_seconds, kill_grace_seconds) -> AgentRunResult:
        try:
            barrier.wait(timeout=10)
        except threading.BrokenBarrierError:
            pass
        now = _now_iso()
        return AgentRunResult(exit_code=0, output="ok", log_path=log_path, start_time=now, end_time=now)

    def _work(pid: int) -> None:
        outcome = Executor(context, runner=_runner, holder=Holder(pid=pid, hostname=HOST)).run()
        if outcome.executed:
            with guard:
                claimed.append(outcome.task_id)

    threads = [threading.Thread(target=_work, args=(os.getpid(),)) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(claimed) == ["a", "b", "c"]
    assert context.tasks.list_tasks(TaskStage.QUEUE) == []


def test_vanished_candidate_is_skipped(make_context, write_task, project_dir: Path) -> None:
    write_task(TaskStage.QUEUE, "a")
    write_task(TaskStage.QUEUE, "b")

    class VanishingStore(FileTaskStore):
        def list_tasks(self, stage):
            tasks = super().list_tasks(stage)
            if stage == TaskStage.QUEUE and tasks:
                tasks[0].path.unlink()
            return tasks

    base = make_context("print('ok')")
    context = ProjectContext(project_dir, settings=base.settings, tasks=VanishingStore(base.paths))

    outcome = Executor(context).run()

    assert outcome.task_id == "b"
    assert context.locks.read("a") is None


def test_undecodable_task_does_not_block_the_queue(make_context, write_task, project_dir: Path) -> None:
    queue = ProjectPaths.for_project(project_dir).stage_dir(TaskStage.QUEUE)
    (queue / "a.md").write_bytes(b"---\nstatus: PENDING\n---\n## Task Description\ncaf\xe9\n")
    write_task(TaskStage.QUEUE, "b")
    context = make_context("print('ok')")

    first = Executor(context).run()
    second = Executor(context).run()

    assert first.executed and first.task_id == "b"
    assert not second.executed and second.reason == "no-work"
    assert (queue / "a.md").exists()
    assert context.locks.read("a") is None


def test_empty_queue_is_no_work(make_context) -> None:
    outcome = Executor(make_context("print('never')")).run()
    assert not outcome.executed
    assert outcome.reason == "no-work"


def _orphan_context(make_context, project_dir: Path, code: str) -> ProjectContext:
    base = make_context(code)
    locks = FileLockManager(base.paths.lock_dir, is_alive=lambda pid: pid != DEAD_PID)
    return ProjectContext(project_dir, settings=base.settings, locks=locks)


def test_resume_reclaims_dead_holder_lock(make_context, write_task, project_dir: Path) -> None:
    write_task(TaskStage.EXECUTING, "x", status="EXECUTING", extra_header=f"executor: {DEAD_PID}\n")
    context = _orphan_context(make_context, project_dir, "print('resumed ok')")
    dead = context.locks.acquire("x", Holder(pid=DEAD_PID, hostname=HOST))
    assert dead.acquired

    outcome = Executor(context, resume_task_id="x").run()

    assert outcome.executed and outcome.resumed
    content = _read(context, TaskStage.EXECUTING, "x")
    assert get_header_field(content, "status") == "REVIEW"
    assert get_header_field(content, "executor") == str(os.getpid())
    assert context.locks.read("x") is None


def test_resume_backs_off_when_holder_is_alive(make_context, write_task, project_dir: Path) -> None:
    write_task(TaskStage.EXECUTING, "x", status="EXECUTING")
    context = _orphan_context(make_context, project_dir, "print('should not run')")
    live = context.locks.acquire("x", Holder(pid=os.getpid(), hostname=HOST))

    outcome = Executor(context, resume_task_id="x").run()

    assert not outcome.executed
    assert get_header_field(_read(context, TaskStage.EXECUTING, "x"), "status") == "EXECUTING"
    assert context.locks.read("x").token == live.lock.token


def test_resume_of_finished_task_does_nothing(make_context, write_task, project_dir: Path) -> None:
    write_task(TaskStage.EXECUTING, "x", status="REVIEW")
    context = _orphan_context(make_context, project_dir, "print('should not run')")

    outcome = Executor(context, resume_task_id="x").run()

    assert not outcome.executed
    assert context.locks.read("x") is None


def test_resume_of_missing_task_falls_back_to_queue(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "q1")
    context = make_context("print('ok')")

    outcome = Executor(context, resume_task_id="ghost").run()

    assert outcome.task_id == "q1"
    assert not outcome.resumed


def test_failing_agent_still_moves_to_review(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "a")
    context = make_context("import sys; print('broke'); sys.exit(3)")

    outcome = Executor(context).run()

    assert outcome.outcome == "failure"
    content = _read(context, TaskStage.EXECUTING, "a")
    assert get_header_field(content, "status") == "REVIEW"
    assert "- Success: false" in content
    assert "- Exit code: 3" in content
    assert context.locks.read("a") is None


def test_missing_agent_binary_is_spawn_error(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "a")
    context = make_context(agent_command="collab-runner-no-such-agent-binary -p {prompt}")

    outcome = Executor(context).run()

    assert outcome.outcome == "spawn-error"
    content = _read(context, TaskStage.EXECUTING, "a")
    assert get_header_field(content, "status") == "REVIEW"
    assert "- Outcome: spawn-error" in content
    assert context.locks.read("a") is None


@pytest.mark.skipif(os.name == "nt", reason="POSIX signals")
def test_timeout_ends_in_review_with_lock_released(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "a")
    code = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
    context = make_context(code, executor_timeout_seconds=2, kill_grace_seconds=1)

    outcome = Executor(context).run()

    assert outcome.outcome == "timeout"
    assert outcome.result.terminated and outcome.result.killed
    content = _read(context, TaskStage.EXECUTING, "a")
    assert get_header_field(content, "status") == "REVIEW"
    assert "- Outcome: timeout" in content
    assert "timed out" in content
    assert context.locks.read("a") is None


def test_lock_record_written_while_running(make_context, write_task) -> None:
    write_task(TaskStage.QUEUE, "a")
    context = make_context()
    seen: list[LockInfo] = []

    def _runner(argv, *, cwd, log_path, timeout_seconds, kill_grace_seconds) -> AgentRunResult:
        seen.append(context.locks.read("a"))
        now = _now_iso()
        return AgentRunResult(exit_code=0, output="", log_path=log_path, start_time=now, end_time=now)

    Executor(context, runner=_runner).run()

    assert seen and seen[0].pid == os.getpid()
    assert context.locks.is_held("a") is False
