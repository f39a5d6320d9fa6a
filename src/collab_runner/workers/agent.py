"""Run the external agent command with a wall-clock timeout.

The child's stdout and stderr are streamed into a single log file by two
reader threads; stdout is also collected as the run's output text. On timeout
the child gets SIGTERM, then SIGKILL once the grace period has passed.
"""

from __future__ import annotations

import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Sequence

from loguru import logger

from ..config import ProjectConfig, Settings
from ..constants import OUTCOME_FAILURE, OUTCOME_SPAWN_ERROR, OUTCOME_SUCCESS, OUTCOME_TIMEOUT
from ..utils import _now_iso

_READER_JOIN_SECONDS = 5


@dataclass
class AgentRunResult:
    exit_code: Optional[int]
    output: str
    log_path: Path
    start_time: str
    end_time: str
    runtime_seconds: float = 0.0
    timed_out: bool = False
    terminated: bool = False
    killed: bool = False
    spawn_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.timed_out and self.spawn_error is None and self.exit_code == 0

    @property
    def outcome(self) -> str:
        if self.spawn_error is not None:
            return OUTCOME_SPAWN_ERROR
        if self.timed_out:
            return OUTCOME_TIMEOUT
        return OUTCOME_SUCCESS if self.exit_code == 0 else OUTCOME_FAILURE

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "log_path": str(self.log_path),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "runtime_seconds": round(self.runtime_seconds, 3),
            "timed_out": self.timed_out,
            "terminated": self.terminated,
            "killed": self.killed,
            "spawn_error": self.spawn_error,
            "outcome": self.outcome,
        }


def build_agent_argv(
    template: str,
    *,
    prompt: str,
    prompt_file: Optional[Path] = None,
    project_dir: Optional[Path] = None,
    allowed_tools: Sequence[str] = (),
    allowed_tools_flag: str = "",
) -> list[str]:
    """Expand an agent command template into an argv list.

    The template is split with :func:`shlex.split` before substitution, so a
    prompt containing spaces or quotes stays a single argument. When the
    template mentions neither ``{prompt}`` nor ``{prompt_file}`` the prompt is
    appended as the last positional argument.

    Raises:
        ValueError: The template is empty or has unbalanced quotes.
    """
    parts = shlex.split(template)
    if not parts:
        raise ValueError("Agent command is empty")

    values = {
        "{prompt}": prompt,
        "{prompt_file}": str(prompt_file) if prompt_file else "",
        "{project_dir}": str(project_dir) if project_dir else "",
    }
    argv: list[str] = []
    for part in parts:
        for placeholder, value in values.items():
            part = part.replace(placeholder, value)
        argv.append(part)

    if "{prompt}" not in template and "{prompt_file}" not in template:
        argv.append(prompt)
    if allowed_tools and allowed_tools_flag:
        argv.extend([allowed_tools_flag, ",".join(allowed_tools)])
    return argv


def _stream_pipe(
    pipe: Any,
    handle: IO[str],
    write_lock: threading.Lock,
    sink: Optional[list[str]] = None,
) -> None:
    for line in iter(pipe.readline, ""):
        if sink is not None:
            sink.append(line)
        with write_lock:
            if handle.closed:
                continue
            handle.write(line)
            handle.flush()
    try:
        pipe.close()
    except OSError:
        pass


def run_agent_command(
    argv: Sequence[str],
    *,
    cwd: Path,
    log_path: Path,
    timeout_seconds: float,
    kill_grace_seconds: float,
) -> AgentRunResult:
    """Run ``argv`` to completion or timeout and return what happened.

    Never raises for agent failures: a missing executable or other spawn
    failure is reported through ``spawn_error``.

    Args:
        argv: Command and arguments; no shell is involved.
        cwd: Working directory for the child.
        log_path: File receiving the interleaved stdout and stderr.
        timeout_seconds: Wall-clock budget before SIGTERM.
        kill_grace_seconds: Wait after SIGTERM before SIGKILL.

    Returns:
        An :class:`AgentRunResult`.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    start_iso = _now_iso()
    start = time.monotonic()
    output: list[str] = []
    write_lock = threading.Lock()

    handle = open(log_path, "w", encoding="utf-8")
    try:
        try:
            process = subprocess.Popen(
                list(argv),
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            message = f"Failed to start agent command {argv[0] if argv else ''!r}: {exc}"
            handle.write(f"[SPAWN ERROR] {message}\n")
            logger.error(message)
            return AgentRunResult(
                exit_code=None,
                output="",
                log_path=log_path,
                start_time=start_iso,
                end_time=_now_iso(),
                runtime_seconds=time.monotonic() - start,
                spawn_error=message,
            )

        readers = [
            threading.Thread(
                target=_stream_pipe,
                args=(process.stdout, handle, write_lock, output),
                daemon=True,
            ),
            threading.Thread(
                target=_stream_pipe,
                args=(process.stderr, handle, write_lock, None),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = terminated = killed = False
        try:
            process.wait(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("Agent PID {} exceeded {}s; terminating", process.pid, timeout_seconds)
            with write_lock:
                handle.write(f"\n\n[TIMEOUT] Agent exceeded {timeout_seconds}s; sending SIGTERM\n")
                handle.flush()
            process.terminate()
            terminated = True
            try:
                process.wait(timeout=kill_grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning("Agent PID {} ignored SIGTERM for {}s; killing", process.pid, kill_grace_seconds)
                with write_lock:
                    handle.write("[TIMEOUT] Grace period elapsed; sending SIGKILL\n")
                    handle.flush()
                process.kill()
                killed = True
                process.wait()

        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
    finally:
        # Readers that outlive the join see a closed handle and stop writing.
        with write_lock:
            handle.close()

    return AgentRunResult(
        exit_code=process.returncode,
        output="".join(output),
        log_path=log_path,
        start_time=start_iso,
        end_time=_now_iso(),
        runtime_seconds=time.monotonic() - start,
        timed_out=timed_out,
        terminated=terminated,
        killed=killed,
    )


def invoke_agent(
    prompt: str,
    *,
    project_dir: Path,
    log_path: Path,
    settings: Settings,
    config: ProjectConfig,
    timeout_seconds: float,
    runner=run_agent_command,
) -> AgentRunResult:
    """Build the agent argv for a project and run it through ``runner``.

    A template that cannot be parsed is reported as a spawn error rather than
    raised, so callers always get a result to record on the task.
    """
    template = config.agent_command or settings.agent_command
    prompt_file: Optional[Path] = None
    if "{prompt_file}" in template:
        prompt_file = log_path.with_suffix(".prompt.md")
        prompt_file.parent.mkdir(parents=True, exist_ok=True)
        prompt_file.write_text(prompt, encoding="utf-8")
    try:
        argv = build_agent_argv(
            template,
            prompt=prompt,
            prompt_file=prompt_file,
            project_dir=project_dir,
            allowed_tools=config.allowed_tools,
            allowed_tools_flag=settings.allowed_tools_flag,
        )
    except ValueError as exc:
        message = f"Invalid agent command {template!r}: {exc}"
        logger.error(message)
        now = _now_iso()
        return AgentRunResult(
            exit_code=None,
            output="",
            log_path=log_path,
            start_time=now,
            end_time=now,
            spawn_error=message,
        )
    return runner(
        argv,
        cwd=project_dir,
        log_path=log_path,
        timeout_seconds=timeout_seconds,
        kill_grace_seconds=settings.kill_grace_seconds,
    )
