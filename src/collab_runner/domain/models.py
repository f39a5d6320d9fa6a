"""Task and lock records shared by the store, the workers and the watcher.

Task files are markdown with a ``---`` delimited header of ``key: value``
lines. Headers are read with per-field patterns so that a garbled or
half-written file still yields a usable record; nothing here raises on bad
input.
"""

from __future__ import annotations

import os
import re
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from ..constants import DEFAULT_ITERATION, DEFAULT_MAX_ITERATIONS, DEFAULT_PRIORITY, INBOX_TEMPLATE_HINT
from ..utils import _coerce_int, _now_iso, _parse_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Fine-grained lifecycle status written in a task header."""

    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    REVIEW = "REVIEW"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"  # parse fallback, never written

    @classmethod
    def parse(cls, value: Optional[str]) -> "TaskStatus":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN


class TaskStage(str, Enum):
    """Directory a task lives in; its coarse lifecycle stage."""

    QUEUE = "queue"
    EXECUTING = "executing"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------

_FRONT_MATTER_RE = re.compile(r"\A\s*---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.S)
_DESCRIPTION_RE = re.compile(r"^##[ \t]*Task Description[ \t]*\r?\n\s*([^\r\n]+)", re.M | re.I)
_WORD_RE = re.compile(r"[\w-]+")
_DIGITS_RE = re.compile(r"\d+")
_FIELD_PATTERNS: dict[str, re.Pattern[str]] = {}


def _field_pattern(key: str) -> re.Pattern[str]:
    pattern = _FIELD_PATTERNS.get(key)
    if pattern is None:
        pattern = re.compile(rf"^([ \t]*){re.escape(key)}[ \t]*:[ \t]*(.*?)[ \t]*\r?$", re.M | re.I)
        _FIELD_PATTERNS[key] = pattern
    return pattern


def _header_span(content: str) -> Optional[tuple[int, int]]:
    match = _FRONT_MATTER_RE.match(content)
    if not match:
        return None
    return match.start(1), match.end(1)


def get_header_field(content: str, key: str) -> Optional[str]:
    """Return the raw value of ``key`` from the header, or ``None``.

    Files without a front matter block are searched as a whole.
    """
    span = _header_span(content)
    text = content[span[0]:span[1]] if span else content
    match = _field_pattern(key).search(text)
    if not match:
        return None
    return match.group(2)


def set_header_field(content: str, key: str, value: Any) -> str:
    """Return ``content`` with header ``key`` set to ``value``.

    Replaces the existing line when present, otherwise appends the key to the
    header block (creating one when the file has none).
    """
    line = f"{key}: {value}"
    pattern = _field_pattern(key)
    span = _header_span(content)
    if span:
        start, end = span
        header = content[start:end]
        if pattern.search(header):
            header = pattern.sub(lambda m: m.group(1) + line, header, count=1)
        else:
            header = f"{header}\n{line}" if header else line
        return content[:start] + header + content[end:]
    if pattern.search(content):
        return pattern.sub(lambda m: m.group(1) + line, content, count=1)
    return f"---\n{line}\n---\n{content}"


def format_section(title: str, items: Union[Mapping[str, Any], str]) -> str:
    """Render a ``## title`` section; mappings become ``- key: value`` bullets."""
    if isinstance(items, str):
        body = items.strip()
    else:
        lines = []
        for key, value in items.items():
            text = str(value).strip().replace("\n", "\n  ")
            lines.append(f"- {key}: {text}")
        body = "\n".join(lines)
    return f"## {title}\n{body}\n"


def append_text(content: str, text: str) -> str:
    return f"{content.rstrip()}\n\n{text.strip()}\n"


def append_section(content: str, title: str, items: Union[Mapping[str, Any], str]) -> str:
    """Append a ``## title`` section built from ``items`` to the body."""
    return append_text(content, format_section(title, items))


def inbox_has_content(text: Optional[str]) -> bool:
    """True when the inbox holds anything beyond its empty template."""
    if not text:
        return False
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or stripped.startswith("---"):
            continue
        if INBOX_TEMPLATE_HINT in stripped:
            continue
        return True
    return False


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class TaskRecord:
    id: str
    stage: TaskStage
    status: TaskStatus = TaskStatus.UNKNOWN
    priority: str = DEFAULT_PRIORITY
    iteration: int = DEFAULT_ITERATION
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    created: Optional[str] = None
    description: str = ""
    content: str = ""
    executor: Optional[str] = None
    executor_start: Optional[str] = None
    completed: Optional[str] = None
    path: Optional[Path] = None

    @property
    def filename(self) -> str:
        return f"{self.id}.md"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "status": self.status.value,
            "priority": self.priority,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "created": self.created,
            "description": self.description,
            "executor": self.executor,
            "executor_start": self.executor_start,
            "completed": self.completed,
            "path": str(self.path) if self.path else None,
        }


def parse_task(
    task_id: str,
    stage: TaskStage,
    content: str,
    *,
    path: Optional[Path] = None,
    mtime: Optional[float] = None,
) -> TaskRecord:
    """Build a :class:`TaskRecord` from raw text, defaulting every bad field."""
    task = TaskRecord(id=task_id, stage=stage, content=content, path=path)

    raw_status = get_header_field(content, "status")
    if raw_status:
        word = _WORD_RE.search(raw_status)
        task.status = TaskStatus.parse(word.group(0) if word else None)

    raw_priority = get_header_field(content, "priority")
    if raw_priority:
        word = _WORD_RE.search(raw_priority)
        if word:
            task.priority = word.group(0)

    raw_iteration = get_header_field(content, "iteration")
    if raw_iteration:
        digits = _DIGITS_RE.match(raw_iteration)
        if digits:
            task.iteration = int(digits.group(0))

    raw_max = get_header_field(content, "max_iterations")
    if raw_max:
        digits = _DIGITS_RE.match(raw_max)
        if digits:
            task.max_iterations = int(digits.group(0))

    task.created = get_header_field(content, "created") or None
    if not task.created and mtime is not None:
        task.created = datetime.fromtimestamp(mtime).date().isoformat()

    task.executor = get_header_field(content, "executor") or None
    task.executor_start = get_header_field(content, "executor_start") or None
    task.completed = get_header_field(content, "completed") or None

    match = _DESCRIPTION_RE.search(content)
    if match:
        task.description = match.group(1).strip()
    return task


@dataclass(frozen=True)
class Holder:
    """Identity written into a lock file by the process that owns it."""

    pid: int
    hostname: str

    @classmethod
    def current(cls) -> "Holder":
        return cls(pid=os.getpid(), hostname=socket.gethostname())


@dataclass
class LockInfo:
    task_id: str
    pid: int
    hostname: str = ""
    started_at: str = field(default_factory=_now_iso)
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    path: Optional[Path] = None

    @property
    def started(self) -> Optional[datetime]:
        return _parse_iso(self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "startTime": self.started_at,
            "locked_at": self.started_at,
            "taskId": self.task_id,
            "hostname": self.hostname,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: Any, *, task_id: str, path: Optional[Path] = None) -> Optional["LockInfo"]:
        """Return the lock described by ``data``, or ``None`` if it is unusable."""
        if not isinstance(data, dict):
            return None
        pid = _coerce_int(data.get("pid"), 0)
        if pid <= 0:
            return None
        started_at = data.get("startTime") or data.get("locked_at") or ""
        return cls(
            task_id=str(data.get("taskId") or task_id),
            pid=pid,
            hostname=str(data.get("hostname") or ""),
            started_at=str(started_at),
            token=str(data.get("token") or ""),
            path=path,
        )


@dataclass(frozen=True)
class Acquired:
    lock: LockInfo

    @property
    def acquired(self) -> bool:
        return True


@dataclass(frozen=True)
class HeldByOther:
    holder: Optional[LockInfo]

    @property
    def acquired(self) -> bool:
        return False


AcquireResult = Union[Acquired, HeldByOther]
