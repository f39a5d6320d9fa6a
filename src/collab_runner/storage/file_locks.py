"""Per-task advisory locks stored as JSON marker files.

A lock is valid while its holder process is alive and it is younger than the
staleness ceiling. Invalid locks are deleted and the acquisition retried, in a
bounded loop.
"""

from __future__ import annotations

import json
import os
import socket
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import LOCK_STALE_SECONDS, LOCK_SUFFIX, MAX_ACQUIRE_ATTEMPTS
from ..domain.models import Acquired, AcquireResult, HeldByOther, Holder, LockInfo
from ..io_utils import _atomic_write_json
from ..utils import _now_iso, _pid_is_running
from .interfaces import LockManager


def _read_raw(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _parse_raw(raw: bytes, task_id: str, path: Path) -> Optional[LockInfo]:
    try:
        data: Any = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return LockInfo.from_dict(data, task_id=task_id, path=path)


class FileLockManager(LockManager):
    """Lock manager for one lock directory.

    Args:
        lock_dir: Directory holding ``<task_id>.lock`` files. Created on first
            acquire.
        stale_after_seconds: Age beyond which a lock is reclaimable regardless
            of its holder.
        is_alive: Liveness probe for a holder PID; ``os.kill(pid, 0)`` by
            default.
    """

    def __init__(
        self,
        lock_dir: Path,
        *,
        stale_after_seconds: int = LOCK_STALE_SECONDS,
        is_alive: Callable[[int], bool] = _pid_is_running,
        max_attempts: int = MAX_ACQUIRE_ATTEMPTS,
        hostname: Optional[str] = None,
    ) -> None:
        self._lock_dir = lock_dir
        self._stale_after = stale_after_seconds
        self._is_alive = is_alive
        self._max_attempts = max(1, max_attempts)
        self._hostname = hostname or socket.gethostname()

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    def _lock_path(self, task_id: str) -> Path:
        return self._lock_dir / f"{task_id}{LOCK_SUFFIX}"

    # -- helpers ------------------------------------------------------------

    def _create_exclusive(self, path: Path, lock: LockInfo) -> bool:
        """Atomically create ``path`` holding ``lock``; False if it already exists.

        The record is written to a temp file first and hard-linked into place,
        so no reader ever sees an empty lock file.
        """
        fd, tmp = tempfile.mkstemp(dir=str(self._lock_dir), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(lock.to_dict(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp, path)
            except FileExistsError:
                return False
            return True
        finally:
            Path(tmp).unlink(missing_ok=True)

    def _discard(self, path: Path, seen: bytes) -> bool:
        """Delete ``path`` only if it still holds the bytes we judged invalid."""
        try:
            current = _read_raw(path)
            if current is None:
                return True
            if current != seen:
                return True
            path.unlink(missing_ok=True)
            return True
        except OSError as exc:
            logger.error("Failed to remove invalid lock file {}: {}", path, exc)
            return False

    def _age_seconds(self, lock: LockInfo, path: Path) -> float:
        started = lock.started
        if started is None:
            try:
                started = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except OSError:
                return 0.0
        return (datetime.now(timezone.utc) - started).total_seconds()

    # -- LockManager --------------------------------------------------------

    def holder_alive(self, lock: LockInfo) -> bool:
        if lock.hostname and lock.hostname != self._hostname:
            # Cannot probe a foreign PID; only staleness reclaims such a lock.
            return True
        return bool(self._is_alive(lock.pid))

    def acquire(self, task_id: str, holder: Optional[Holder] = None) -> AcquireResult:
        holder = holder or Holder.current()
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        path = self._lock_path(task_id)
        last_seen: Optional[LockInfo] = None

        for _ in range(self._max_attempts):
            lock = LockInfo(task_id=task_id, pid=holder.pid, hostname=holder.hostname, path=path)
            if self._create_exclusive(path, lock):
                logger.info("Acquired lock for task {}", task_id)
                return Acquired(lock)

            raw = _read_raw(path)
            if raw is None:
                continue
            existing = _parse_raw(raw, task_id, path)
            if existing is None:
                logger.warning("Removing invalid lock file for task {}", task_id)
                if not self._discard(path, raw):
                    return HeldByOther(None)
                continue

            last_seen = existing
            age = self._age_seconds(existing, path)
            if age > self._stale_after:
                logger.warning(
                    "Removing stale lock for task {} (age: {} minutes)",
                    task_id,
                    round(age / 60),
                )
                if not self._discard(path, raw):
                    return HeldByOther(existing)
                continue

            if not self.holder_alive(existing):
                logger.warning("Removing stale lock for task {} (PID {} not running)", task_id, existing.pid)
                if not self._discard(path, raw):
                    return HeldByOther(existing)
                continue

            logger.info("Task {} is locked by PID {}", task_id, existing.pid)
            return HeldByOther(existing)

        logger.warning("Gave up acquiring lock for task {} after {} attempts", task_id, self._max_attempts)
        return HeldByOther(last_seen)

    def release(self, lock: LockInfo) -> bool:
        path = lock.path or self._lock_path(lock.task_id)
        raw = _read_raw(path)
        if raw is None:
            return False
        current = _parse_raw(raw, lock.task_id, path)
        if current is None or current.token != lock.token:
            owner = current.pid if current else "unknown"
            logger.warning("Lock for task {} is now held by PID {}; leaving it in place", lock.task_id, owner)
            return False
        path.unlink(missing_ok=True)
        logger.debug("Released lock for task {}", lock.task_id)
        return True

    def refresh(self, lock: LockInfo) -> bool:
        path = lock.path or self._lock_path(lock.task_id)
        raw = _read_raw(path)
        current = _parse_raw(raw, lock.task_id, path) if raw is not None else None
        if current is None or current.token != lock.token:
            logger.warning("Lock for task {} is no longer ours; not refreshing", lock.task_id)
            return False
        lock.started_at = _now_iso()
        _atomic_write_json(path, lock.to_dict())
        return True

    def read(self, task_id: str) -> Optional[LockInfo]:
        path = self._lock_path(task_id)
        raw = _read_raw(path)
        if raw is None:
            return None
        return _parse_raw(raw, task_id, path)

    def list_locks(self) -> list[LockInfo]:
        try:
            paths = sorted(p for p in self._lock_dir.iterdir() if p.name.endswith(LOCK_SUFFIX))
        except FileNotFoundError:
            return []
        locks: list[LockInfo] = []
        for path in paths:
            raw = _read_raw(path)
            if raw is None:
                continue
            lock = _parse_raw(raw, path.name[: -len(LOCK_SUFFIX)], path)
            if lock is not None:
                locks.append(lock)
        return locks
