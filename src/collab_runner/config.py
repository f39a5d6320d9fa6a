"""Load global scheduler settings and per-project configuration.

Global settings live in ``settings.yaml`` under the app data directory;
project configuration in ``collaboration/.collab_runner/config.yaml``. Both
are optional: missing or unreadable files fall back to computed defaults.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_ALLOWED_TOOLS_FLAG,
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
    DEFAULT_INBOX_TIMEOUT_SECONDS,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_REVIEW_TIMEOUT_SECONDS,
    LOCK_STALE_SECONDS,
)
from .io_utils import _load_data_with_error, _save_data
from .paths import ProjectPaths, settings_file
from .utils import _coerce_int


def default_max_executors() -> int:
    """Half the CPUs, clamped to ``[1, 4]``."""
    cpus = os.cpu_count() or 1
    return max(1, min(4, cpus // 2))


@dataclass
class Settings:
    max_executors: int = field(default_factory=default_max_executors)
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL_SECONDS
    agent_command: str = DEFAULT_AGENT_COMMAND
    allowed_tools_flag: str = DEFAULT_ALLOWED_TOOLS_FLAG
    executor_timeout_seconds: int = DEFAULT_EXECUTOR_TIMEOUT_SECONDS
    inbox_timeout_seconds: int = DEFAULT_INBOX_TIMEOUT_SECONDS
    review_timeout_seconds: int = DEFAULT_REVIEW_TIMEOUT_SECONDS
    kill_grace_seconds: int = DEFAULT_KILL_GRACE_SECONDS
    lock_stale_seconds: int = LOCK_STALE_SECONDS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        defaults = cls()

        def _int(key: str, minimum: int) -> int:
            return max(minimum, _coerce_int(data.get(key), getattr(defaults, key)))

        agent_command = str(data.get("agent_command") or "").strip() or defaults.agent_command
        flag = data.get("allowed_tools_flag")
        return cls(
            max_executors=_int("max_executors", 1),
            check_interval_seconds=_int("check_interval_seconds", 1),
            agent_command=agent_command,
            allowed_tools_flag=defaults.allowed_tools_flag if flag is None else str(flag).strip(),
            executor_timeout_seconds=_int("executor_timeout_seconds", 1),
            inbox_timeout_seconds=_int("inbox_timeout_seconds", 1),
            review_timeout_seconds=_int("review_timeout_seconds", 1),
            kill_grace_seconds=_int("kill_grace_seconds", 0),
            lock_stale_seconds=_int("lock_stale_seconds", 1),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings merged over defaults.

    Args:
        path: Settings file; defaults to ``<app data>/settings.yaml``.

    Returns:
        The resolved :class:`Settings`.
    """
    path = path or settings_file()
    data, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Ignoring unreadable settings ({}); using defaults", err)
    return Settings.from_dict(data)


def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    _save_data(path or settings_file(), settings.to_dict())


@dataclass(frozen=True)
class ProjectConfig:
    allowed_tools: tuple[str, ...] = ()
    agent_command: Optional[str] = None


def load_project_config(paths: ProjectPaths) -> ProjectConfig:
    """Read the optional per-project config; errors yield an empty config."""
    data, err = _load_data_with_error(paths.config_file, {})
    if err:
        logger.warning("Ignoring project config for {}: {}", paths.project_dir, err)
        return ProjectConfig()
    raw_tools = data.get("allowed_tools")
    tools: tuple[str, ...] = ()
    if isinstance(raw_tools, list):
        tools = tuple(str(item).strip() for item in raw_tools if str(item).strip())
    command = data.get("agent_command")
    return ProjectConfig(
        allowed_tools=tools,
        agent_command=str(command).strip() if isinstance(command, str) and command.strip() else None,
    )
