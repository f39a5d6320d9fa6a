"""Persist the global registry of projects the watcher polls."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .io_utils import FileLock, _load_data_with_error, _save_data
from .paths import projects_file
from .utils import _now_iso


@dataclass
class ProjectRecord:
    path: str
    name: str
    enabled: bool = True
    last_activity: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Optional["ProjectRecord"]:
        path = str(data.get("path") or "").strip()
        if not path:
            return None
        return cls(
            path=path,
            name=str(data.get("name") or Path(path).name),
            enabled=bool(data.get("enabled", True)),
            last_activity=str(data["last_activity"]) if data.get("last_activity") else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RegistryError(ValueError):
    """The registry file exists but cannot be parsed; it is left untouched."""


def _normalize_path(project_path: Path | str) -> str:
    return str(Path(project_path).expanduser().resolve())


def _registry_lock(path: Path) -> FileLock:
    return FileLock(path.with_name(f"{path.name}.lock"))


def _records(data: dict[str, Any]) -> list[ProjectRecord]:
    raw = data.get("projects")
    if not isinstance(raw, list):
        return []
    records = [ProjectRecord.from_dict(item) for item in raw if isinstance(item, dict)]
    return [record for record in records if record is not None]


def _load_for_update(path: Path) -> list[ProjectRecord]:
    data, err = _load_data_with_error(path, {})
    if err:
        raise RegistryError(f"Refusing to modify unreadable project registry ({err})")
    return _records(data)


def load_projects(path: Optional[Path] = None) -> list[ProjectRecord]:
    path = path or projects_file()
    data, err = _load_data_with_error(path, {})
    if err:
        logger.error("Failed to load projects: {}", err)
        return []
    return _records(data)


def save_projects(projects: list[ProjectRecord], path: Optional[Path] = None) -> None:
    _save_data(path or projects_file(), {"projects": [p.to_dict() for p in projects]})


def register_project(project_path: Path | str, name: Optional[str] = None, *, path: Optional[Path] = None) -> ProjectRecord:
    """Add a project, or replace the existing entry for the same directory.

    Raises:
        RegistryError: When the registry file exists but cannot be parsed.
    """
    path = path or projects_file()
    resolved = _normalize_path(project_path)
    record = ProjectRecord(
        path=resolved,
        name=name or Path(resolved).name,
        enabled=True,
        last_activity=_now_iso(),
    )
    with _registry_lock(path):
        projects = _load_for_update(path)
        for idx, existing in enumerate(projects):
            if existing.path == resolved:
                projects[idx] = record
                break
        else:
            projects.append(record)
        save_projects(projects, path)
    return record


def remove_project(project_path: Path | str, *, path: Optional[Path] = None) -> bool:
    path = path or projects_file()
    resolved = _normalize_path(project_path)
    with _registry_lock(path):
        projects = _load_for_update(path)
        remaining = [p for p in projects if p.path != resolved]
        if len(remaining) == len(projects):
            return False
        save_projects(remaining, path)
    return True


def set_enabled(project_path: Path | str, enabled: bool, *, path: Optional[Path] = None) -> bool:
    path = path or projects_file()
    resolved = _normalize_path(project_path)
    with _registry_lock(path):
        projects = _load_for_update(path)
        for project in projects:
            if project.path == resolved:
                project.enabled = enabled
                save_projects(projects, path)
                return True
    return False


def enabled_projects(path: Optional[Path] = None) -> list[ProjectRecord]:
    """Enabled projects in registration order."""
    return [p for p in load_projects(path) if p.enabled]


def touch_project(project_path: Path | str, *, path: Optional[Path] = None) -> None:
    """Stamp ``last_activity`` for a registered project; unknown paths are ignored."""
    path = path or projects_file()
    target = str(project_path)
    with _registry_lock(path):
        try:
            projects = _load_for_update(path)
        except RegistryError as exc:
            logger.warning("Skipping activity stamp for {}: {}", target, exc)
            return
        for project in projects:
            if project.path == target:
                project.last_activity = _now_iso()
                save_projects(projects, path)
                return
