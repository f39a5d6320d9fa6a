from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest
from loguru import logger

from collab_runner.config import Settings
from collab_runner.domain.models import TaskStage
from collab_runner.paths import ProjectPaths
from collab_runner.storage.bootstrap import ensure_project_layout
from collab_runner.storage.container import ProjectContext

from helpers import agent_command, task_text


@pytest.fixture(autouse=True)
def app_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "app_home"
    monkeypatch.setenv("COLLAB_RUNNER_HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    # CLI tests point loguru at captured streams that close after each test.
    logger.remove()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    ensure_project_layout(ProjectPaths.for_project(path))
    return path


@pytest.fixture
def make_context(project_dir: Path) -> Callable[..., ProjectContext]:
    def _make(code: Optional[str] = None, **overrides) -> ProjectContext:
        values = {
            "max_executors": 2,
            "executor_timeout_seconds": 30,
            "inbox_timeout_seconds": 30,
            "review_timeout_seconds": 30,
            "kill_grace_seconds": 1,
        }
        values.update(overrides)
        if code is not None:
            values["agent_command"] = agent_command(code)
        return ProjectContext(project_dir, settings=Settings(**values))

    return _make


@pytest.fixture
def write_task(project_dir: Path) -> Callable[..., Path]:
    paths = ProjectPaths.for_project(project_dir)

    def _write(stage: TaskStage, task_id: str, **kwargs) -> Path:
        path = paths.stage_dir(stage) / f"{task_id}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(task_text(task_id, **kwargs), encoding="utf-8")
        return path

    return _write
