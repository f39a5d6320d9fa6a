"""Tests for the project registry, settings, and project bootstrap."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from collab_runner.config import Settings, default_max_executors, load_project_config, load_settings, save_settings
from collab_runner.constants import DEFAULT_ALLOWED_TOOLS, INBOX_TEMPLATE
from collab_runner.domain.models import TaskStage
from collab_runner.paths import ProjectPaths, app_data_dir, projects_file, settings_file
from collab_runner.projects import (
    RegistryError,
    enabled_projects,
    load_projects,
    register_project,
    remove_project,
    save_projects,
    set_enabled,
    touch_project,
)
from collab_runner.storage.bootstrap import init_project


def test_app_data_dir_honours_env(app_home: Path) -> None:
    assert app_data_dir() == app_home
    assert settings_file() == app_home / "settings.yaml"


class TestRegistry:
    def test_register_is_idempotent_per_path(self, tmp_path: Path) -> None:
        project = tmp_path / "p1"
        project.mkdir()
        register_project(project, "first")
        register_project(project, "renamed")

        projects = load_projects()
        assert len(projects) == 1
        assert projects[0].name == "renamed"
        assert projects[0].path == str(project.resolve())

    def test_enable_disable_remove(self, tmp_path: Path) -> None:
        a, b = tmp_path / "a", tmp_path / "b"
        a.mkdir()
        b.mkdir()
        register_project(a)
        register_project(b)

        assert set_enabled(a, False)
        assert [p.name for p in enabled_projects()] == ["b"]
        assert remove_project(b)
        assert not remove_project(b)
        assert enabled_projects() == []
        assert not set_enabled(tmp_path / "unknown", True)

    def test_touch_updates_last_activity(self, tmp_path: Path) -> None:
        record = register_project(tmp_path)
        data = load_projects()[0]
        data.last_activity = None
        save_projects([data])
        touch_project(record.path)
        assert load_projects()[0].last_activity

    def test_corrupt_registry_reads_as_empty(self) -> None:
        path = projects_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("projects: [unclosed")
        assert load_projects() == []

    def test_corrupt_registry_is_never_overwritten(self, tmp_path: Path) -> None:
        path = projects_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        original = "projects:\n- path: /p/one\n  name: one\n- path: /p/two\n  name: two\n  broken: [\n"
        path.write_text(original)

        with pytest.raises(RegistryError):
            register_project(tmp_path)
        with pytest.raises(RegistryError):
            set_enabled("/p/one", False)
        with pytest.raises(RegistryError):
            remove_project("/p/two")
        touch_project("/p/one")

        assert path.read_text() == original

    def test_concurrent_registrations_are_all_kept(self, tmp_path: Path) -> None:
        dirs = [tmp_path / f"p{i}" for i in range(8)]
        for directory in dirs:
            directory.mkdir()
        barrier = threading.Barrier(len(dirs))

        def _register(directory: Path) -> None:
            barrier.wait()
            register_project(directory)

        threads = [threading.Thread(target=_register, args=(d,)) for d in dirs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(p.path for p in load_projects()) == sorted(str(d.resolve()) for d in dirs)


class TestSettings:
    def test_defaults_when_missing(self) -> None:
        settings = load_settings()
        assert settings.max_executors == default_max_executors()
        assert 1 <= settings.max_executors <= 4
        assert settings.check_interval_seconds == 60
        assert settings.executor_timeout_seconds == 1800

    def test_round_trip_and_coercion(self) -> None:
        save_settings(Settings(max_executors=3, check_interval_seconds=15))
        loaded = load_settings()
        assert loaded.max_executors == 3
        assert loaded.check_interval_seconds == 15

        settings_file().write_text("max_executors: '0'\ncheck_interval_seconds: abc\n")
        coerced = load_settings()
        assert coerced.max_executors == 1
        assert coerced.check_interval_seconds == 60

    def test_unreadable_settings_fall_back(self) -> None:
        path = settings_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("- just\n- a list\n")
        assert load_settings().check_interval_seconds == 60


class TestInitProject:
    def test_creates_layout_and_registers(self, tmp_path: Path) -> None:
        project = tmp_path / "proj"
        project.mkdir()

        record = init_project(project, "My Project")

        paths = ProjectPaths.for_project(project.resolve())
        for stage in TaskStage:
            assert paths.stage_dir(stage).is_dir()
        assert paths.lock_dir.is_dir() and paths.logs_dir.is_dir()
        assert paths.inbox.read_text() == INBOX_TEMPLATE
        assert paths.supervisor_guide.exists() and paths.executor_guide.exists()
        assert load_project_config(paths).allowed_tools == tuple(DEFAULT_ALLOWED_TOOLS)
        assert record.name == "My Project"
        assert [p.path for p in load_projects()] == [str(project.resolve())]

    def test_does_not_overwrite_existing_files(self, tmp_path: Path) -> None:
        project = tmp_path / "proj"
        project.mkdir()
        init_project(project)
        paths = ProjectPaths.for_project(project.resolve())
        paths.inbox.write_text(INBOX_TEMPLATE + "keep me\n")

        init_project(project)

        assert "keep me" in paths.inbox.read_text()

    def test_project_config_agent_override(self, project_dir: Path) -> None:
        paths = ProjectPaths.for_project(project_dir)
        paths.config_file.write_text("allowed_tools: [Read]\nagent_command: 'my-agent {prompt}'\n")
        config = load_project_config(paths)
        assert config.allowed_tools == ("Read",)
        assert config.agent_command == "my-agent {prompt}"
