from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import DEFAULT_ALLOWED_TOOLS, INBOX_TEMPLATE
from ..domain.models import TaskStage
from ..io_utils import _atomic_write_text, _save_data
from ..paths import ProjectPaths
from ..projects import ProjectRecord, register_project
from ..utils import _now_iso

PROJECT_PLAN_TEMPLATE = """# Project Plan

## Overview
Describe your project goals and architecture here.

## Current Status
- [ ] Initial setup

## Notes
Add any important notes for the agents.
"""

SUPERVISOR_GUIDE_TEMPLATE = """# Supervisor Guide

You are the Supervisor agent. Your responsibilities:

## Task Planning
1. Read requirements from inbox.md
2. Break them down into specific, actionable tasks
3. Create task files in queue/

## Task Review
1. Review tasks in executing/ with status: REVIEW
2. Check the acceptance criteria against the execution result
3. Finish with a single word: APPROVE or REJECT

## Task File Format
```markdown
---
id: task_<timestamp>
status: PENDING
priority: normal
created: <ISO-timestamp>
---
## Task Description
<what needs to be done>

## Acceptance Criteria
<how to verify completion>
```

## Guidelines
- Keep tasks focused; one task is one logical unit of work
- Include clear acceptance criteria
- Consider dependencies between tasks
"""

EXECUTOR_GUIDE_TEMPLATE = """# Executor Guide

You are an Executor agent. Your responsibilities:

## Task Execution
1. Implement the changes the task asks for
2. Test your changes
3. Summarize what you did at the end of your output

## Guidelines
- Work only on the assigned task
- Follow the project's coding standards
- Don't modify unrelated files
"""


def _write_if_missing(path: Path, text: str) -> None:
    if not path.exists():
        _atomic_write_text(path, text)


def ensure_project_layout(paths: ProjectPaths) -> None:
    """Create every directory the workers and watcher expect."""
    for stage in TaskStage:
        paths.stage_dir(stage).mkdir(parents=True, exist_ok=True)
    paths.lock_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)


def init_project(
    project_dir: Path,
    name: Optional[str] = None,
    *,
    registry_path: Optional[Path] = None,
) -> ProjectRecord:
    """Lay out a project's collaboration folder and register it.

    Existing files (inbox, plan, guides, config) are left untouched, so the
    call is safe to repeat.

    Args:
        project_dir: Project root; must exist.
        name: Display name; defaults to the directory name.
        registry_path: Registry file override, mainly for tests.

    Returns:
        The registry entry for the project.
    """
    project_dir = Path(project_dir).expanduser().resolve()
    if not project_dir.is_dir():
        raise FileNotFoundError(f"Directory not found: {project_dir}")

    paths = ProjectPaths.for_project(project_dir)
    ensure_project_layout(paths)

    _write_if_missing(paths.inbox, INBOX_TEMPLATE)
    _write_if_missing(paths.project_plan, PROJECT_PLAN_TEMPLATE)
    _write_if_missing(paths.supervisor_guide, SUPERVISOR_GUIDE_TEMPLATE)
    _write_if_missing(paths.executor_guide, EXECUTOR_GUIDE_TEMPLATE)
    if not paths.config_file.exists():
        _save_data(
            paths.config_file,
            {"created": _now_iso(), "allowed_tools": list(DEFAULT_ALLOWED_TOOLS)},
        )

    record = register_project(project_dir, name, path=registry_path)
    logger.success("Project initialized: {}", project_dir)
    return record
