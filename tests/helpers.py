"""Shared builders for task files and fake agent commands."""

from __future__ import annotations

import shlex
import sys


def agent_command(code: str) -> str:
    """Agent command template running ``code`` under this interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def task_text(
    task_id: str,
    *,
    status: str = "PENDING",
    description: str = "Do the thing",
    extra_header: str = "",
) -> str:
    return (
        "---\n"
        f"id: {task_id}\n"
        f"status: {status}\n"
        "priority: normal\n"
        "created: 2024-01-01T00:00:00Z\n"
        f"{extra_header}"
        "---\n"
        "## Task Description\n"
        f"{description}\n"
        "\n"
        "## Acceptance Criteria\n"
        "It works.\n"
    )
