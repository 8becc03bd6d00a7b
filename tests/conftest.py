"""Shared fixtures for tasklane tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use tasklane.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from tasklane.config import Config
from tasklane.io_utils import write_text
from tasklane.tasks.model import Task, TaskGraph, TaskStatus, build_graph


def _make_task(
    id: str,
    deps: list[str] | None = None,
    status: TaskStatus = TaskStatus.PENDING,
    files: list[str] | None = None,
) -> Task:
    return Task(id=id, deps=list(deps or []), status=status, files=list(files or []))


def _make_graph(edges: dict[str, list[str]], **files: list[str]) -> TaskGraph:
    """``{"A": [], "B": ["A"]}`` → graph; keyword args give ``@files`` per task."""
    return build_graph(_make_task(tid, deps, files=files.get(tid)) for tid, deps in edges.items())


def _write_task(
    root: Path,
    task_id: str,
    deps: list[str] | None = None,
    files: list[str] | None = None,
    *,
    body: str = "Do the thing.",
    deps_line: str | None = None,
) -> Path:
    folder = root / task_id
    if deps_line is None:
        deps_line = f"@dependencies [{', '.join(deps or [])}]"
    lines = [f"# {task_id}", "", deps_line]
    if files is not None:
        lines.append(f"@files [{', '.join(files)}]")
    lines += ["", body, ""]
    write_text(folder / "TASK.md", "\n".join(lines))
    return folder


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def make_graph():
    """Factory fixture that builds a TaskGraph from an id → deps mapping."""
    return _make_graph


@pytest.fixture
def write_task():
    """Factory fixture that writes ``<root>/<TASK>/TASK.md`` declarations."""
    return _write_task


@pytest.fixture
def fast_cfg():
    """Config with millisecond timings so executor tests finish quickly."""

    def _cfg(**overrides) -> Config:
        values = dict(
            tasks_dir="unused",
            max_concurrent=2,
            poll_interval=0.005,
            idle_poll_interval=0.005,
            retry_delay=0,
            pending_log_interval=3600,
            stall_threshold=3,
            max_attempts_per_task=3,
        )
        values.update(overrides)
        return Config(**values)

    return _cfg
