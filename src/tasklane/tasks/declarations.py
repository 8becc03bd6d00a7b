"""Read task declarations from a task folder tree and build graph snapshots.

Layout::

    <tasks_dir>/
        TASK1/TASK.md        # "@dependencies [...]" and optional "@files [...]"
        TASK2/TASK.md
        TASK2.1/TASK.md      # subtask created when TASK2 was split
"""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

from tasklane.conflicts import parse_files_declaration
from tasklane.io_utils import read_text_or_empty
from tasklane.tasks.model import Task, TaskGraph, TaskStatus, build_graph

TASK_FILE = "TASK.md"
BLUEPRINT_FILE = "BLUEPRINT.md"

_TASK_DIR = re.compile(r"^TASK\d+(\.\d+)*$")
_DEPS_TAG = re.compile(r"^\s*@dependencies\s*(?:\[(.*?)\]|(.*))\s*$", re.IGNORECASE | re.MULTILINE)


def _natural_key(name: str) -> list[int | str]:
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def list_task_ids(tasks_dir: Path) -> list[str]:
    """Task folder names under *tasks_dir* in natural order (TASK2 before TASK10)."""
    if not tasks_dir.is_dir():
        return []
    ids = [p.name for p in tasks_dir.iterdir() if p.is_dir() and _TASK_DIR.match(p.name)]
    return sorted(ids, key=_natural_key)


def parse_dependencies(text: str) -> list[str] | None:
    """Parse the first ``@dependencies`` line.

    Accepts ``@dependencies [A, B]``, ``@dependencies A, B``, ``[]`` and
    ``none``. Returns ``None`` when the tag is absent so callers can tell an
    undeclared task from one with no dependencies.
    """
    match = _DEPS_TAG.search(text or "")
    if not match:
        return None

    raw = (match.group(1) if match.group(1) is not None else match.group(2) or "").strip()
    deps: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        dep = part.strip()
        if not dep or dep.lower() == "none":
            continue
        key = dep.lower()
        if key in seen:
            continue
        seen.add(key)
        deps.append(dep)
    return deps


def find_subtasks(task_id: str, all_ids: list[str]) -> list[str]:
    """Subtasks of *task_id*: ``TASK2.1`` and ``TASK2.1.1`` for ``TASK2``."""
    prefix = f"{task_id}."
    return [
        tid for tid in all_ids
        if tid.startswith(prefix) and re.fullmatch(r"\d+(\.\d+)*", tid[len(prefix):])
    ]


def read_declared_files(task_dir: Path) -> list[str]:
    files = parse_files_declaration(read_text_or_empty(task_dir / TASK_FILE))
    if files:
        return files
    return parse_files_declaration(read_text_or_empty(task_dir / BLUEPRINT_FILE))


def build_task_graph(
    tasks_dir: Path,
    is_completed: Callable[[str], bool] = lambda _tid: False,
) -> TaskGraph | None:
    """Build a fresh graph from the declarations on disk.

    Returns ``None`` when a complete graph cannot be built yet: no task
    folders, or any task lacking ``TASK.md`` or its ``@dependencies`` tag.
    A dependency on a task that was split expands to its subtasks; the
    original id is dropped once its folder is gone. Dependencies naming no
    folder and no subtasks are kept and stay unsatisfied.
    """
    all_ids = list_task_ids(tasks_dir)
    if not all_ids:
        return None

    tasks: list[Task] = []
    for tid in all_ids:
        task_dir = tasks_dir / tid
        text = read_text_or_empty(task_dir / TASK_FILE)
        if not text:
            return None
        declared = parse_dependencies(text)
        if declared is None:
            return None

        deps: list[str] = []
        for dep in declared:
            subtasks = find_subtasks(dep, all_ids)
            deps.extend(subtasks)
            if (tasks_dir / dep).is_dir() or not subtasks:
                deps.append(dep)

        tasks.append(
            Task(
                id=tid,
                deps=deps,
                status=TaskStatus.COMPLETED if is_completed(tid) else TaskStatus.PENDING,
                files=read_declared_files(task_dir),
            )
        )

    return build_graph(tasks)


class GraphBuilder:
    """Callable snapshot builder handed to the executor and deadlock resolver."""

    def __init__(self, tasks_dir: Path, is_completed: Callable[[str], bool]) -> None:
        self.tasks_dir = tasks_dir
        self.is_completed = is_completed

    def __call__(self) -> TaskGraph | None:
        return build_task_graph(self.tasks_dir, self.is_completed)

    def read_declaration(self, task_id: str) -> str:
        return read_text_or_empty(self.tasks_dir / task_id / TASK_FILE)
