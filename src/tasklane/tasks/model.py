"""Task and TaskGraph data models shared by the executor and its collaborators."""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class Task:
    id: str
    deps: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    files: list[str] = field(default_factory=list)
    # Display only; never read by the scheduler.
    step: str = ""
    message: str = ""


TaskGraph = dict[str, Task]


def _clean_deps(task_id: str, deps: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    cleaned: list[str] = []
    for dep in deps:
        dep = (dep or "").strip()
        if not dep or dep == task_id or dep in seen:
            continue
        seen.add(dep)
        cleaned.append(dep)
    return cleaned


def build_graph(tasks: Iterable[Task]) -> TaskGraph:
    """Key *tasks* by id, dropping self-edges, blanks and duplicate deps.

    Dependencies on ids that are not part of *tasks* are kept as-is; they
    simply never become satisfied.
    """
    graph: TaskGraph = {}
    for task in tasks:
        task.deps = _clean_deps(task.id, task.deps)
        graph[task.id] = task
    return graph


def copy_graph(graph: TaskGraph) -> TaskGraph:
    """Deep copy so callers can inspect a snapshot without aliasing."""
    return {tid: copy.deepcopy(task) for tid, task in graph.items()}


def ids_with_status(graph: TaskGraph, status: TaskStatus) -> list[str]:
    return [tid for tid, task in graph.items() if task.status == status]
