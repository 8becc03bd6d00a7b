"""Dependency cycle detection over a task graph snapshot."""

from __future__ import annotations

from collections.abc import Iterator, Mapping

from tasklane.tasks.model import Task

_DONE = object()


def detect_cycles(graph: Mapping[str, Task]) -> list[list[str]]:
    """Return the dependency cycles reachable by a depth-first walk of *graph*.

    Each cycle is the slice of the active DFS path starting at the revisited
    task, closed by repeating that task (``["A", "B", "A"]``). Every
    non-trivial strongly connected component yields at least one cycle; the
    order of cycles and their rotation are not meaningful.

    Dependencies that are not in *graph* are ignored, so dangling references
    never raise. The walk is iterative and visits each edge once.
    """
    cycles: list[list[str]] = []
    visited: set[str] = set()

    for root in graph:
        if root in visited:
            continue

        path: list[str] = [root]
        on_path: set[str] = {root}
        visited.add(root)
        frames: list[Iterator[str]] = [iter(graph[root].deps)]

        while frames:
            dep = next(frames[-1], _DONE)
            if dep is _DONE:
                frames.pop()
                on_path.discard(path.pop())
                continue
            if dep not in graph:
                continue
            if dep in on_path:
                start = path.index(dep)
                cycles.append(path[start:] + [dep])
                continue
            if dep in visited:
                continue
            visited.add(dep)
            on_path.add(dep)
            path.append(dep)
            frames.append(iter(graph[dep].deps))

    return cycles


def format_cycle(cycle: list[str]) -> str:
    return " → ".join(cycle)
