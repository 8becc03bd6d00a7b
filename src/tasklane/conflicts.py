"""Detect tasks that may run concurrently while touching the same files.

Conflicts are resolved by serializing the pair through an extra dependency
edge, so the scheduler's own ordering guarantee does the locking.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from rich.markup import escape

from tasklane import log
from tasklane.tasks.model import Task

_FILES_TAG = re.compile(r"@files\s*\[([^\]]*)\]", re.IGNORECASE)


@dataclass
class Conflict:
    first: str
    second: str
    files: list[str] = field(default_factory=list)


@dataclass
class Resolution:
    first: str
    second: str
    files: list[str]
    description: str


@dataclass
class Suggestion:
    first: str
    second: str
    files: list[str]
    suggestion: str


def normalize_path(path: str) -> str:
    return path.strip().replace("\\", "/").lower()


def parse_files_declaration(text: str) -> list[str]:
    """Extract the paths listed in the first ``@files [a, b]`` tag of *text*.

    Entries are trimmed, blanks and a ``none`` marker are dropped and
    duplicates (compared case-insensitively) keep their first spelling.
    """
    if not text:
        return []
    match = _FILES_TAG.search(text)
    if not match:
        return []

    files: list[str] = []
    seen: set[str] = set()
    for raw in match.group(1).split(","):
        entry = raw.strip()
        if not entry or entry.lower() == "none":
            continue
        key = normalize_path(entry)
        if key in seen:
            continue
        seen.add(key)
        files.append(entry)
    return files


def _ancestors(graph: Mapping[str, Task], task_id: str) -> set[str]:
    """Every task *task_id* transitively depends on (existing tasks only)."""
    seen: set[str] = set()
    stack = list(graph[task_id].deps) if task_id in graph else []
    while stack:
        dep = stack.pop()
        if dep in seen or dep not in graph:
            continue
        seen.add(dep)
        stack.extend(graph[dep].deps)
    return seen


def _ordered(ancestors: Mapping[str, set[str]], a: str, b: str) -> bool:
    return b in ancestors[a] or a in ancestors[b]


def can_run_in_parallel(graph: Mapping[str, Task], a: str, b: str) -> bool:
    """``False`` if either task is missing or one transitively depends on the other."""
    if a not in graph or b not in graph or a == b:
        return False
    ancestors = {a: _ancestors(graph, a), b: _ancestors(graph, b)}
    return not _ordered(ancestors, a, b)


def detect_file_conflicts(graph: Mapping[str, Task]) -> list[Conflict]:
    """Return every unordered pair that may run concurrently with overlapping files."""
    ids = list(graph)
    normalized = {tid: [normalize_path(f) for f in graph[tid].files] for tid in ids}
    ancestors: dict[str, set[str]] = {}
    conflicts: list[Conflict] = []

    for i, first in enumerate(ids):
        if not normalized[first]:
            continue
        for second in ids[i + 1:]:
            others = set(normalized[second])
            if not others:
                continue

            overlap: list[str] = []
            for original, key in zip(graph[first].files, normalized[first]):
                if key in others and original not in overlap:
                    overlap.append(original)
            if not overlap:
                continue

            for tid in (first, second):
                if tid not in ancestors:
                    ancestors[tid] = _ancestors(graph, tid)
            if _ordered(ancestors, first, second):
                continue

            conflicts.append(Conflict(first=first, second=second, files=overlap))

    return conflicts


def auto_resolve_conflicts(
    graph: Mapping[str, Task], conflicts: list[Conflict]
) -> list[Resolution]:
    """Serialize each conflicting pair by making the later id depend on the earlier.

    Mutates *graph*. Pairs that are already ordered (directly, or through an
    edge added earlier in this pass) are left alone, so the pass is
    idempotent and never closes a cycle.
    """
    resolutions: list[Resolution] = []

    for conflict in conflicts:
        first, second = sorted((conflict.first, conflict.second))
        if first not in graph or second not in graph:
            continue
        if first in graph[second].deps:
            continue
        if not can_run_in_parallel(graph, first, second):
            continue

        graph[second].deps.append(first)
        resolutions.append(
            Resolution(
                first=first,
                second=second,
                files=list(conflict.files),
                description=f"{second} now depends on {first}",
            )
        )

    return resolutions


def suggest_dependency_fixes(conflicts: list[Conflict]) -> list[Suggestion]:
    suggestions: list[Suggestion] = []
    for conflict in conflicts:
        first, second = sorted((conflict.first, conflict.second))
        suggestions.append(
            Suggestion(
                first=first,
                second=second,
                files=list(conflict.files),
                suggestion=f"Add @dependencies [{first}] to {second}",
            )
        )
    return suggestions


def find_tasks_missing_files(graph: Mapping[str, Task]) -> list[str]:
    return [tid for tid, task in graph.items() if not task.files]


def serialize_file_conflicts(graph: Mapping[str, Task]) -> list[Resolution]:
    """Detect and auto-resolve file conflicts in one pass, logging each fix."""
    resolutions = auto_resolve_conflicts(graph, detect_file_conflicts(graph))
    for res in resolutions:
        log.info(
            f"File conflict on {escape(', '.join(res.files))}: {escape(res.description)}"
        )
    return resolutions
