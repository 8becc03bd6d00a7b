"""Break dependency deadlocks by letting an external fixer rewrite declarations.

Protocol: describe the stuck tasks, hand the description to a fixer that
edits the ``@dependencies`` lines on disk, rebuild the graph and accept the
fix only when the rebuilt graph is free of cycles.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path

from rich.markup import escape

from tasklane import log
from tasklane.cycles import detect_cycles, format_cycle
from tasklane.engines.base import EngineBase
from tasklane.errors import FixerError
from tasklane.tasks.model import Task, TaskGraph, TaskStatus

Fixer = Callable[[str], None]
Rebuild = Callable[[], TaskGraph | None]
DeclarationReader = Callable[[str], str]


def unmet_dependencies(graph: Mapping[str, Task], task_id: str) -> list[str]:
    return [
        dep for dep in graph[task_id].deps
        if dep not in graph or graph[dep].status != TaskStatus.COMPLETED
    ]


def describe_unmet(graph: Mapping[str, Task], dep: str) -> str:
    if dep not in graph:
        return f"{dep} (missing from graph)"
    return f"{dep} ({graph[dep].status.value})"


def describe_deadlock(
    graph: Mapping[str, Task],
    pending_ids: list[str],
    declarations: Mapping[str, str] | None = None,
) -> str:
    """Plain-language account of the stuck tasks for the fixer."""
    cycles = detect_cycles(graph)
    if cycles:
        cycles_text = "\n".join(f"  - {format_cycle(c)}" for c in cycles)
    else:
        cycles_text = "  (no cycle found; tasks are blocked on missing or unsatisfiable dependencies)"

    pending_lines = []
    for tid in pending_ids:
        if tid not in graph:
            continue
        waiting = ", ".join(describe_unmet(graph, d) for d in unmet_dependencies(graph, tid))
        pending_lines.append(
            f"  - {tid}: depends on [{', '.join(graph[tid].deps)}], waiting for [{waiting}]"
        )

    completed = [tid for tid, t in graph.items() if t.status == TaskStatus.COMPLETED]

    sections = [
        "# Resolve dependency deadlock",
        "",
        "The task graph cannot make progress. Edit the @dependencies lines of the",
        "task declarations so that no cycle remains, keeping every dependency that",
        "reflects a real ordering requirement.",
        "",
        "## Cycles",
        cycles_text,
        "",
        "## Blocked tasks",
        "\n".join(pending_lines) or "  (none)",
        "",
        "## Completed tasks",
        ", ".join(completed) or "(none)",
    ]

    for tid, content in (declarations or {}).items():
        if content:
            sections += ["", f"### {tid}", "```", content.rstrip(), "```"]

    sections += [
        "",
        "## Rules",
        "1. Only change @dependencies lines; keep the `@dependencies [A, B]` format.",
        "2. Remove the fewest dependencies needed to break every cycle.",
        "3. Drop dependencies on tasks that do not exist.",
        "4. A task without dependencies uses `@dependencies []`.",
    ]
    return "\n".join(sections)


class DeadlockResolver:
    """Runs the describe → fix → rebuild → verify protocol once per call."""

    def __init__(
        self,
        fixer: Fixer,
        rebuild: Rebuild,
        *,
        read_declaration: DeclarationReader | None = None,
    ) -> None:
        self.fixer = fixer
        self.rebuild = rebuild
        self.read_declaration = read_declaration

    def resolve(self, graph: Mapping[str, Task], pending_ids: list[str]) -> bool:
        """Return ``True`` iff the rebuilt graph contains no cycles."""
        cycles = detect_cycles(graph)
        for cycle in cycles:
            log.warn(f"Cycle: {escape(format_cycle(cycle))}")

        declarations: dict[str, str] = {}
        if self.read_declaration is not None:
            declarations = {tid: self.read_declaration(tid) for tid in pending_ids}
        description = describe_deadlock(graph, pending_ids, declarations)

        try:
            with log.spinner("Analyzing dependency deadlock…"):
                self.fixer(description)
        except Exception as e:
            log.error(f"Failed to resolve deadlock: {escape(str(e))}")
            return False

        try:
            with log.spinner("Verifying deadlock resolution…"):
                rebuilt = self.rebuild()
        except Exception as e:
            log.error(f"Could not rebuild the task graph after the fix: {escape(str(e))}")
            return False
        if rebuilt is None:
            log.warn("Task graph could not be rebuilt after the fix")
            return False

        remaining = detect_cycles(rebuilt)
        if remaining:
            log.warn("Cycles still present after resolution:")
            for cycle in remaining:
                log.warn(f"   {escape(format_cycle(cycle))}")
            return False

        log.success("Deadlock resolution verified - no cycles remaining")
        return True


class EngineFixer:
    """Fixer that asks a worker to edit the declarations under *tasks_dir*."""

    def __init__(self, engine: EngineBase, tasks_dir: Path, *, cwd: Path | None = None) -> None:
        self.engine = engine
        self.tasks_dir = tasks_dir
        self.cwd = cwd

    def __call__(self, description: str) -> None:
        prompt = (
            f"{description}\n\n"
            f"The task declarations live in {self.tasks_dir}/<TASK>/TASK.md. "
            "Edit them in place, then briefly explain which dependencies you changed and why."
        )
        result = self.engine.run_sync(prompt, cwd=self.cwd)
        if not result.ok:
            raise FixerError(result.error or f"exit code {result.return_code}")
