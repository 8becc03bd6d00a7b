"""Per-task step pipeline: plan → implement → review, plus global sweep/finalize.

The executor only sees the :class:`StepPipeline` protocol. Completion is
always read back from durable state (files in the task folder) rather than
trusted from what a worker printed.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from pathlib import Path
from typing import Protocol

from tasklane import log
from tasklane.engines.base import EngineBase, EngineResult
from tasklane.errors import PhaseError
from tasklane.io_utils import read_text_or_empty, write_text
from tasklane.tasks.declarations import TASK_FILE

TODO_FILE = "TODO.md"
REVIEW_FILE = "CODE_REVIEW.md"
SWEEP_PASSED_FILE = "CRITICAL_REVIEW_PASSED.md"
BUGS_FILE = "BUGS.md"
DONE_FILE = "done.txt"
LOG_FILE = "log.txt"


class Phase(str, Enum):
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    SWEEP = "sweep"
    FINALIZE = "finalize"


PHASE_NAMES = tuple(p.value for p in Phase)


class StepPipeline(Protocol):
    def is_approved(self, task_id: str) -> bool: ...

    def exists(self, task_id: str) -> bool: ...

    def has_plan(self, task_id: str) -> bool: ...

    def is_implemented(self, task_id: str) -> bool: ...

    def has_approved_review(self, task_id: str) -> bool: ...

    def plan(self, task_id: str) -> None: ...

    def implement(self, task_id: str) -> None: ...

    def review(self, task_id: str) -> None: ...

    def sweep(self, max_iterations: float) -> None: ...

    def finalize(self, task_ids: list[str]) -> None: ...


_IMPLEMENTED_HEAD = re.compile(
    r"fully\s+implemented\s*:\s*yes|status\s*:\s*(complete|done|finished|implemented)\b",
    re.IGNORECASE,
)
_IMPLEMENTED_CHECKBOX = re.compile(r"\[x\]\s*fully\s+implemented", re.IGNORECASE)


def is_fully_implemented(todo: str) -> bool:
    """Read the implementation verdict a worker left in ``TODO.md``."""
    if not todo:
        return False
    head = "\n".join(todo.splitlines()[:20])
    if _IMPLEMENTED_HEAD.search(head):
        return True
    return bool(_IMPLEMENTED_CHECKBOX.search(todo))


def has_approved_review(review: str) -> bool:
    """``True`` when the first non-blank line under ``## Status`` says approved."""
    lines = review.splitlines()
    for i, line in enumerate(lines):
        if line.strip().lower() != "## status":
            continue
        for value in lines[i + 1:]:
            if value.strip():
                return "approved" in value.strip().lower()
        return False
    return False


class FolderPipeline:
    """Drives an engine over a task folder tree.

    Each phase is a single blocking worker invocation; an error reported by
    the worker becomes :class:`~tasklane.errors.PhaseError`.
    """

    def __init__(
        self,
        tasks_dir: Path,
        engine: EngineBase,
        *,
        cwd: Path | None = None,
        timeout: int | None = None,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.engine = engine
        self.cwd = cwd or Path.cwd()
        self.timeout = timeout

    # ── durable-state predicates ─────────────────────────────────

    def _path(self, task_id: str, name: str) -> Path:
        return self.tasks_dir / task_id / name

    def exists(self, task_id: str) -> bool:
        return (self.tasks_dir / task_id).is_dir()

    def has_plan(self, task_id: str) -> bool:
        return self._path(task_id, TODO_FILE).is_file()

    def is_implemented(self, task_id: str) -> bool:
        return is_fully_implemented(read_text_or_empty(self._path(task_id, TODO_FILE)))

    def has_approved_review(self, task_id: str) -> bool:
        return has_approved_review(read_text_or_empty(self._path(task_id, REVIEW_FILE)))

    def is_approved(self, task_id: str) -> bool:
        return (
            self.has_plan(task_id)
            and self.is_implemented(task_id)
            and self.has_approved_review(task_id)
        )

    def sweep_passed(self) -> bool:
        return (self.tasks_dir / SWEEP_PASSED_FILE).is_file()

    # ── phases ───────────────────────────────────────────────────

    def _invoke(self, phase: Phase, task_id: str, prompt: str) -> EngineResult:
        log.debug(f"{task_id}: invoking {self.engine.name} for {phase.value}")
        result = self.engine.run_sync(
            prompt,
            cwd=self.cwd,
            log_file=self.tasks_dir / LOG_FILE,
            timeout=self.timeout,
        )
        if not result.ok:
            raise PhaseError(phase.value, task_id, result.error or f"exit code {result.return_code}")
        return result

    def plan(self, task_id: str) -> None:
        folder = self.tasks_dir / task_id
        prompt = f"""Plan the task described in {folder / TASK_FILE}.

Write a step-by-step checklist to {folder / TODO_FILE}. The first line must be
"Fully implemented: NO".

If the task is too large for a single session you may split it instead:
create sibling folders {task_id}.1, {task_id}.2, ... each with its own TASK.md
(keep the "@dependencies [...]" and "@files [...]" lines accurate), then delete
the folder {folder}.

Do NOT implement anything yet."""
        self._invoke(Phase.PLAN, task_id, prompt)
        if self.exists(task_id) and not self.has_plan(task_id):
            raise PhaseError(Phase.PLAN.value, task_id, f"{TODO_FILE} was not created")

    def implement(self, task_id: str) -> None:
        folder = self.tasks_dir / task_id
        prompt = f"""Implement the task described in {folder / TASK_FILE}, following
the checklist in {folder / TODO_FILE}.

Tick every item you complete. When everything is done and verified, change the
first line of {TODO_FILE} to "Fully implemented: YES".

Only modify the files the task declares in its "@files" line unless strictly
necessary."""
        self._invoke(Phase.IMPLEMENT, task_id, prompt)

    def review(self, task_id: str) -> None:
        folder = self.tasks_dir / task_id
        prompt = f"""Review the implementation of {folder / TASK_FILE}.

Write {folder / REVIEW_FILE} with a "## Status" section whose first line is
either APPROVED or CHANGES REQUESTED, followed by your findings.

If changes are needed, add them as unchecked items to {folder / TODO_FILE}
and set its first line to "Fully implemented: NO"."""
        self._invoke(Phase.REVIEW, task_id, prompt)

    def sweep(self, max_iterations: float = math.inf) -> None:
        """Global bug sweep over all changes, repeated until it passes."""
        attempt = 0
        while not self.sweep_passed():
            if attempt >= max_iterations:
                raise PhaseError(
                    Phase.SWEEP.value,
                    "*",
                    f"critical issues remain after {attempt} iteration(s); see {self.tasks_dir / BUGS_FILE}",
                )
            attempt += 1
            prompt = f"""Perform a critical bug sweep over every change made for the tasks
in {self.tasks_dir}.

Fix any critical bug you find. List anything you could not fix in
{self.tasks_dir / BUGS_FILE}. If no critical bugs remain, create
{self.tasks_dir / SWEEP_PASSED_FILE}."""
            with log.spinner(f"Bug sweep (iteration {attempt})…"):
                self._invoke(Phase.SWEEP, "*", prompt)

    def finalize(self, task_ids: list[str]) -> None:
        prompt = f"""All tasks in {self.tasks_dir} are implemented and reviewed
({', '.join(task_ids)}).

Review the combined change set once more, then commit it with a descriptive
message summarizing the tasks."""
        with log.spinner("Finalizing…"):
            self._invoke(Phase.FINALIZE, "*", prompt)
        write_text(self.tasks_dir / DONE_FILE, "\n".join(task_ids) + "\n")
