"""Run configuration passed explicitly into the executor and CLI."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_TASKS_DIR = ".tasklane"
DEFAULT_MAX_ATTEMPTS = 20


def default_max_concurrent() -> int:
    """One worker per available processor, never fewer than one."""
    return max(1, os.cpu_count() or 1)


def _phase_name(phase: str | Enum) -> str:
    return str(phase.value if isinstance(phase, Enum) else phase).strip().lower()


@dataclass
class Config:
    """Runtime configuration for a single foreground run."""

    # Layout
    tasks_dir: str = ""
    engine: str = "claude"

    # Scheduling
    max_concurrent: int = 0
    max_attempts_per_task: int = DEFAULT_MAX_ATTEMPTS
    no_limit: bool = False
    phases: list[str] | None = None  # None = every phase allowed
    serialize_file_conflicts: bool = True

    # Timing (seconds)
    poll_interval: float = 0.5
    idle_poll_interval: float = 1.0
    retry_delay: float = 1.0
    pending_log_interval: float = 10.0

    # Deadlock handling
    stall_threshold: int = 5
    max_deadlock_attempts: int = 3

    # Misc
    verbose: bool = False

    _allowed: frozenset[str] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.tasks_dir:
            self.tasks_dir = os.environ.get("TASKLANE_TASKS_DIR") or DEFAULT_TASKS_DIR
        if self.max_concurrent <= 0:
            env_value = os.environ.get("TASKLANE_MAX_CONCURRENT", "")
            self.max_concurrent = int(env_value) if env_value.isdigit() else 0
        if self.max_concurrent <= 0:
            self.max_concurrent = default_max_concurrent()
        if self.phases is not None:
            self._allowed = frozenset(_phase_name(p) for p in self.phases)

    def allows(self, phase: str | Enum) -> bool:
        """Return ``True`` when *phase* is in the allow-list (or no list is set)."""
        if self._allowed is None:
            return True
        return _phase_name(phase) in self._allowed

    @property
    def attempt_limit(self) -> float:
        """Per-task attempt bound; ``math.inf`` when running without a limit."""
        if self.no_limit:
            return math.inf
        return max(1, self.max_attempts_per_task)
