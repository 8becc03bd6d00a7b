"""Engine registry — get the right worker adapter by name."""

from __future__ import annotations

from tasklane.engines.base import EngineBase
from tasklane.engines.claude import ClaudeEngine
from tasklane.engines.codex import CodexEngine


def get_engine(name: str) -> EngineBase:
    """Return a worker adapter for *name*."""
    match name:
        case "claude":
            return ClaudeEngine()
        case "codex":
            return CodexEngine()
        case _:
            raise ValueError(f"Unknown engine: {name}")


ENGINE_NAMES = ("claude", "codex")
