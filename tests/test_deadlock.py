"""Tests for tasklane.deadlock — describe, fix, rebuild, verify."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tasklane.deadlock import (
    DeadlockResolver,
    EngineFixer,
    describe_deadlock,
    describe_unmet,
    unmet_dependencies,
)
from tasklane.engines.base import EngineResult
from tasklane.errors import FixerError
from tasklane.tasks.declarations import GraphBuilder
from tasklane.tasks.model import TaskStatus


# ═══════════════════════════════════════════════════════════════════
#  Diagnostics
# ═══════════════════════════════════════════════════════════════════


class TestDescribe:
    """Tests for the human-readable deadlock description."""

    def test_unmet_dependencies(self, make_graph):
        graph = make_graph({"A": [], "B": ["A", "GHOST"]})
        graph["A"].status = TaskStatus.COMPLETED
        assert unmet_dependencies(graph, "B") == ["GHOST"]

    def test_describe_unmet_marks_missing(self, make_graph):
        graph = make_graph({"A": []})
        assert describe_unmet(graph, "GHOST") == "GHOST (missing from graph)"
        assert describe_unmet(graph, "A") == "A (pending)"

    def test_description_lists_cycle_and_blocked_tasks(self, make_graph):
        graph = make_graph({"T1": ["T2"], "T2": ["T1"]})
        text = describe_deadlock(graph, ["T1", "T2"])
        assert "## Cycles" in text
        assert "T1 → T2 → T1" in text
        assert "T1: depends on [T2]" in text

    def test_description_without_cycle(self, make_graph):
        graph = make_graph({"A": ["GHOST"]})
        text = describe_deadlock(graph, ["A"])
        assert "no cycle found" in text
        assert "GHOST (missing from graph)" in text

    def test_description_includes_declarations(self, make_graph):
        graph = make_graph({"A": ["B"], "B": ["A"]})
        text = describe_deadlock(graph, ["A"], {"A": "@dependencies [B]\nBuild it."})
        assert "### A" in text
        assert "Build it." in text


# ═══════════════════════════════════════════════════════════════════
#  Resolution protocol
# ═══════════════════════════════════════════════════════════════════


class TestDeadlockResolver:
    """describe → fix → rebuild → verify, against real declaration folders."""

    def _cyclic_tasks(self, root, write_task):
        write_task(root, "TASK1", ["TASK2"])
        write_task(root, "TASK2", ["TASK1"])

    def test_fixer_that_breaks_cycle_succeeds(self, tmp_path, write_task):
        self._cyclic_tasks(tmp_path, write_task)
        builder = GraphBuilder(tmp_path, lambda _tid: False)

        def fixer(description: str) -> None:
            assert "TASK1" in description
            write_task(tmp_path, "TASK1", [])

        resolver = DeadlockResolver(fixer, builder)
        assert resolver.resolve(builder(), ["TASK1", "TASK2"]) is True

    def test_fixer_that_keeps_cycle_fails(self, tmp_path, write_task):
        self._cyclic_tasks(tmp_path, write_task)
        builder = GraphBuilder(tmp_path, lambda _tid: False)
        fixer = MagicMock()

        resolver = DeadlockResolver(fixer, builder)
        assert resolver.resolve(builder(), ["TASK1", "TASK2"]) is False
        fixer.assert_called_once()

    def test_fixer_exception_returns_false(self, tmp_path, write_task):
        self._cyclic_tasks(tmp_path, write_task)
        builder = GraphBuilder(tmp_path, lambda _tid: False)
        fixer = MagicMock(side_effect=FixerError("worker crashed"))

        resolver = DeadlockResolver(fixer, builder)
        assert resolver.resolve(builder(), ["TASK1", "TASK2"]) is False

    def test_unbuildable_graph_returns_false(self, make_graph):
        graph = make_graph({"A": ["B"], "B": ["A"]})
        resolver = DeadlockResolver(MagicMock(), lambda: None)
        assert resolver.resolve(graph, ["A", "B"]) is False

    def test_rebuild_error_returns_false(self, make_graph):
        graph = make_graph({"A": ["B"], "B": ["A"]})
        rebuild = MagicMock(side_effect=FileNotFoundError("TASK2/TASK.md"))
        resolver = DeadlockResolver(MagicMock(), rebuild)

        assert resolver.resolve(graph, ["A", "B"]) is False
        rebuild.assert_called_once()

    def test_bracketed_fixer_error_returns_false(self, make_graph):
        graph = make_graph({"A": ["B"], "B": ["A"]})
        fixer = MagicMock(side_effect=FixerError("cannot write [/tmp/out]"))
        resolver = DeadlockResolver(fixer, MagicMock())
        assert resolver.resolve(graph, ["A", "B"]) is False

    def test_declarations_passed_to_fixer(self, tmp_path, write_task):
        self._cyclic_tasks(tmp_path, write_task)
        builder = GraphBuilder(tmp_path, lambda _tid: False)
        seen: list[str] = []

        resolver = DeadlockResolver(seen.append, builder, read_declaration=builder.read_declaration)
        resolver.resolve(builder(), ["TASK1"])
        assert "@dependencies [TASK2]" in seen[0]


class TestEngineFixer:
    def test_success(self, tmp_path):
        engine = MagicMock()
        engine.run_sync.return_value = EngineResult(text="done")
        EngineFixer(engine, tmp_path)("fix it")

        prompt = engine.run_sync.call_args.args[0]
        assert prompt.startswith("fix it")
        assert str(tmp_path) in prompt

    def test_worker_error_raises(self, tmp_path):
        engine = MagicMock()
        engine.run_sync.return_value = EngineResult(error="rate limited")
        with pytest.raises(FixerError, match="rate limited"):
            EngineFixer(engine, tmp_path)("fix it")
