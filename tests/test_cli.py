"""CLI tests: every command and flag, run in-process with a scripted worker."""

from __future__ import annotations

import re
from pathlib import Path
from unittest.mock import patch

import click
import pytest

from tasklane import __version__
from tasklane.cli import _parse_phases_option, main
from tasklane.engines.base import EngineBase, EngineResult
from tasklane.io_utils import read_text, write_text


class ScriptedWorker(EngineBase):
    """Worker that performs each phase by writing the files a real agent would."""

    name = "scripted"

    def __init__(self, tasks_dir: Path, *, available: bool = True) -> None:
        self.tasks_dir = tasks_dir
        self.available = available
        self.prompts: list[str] = []

    def build_cmd(self, prompt: str) -> list[str]:
        return ["scripted", prompt]

    def parse_output(self, raw: str) -> EngineResult:
        return EngineResult(text=raw)

    def check_available(self) -> str | None:
        return None if self.available else "scripted worker not found"

    def _folder(self, prompt: str) -> Path:
        match = re.search(r"(\S+)[\\/]TASK\.md", prompt)
        assert match, prompt
        return Path(match.group(1))

    def run_sync(self, prompt, *, cwd=None, log_file=None, timeout=None) -> EngineResult:
        self.prompts.append(prompt)
        if prompt.startswith("Plan the task"):
            write_text(self._folder(prompt) / "TODO.md", "Fully implemented: NO\n- [ ] work\n")
        elif prompt.startswith("Implement the task"):
            write_text(self._folder(prompt) / "TODO.md", "Fully implemented: YES\n- [x] work\n")
        elif prompt.startswith("Review the implementation"):
            write_text(self._folder(prompt) / "CODE_REVIEW.md", "## Status\nAPPROVED\n")
        elif prompt.startswith("Perform a critical bug sweep"):
            write_text(self.tasks_dir / "CRITICAL_REVIEW_PASSED.md", "ok\n")
        elif prompt.startswith("# Resolve dependency deadlock"):
            task_md = self.tasks_dir / "TASK1" / "TASK.md"
            write_text(task_md, read_text(task_md).replace("@dependencies [TASK2]", "@dependencies []"))
        return EngineResult(text="ok")


@pytest.fixture
def cli_runner():
    """Click CliRunner for invoking the CLI in-process."""
    from click.testing import CliRunner
    return CliRunner()


@pytest.fixture
def worker(tmp_path):
    return ScriptedWorker(tmp_path)


def _invoke_run(cli_runner, worker, tasks_dir: Path, *extra: str):
    with patch("tasklane.engines.registry.get_engine", return_value=worker):
        return cli_runner.invoke(
            main,
            ["run", "--tasks-dir", str(tasks_dir), "--no-progress", "--max-concurrent", "2", *extra],
        )


# ── Main entry and help ────────────────────────────────────────────────


class TestCliHelpAndVersion:
    """Basic entry: --help, --version, -h."""

    def test_help_long(self, cli_runner):
        r = cli_runner.invoke(main, ["--help"])
        assert r.exit_code == 0
        assert "tasklane" in r.output
        assert "run" in r.output
        assert "check" in r.output

    def test_help_short(self, cli_runner):
        r = cli_runner.invoke(main, ["-h"])
        assert r.exit_code == 0

    def test_version(self, cli_runner):
        r = cli_runner.invoke(main, ["--version"])
        assert r.exit_code == 0
        assert __version__ in r.output

    def test_run_help_lists_flags(self, cli_runner):
        r = cli_runner.invoke(main, ["run", "--help"])
        assert r.exit_code == 0
        for flag in ("--tasks-dir", "--engine", "--max-concurrent", "--no-limit", "--phases", "--no-serialize"):
            assert flag in r.output


class TestParsePhasesOption:
    def test_empty_means_all(self):
        assert _parse_phases_option("") is None

    def test_normalized(self):
        assert _parse_phases_option(" Plan, implement ") == ["plan", "implement"]

    def test_unknown_phase(self):
        with pytest.raises(click.BadParameter, match="Unknown phase"):
            _parse_phases_option("plan,deploy")

    def test_empty_entry(self):
        with pytest.raises(click.BadParameter):
            _parse_phases_option("plan,,review")


# ── run ───────────────────────────────────────────────────────────────


class TestRunCommand:
    """End-to-end runs over a real task folder with a scripted worker."""

    def test_full_run(self, cli_runner, worker, tmp_path, write_task):
        write_task(tmp_path, "TASK1", [], files=["src/a.py"])
        write_task(tmp_path, "TASK2", ["TASK1"], files=["src/b.py"])
        write_task(tmp_path, "TASK3", [], files=["src/a.py"])

        r = _invoke_run(cli_runner, worker, tmp_path)

        assert r.exit_code == 0, r.output
        for tid in ("TASK1", "TASK2", "TASK3"):
            assert "APPROVED" in read_text(tmp_path / tid / "CODE_REVIEW.md")
        assert read_text(tmp_path / "done.txt").split() == ["TASK1", "TASK2", "TASK3"]

    def test_already_approved_tasks_are_not_rerun(self, cli_runner, worker, tmp_path, write_task):
        folder = write_task(tmp_path, "TASK1")
        write_text(folder / "TODO.md", "Fully implemented: YES\n")
        write_text(folder / "CODE_REVIEW.md", "## Status\nAPPROVED\n")

        r = _invoke_run(cli_runner, worker, tmp_path, "--phases", "plan,implement,review")

        assert r.exit_code == 0, r.output
        assert worker.prompts == []

    def test_deadlock_resolved_by_worker(self, cli_runner, worker, tmp_path, write_task):
        write_task(tmp_path, "TASK1", ["TASK2"])
        write_task(tmp_path, "TASK2", ["TASK1"])

        r = _invoke_run(cli_runner, worker, tmp_path, "--phases", "plan,implement,review")

        assert r.exit_code == 0, r.output
        assert "DEADLOCK" in r.output
        assert any(p.startswith("# Resolve dependency deadlock") for p in worker.prompts)

    def test_missing_tasks_dir(self, cli_runner, worker, tmp_path):
        r = _invoke_run(cli_runner, worker, tmp_path / "nope")
        assert r.exit_code == 1
        assert "not found" in r.output

    def test_incomplete_declarations(self, cli_runner, worker, tmp_path, write_task):
        write_task(tmp_path, "TASK1", deps_line="no dependency tag")
        r = _invoke_run(cli_runner, worker, tmp_path)
        assert r.exit_code == 1
        assert "Could not build" in r.output

    def test_engine_unavailable(self, cli_runner, tmp_path, write_task):
        write_task(tmp_path, "TASK1")
        r = _invoke_run(cli_runner, ScriptedWorker(tmp_path, available=False), tmp_path)
        assert r.exit_code == 1
        assert "scripted worker not found" in r.output

    def test_bad_phase_is_usage_error(self, cli_runner, worker, tmp_path, write_task):
        write_task(tmp_path, "TASK1")
        r = _invoke_run(cli_runner, worker, tmp_path, "--phases", "deploy")
        assert r.exit_code == 2

    def test_unknown_engine_rejected(self, cli_runner, tmp_path):
        r = cli_runner.invoke(main, ["run", "--tasks-dir", str(tmp_path), "--engine", "gemini"])
        assert r.exit_code == 2


# ── check ─────────────────────────────────────────────────────────────


class TestCheckCommand:
    def test_clean(self, cli_runner, tmp_path, write_task):
        write_task(tmp_path, "TASK1", [], files=["a.py"])
        write_task(tmp_path, "TASK2", ["TASK1"], files=["a.py"])
        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path)])
        assert r.exit_code == 0, r.output
        assert "No dependency cycles" in r.output

    def test_cycle_exits_nonzero(self, cli_runner, tmp_path, write_task):
        write_task(tmp_path, "TASK1", ["TASK2"], files=["a.py"])
        write_task(tmp_path, "TASK2", ["TASK1"], files=["b.py"])
        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path)])
        assert r.exit_code == 1
        assert "Cycle:" in r.output

    def test_conflict_suggestion_and_fix(self, cli_runner, tmp_path, write_task):
        write_task(tmp_path, "TASK1", [], files=["a.txt"])
        write_task(tmp_path, "TASK2", [], files=["a.txt"])

        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path)])
        assert r.exit_code == 0
        assert "Add @dependencies [TASK1] to TASK2" in r.output
        assert "now depends on" not in r.output

        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path), "--fix"])
        assert "TASK2 now depends on TASK1" in r.output
        # --fix only reports; declarations on disk are untouched
        assert "@dependencies []" in read_text(tmp_path / "TASK2" / "TASK.md")

    def test_missing_files_reported(self, cli_runner, tmp_path, write_task):
        write_task(tmp_path, "TASK1")
        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path)])
        assert "without @files" in r.output

    def test_unbuildable(self, cli_runner, tmp_path):
        r = cli_runner.invoke(main, ["check", "--tasks-dir", str(tmp_path)])
        assert r.exit_code == 1
