"""tasklane CLI.

Installed as the ``tasklane`` console_script.
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.markup import escape

from tasklane import __version__
from tasklane.config import Config
from tasklane.engines.registry import ENGINE_NAMES
from tasklane.pipeline import PHASE_NAMES

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _parse_phases_option(raw: str) -> list[str] | None:
    if not raw:
        return None

    phases = [item.strip().lower() for item in raw.split(",")]
    if any(not item for item in phases):
        raise click.BadParameter(
            "Phase list cannot contain empty values (example: --phases plan,implement).",
            param_hint="--phases",
        )

    unknown = [item for item in phases if item not in PHASE_NAMES]
    if unknown:
        raise click.BadParameter(
            f"Unknown phase(s): {', '.join(unknown)}. Valid phases: {', '.join(PHASE_NAMES)}.",
            param_hint="--phases",
        )
    return phases


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="tasklane")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """tasklane: run a folder of dependent AI coding tasks in parallel.

    \b
    EXAMPLES:
      tasklane check                         # Validate declarations
      tasklane check --fix                   # Show the conflict edges run would add
      tasklane run --max-concurrent 4        # Run with 4 parallel workers
      tasklane run --engine codex --no-limit # Retry each task until it passes

    \b
    LAYOUT:
      .tasklane/TASK1/TASK.md    "@dependencies []" and "@files [src/a.py]"
      .tasklane/TASK2/TASK.md    "@dependencies [TASK1]"
    """
    from tasklane import log as tlog

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    tlog.set_verbose(verbose)


# ── Subcommand: run ──────────────────────────────────────────────


@main.command()
@click.option("--tasks-dir", default="", help="Task folder root (default: .tasklane)")
@click.option("--engine", type=click.Choice(ENGINE_NAMES), default="claude", show_default=True, help="Worker CLI")
@click.option("--max-concurrent", type=int, default=0, help="Max tasks in flight (default: CPU count)")
@click.option("--limit", "max_attempts", type=int, default=20, show_default=True, help="Max attempts per task")
@click.option("--no-limit", is_flag=True, help="Retry each task until it passes")
@click.option("--phases", default="", help="Comma-separated phases to run (e.g. plan,implement)")
@click.option("--no-serialize", is_flag=True, help="Do not order tasks that share files")
@click.option("--no-progress", is_flag=True, help="Disable the live progress table")
@click.option("--timeout", type=int, default=None, help="Seconds before a worker call is killed")
@click.pass_context
def run(
    ctx: click.Context,
    tasks_dir: str,
    engine: str,
    max_concurrent: int,
    max_attempts: int,
    no_limit: bool,
    phases: str,
    no_serialize: bool,
    no_progress: bool,
    timeout: int | None,
) -> None:
    """Execute every task under the tasks dir, respecting @dependencies."""
    cfg = Config(
        tasks_dir=tasks_dir,
        engine=engine,
        max_concurrent=max_concurrent,
        max_attempts_per_task=max_attempts,
        no_limit=no_limit,
        phases=_parse_phases_option(phases),
        serialize_file_conflicts=not no_serialize,
        verbose=ctx.obj.get("verbose", False) if ctx.obj else False,
    )
    _run_executor(cfg, show_progress=not no_progress, timeout=timeout)


def _run_executor(cfg: Config, *, show_progress: bool, timeout: int | None) -> None:
    """Build the graph, wire the pipeline and resolver, run to completion."""
    from tasklane import log as tlog
    from tasklane.deadlock import DeadlockResolver, EngineFixer
    from tasklane.engines.registry import get_engine
    from tasklane.errors import DeadlockError, ExecutionError
    from tasklane.executor import DAGExecutor
    from tasklane.pipeline import FolderPipeline
    from tasklane.progress import LiveProgress, NullProgress
    from tasklane.tasks.declarations import GraphBuilder

    tasks_dir = Path(cfg.tasks_dir)
    if not tasks_dir.is_dir():
        tlog.error(f"Tasks directory not found: {escape(str(tasks_dir))}")
        sys.exit(1)

    # ── Pre-flight: engine check ─────────────────────────────────
    worker = get_engine(cfg.engine)
    err = worker.check_available()
    if err:
        tlog.error(escape(err))
        sys.exit(1)

    pipeline = FolderPipeline(tasks_dir, worker, timeout=timeout)
    builder = GraphBuilder(tasks_dir, pipeline.is_approved)

    graph = builder()
    if graph is None:
        tlog.error(
            f"Could not build the task graph from {escape(str(tasks_dir))}: every TASK folder needs a "
            "TASK.md with an @dependencies line"
        )
        sys.exit(1)

    tlog.info(f"Loaded {len(graph)} task(s) from {escape(str(tasks_dir))}")

    resolver = DeadlockResolver(
        EngineFixer(worker, tasks_dir),
        builder,
        read_declaration=builder.read_declaration,
    )
    executor = DAGExecutor(
        graph,
        pipeline,
        cfg,
        resolver=resolver,
        progress=LiveProgress() if show_progress else NullProgress(),
    )

    try:
        summary = executor.run(builder)
    except DeadlockError as e:
        tlog.error(escape(str(e)))
        for line in e.report:
            tlog.error(f"  {escape(line)}")
        sys.exit(1)
    except ExecutionError as e:
        tlog.error(escape(str(e)))
        sys.exit(1)

    if summary.failed:
        sys.exit(1)


# ── Subcommand: check ────────────────────────────────────────────


@main.command()
@click.option("--tasks-dir", default="", help="Task folder root (default: .tasklane)")
@click.option("--fix", is_flag=True, help="Show the serialization edges run would add")
def check(tasks_dir: str, fix: bool) -> None:
    """Validate declarations: cycles, file conflicts, missing @files."""
    from tasklane import log as tlog
    from tasklane.conflicts import (
        auto_resolve_conflicts,
        detect_file_conflicts,
        find_tasks_missing_files,
        suggest_dependency_fixes,
    )
    from tasklane.cycles import detect_cycles, format_cycle
    from tasklane.tasks.declarations import build_task_graph

    root = Path(Config(tasks_dir=tasks_dir).tasks_dir)
    graph = build_task_graph(root)
    if graph is None:
        tlog.error(f"Could not build the task graph from {escape(str(root))}")
        sys.exit(1)

    tlog.info(f"{len(graph)} task(s) in {escape(str(root))}")

    cycles = detect_cycles(graph)
    for cycle in cycles:
        tlog.error(f"Cycle: {escape(format_cycle(cycle))}")

    conflicts = detect_file_conflicts(graph)
    for conflict in conflicts:
        tlog.warn(f"{conflict.first} and {conflict.second} both touch: {escape(', '.join(conflict.files))}")
    for suggestion in suggest_dependency_fixes(conflicts):
        tlog.console.print(f"[dim]    {escape(suggestion.suggestion)}[/dim]")

    missing = find_tasks_missing_files(graph)
    if missing:
        tlog.warn(f"Tasks without @files (cannot be checked for conflicts): {', '.join(missing)}")

    if fix and conflicts:
        tlog.newline()
        for resolution in auto_resolve_conflicts(graph, conflicts):
            tlog.info(escape(resolution.description))

    if cycles:
        sys.exit(1)
    tlog.success("No dependency cycles found")
