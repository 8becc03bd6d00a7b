"""Live progress display. Passive: it only renders what the executor pushes."""

from __future__ import annotations

from typing import Protocol

from rich.live import Live
from rich.markup import escape
from rich.table import Table

from tasklane import log
from tasklane.tasks.model import TaskGraph, TaskStatus

_STATUS_STYLE = {
    TaskStatus.PENDING: "[dim]pending[/dim]",
    TaskStatus.RUNNING: "[blue]running[/blue]",
    TaskStatus.COMPLETED: "[green]completed[/green]",
    TaskStatus.FAILED: "[red]failed[/red]",
}


class ProgressSink(Protocol):
    def start(self) -> None: ...

    def update(self, graph: TaskGraph) -> None: ...

    def stop(self) -> None: ...


class NullProgress:
    """Discards every update."""

    def start(self) -> None:
        pass

    def update(self, graph: TaskGraph) -> None:
        pass

    def stop(self) -> None:
        pass


def percent_complete(graph: TaskGraph) -> int:
    if not graph:
        return 100
    settled = sum(1 for t in graph.values() if t.status.settled)
    return round(100 * settled / len(graph))


def build_table(graph: TaskGraph) -> Table:
    table = Table(title=f"Tasks ({percent_complete(graph)}% settled)", expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Step")
    table.add_column("Message", style="dim")
    for tid, task in graph.items():
        table.add_row(escape(tid), _STATUS_STYLE[task.status], escape(task.step), escape(task.message))
    return table


class LiveProgress:
    """Renders the task table with ``rich.live.Live`` on the shared console.

    ``start`` and ``stop`` are idempotent so the executor can pause the
    display while it prints deadlock diagnostics.
    """

    def __init__(self, refresh_per_second: float = 4) -> None:
        self._refresh = refresh_per_second
        self._live: Live | None = None
        self._last: TaskGraph = {}

    def start(self) -> None:
        if self._live is not None:
            return
        self._live = Live(
            build_table(self._last),
            console=log.console,
            refresh_per_second=self._refresh,
        )
        self._live.start()

    def update(self, graph: TaskGraph) -> None:
        self._last = graph
        if self._live is not None:
            self._live.update(build_table(graph))

    def stop(self) -> None:
        if self._live is None:
            return
        self._live.stop()
        self._live = None
