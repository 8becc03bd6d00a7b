"""DAG executor: admits ready tasks up to a concurrency limit and drives their pipelines."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from rich.markup import escape

from tasklane import log
from tasklane.config import Config
from tasklane.conflicts import auto_resolve_conflicts, detect_file_conflicts, serialize_file_conflicts
from tasklane.deadlock import DeadlockResolver, Rebuild, describe_unmet, unmet_dependencies
from tasklane.errors import DeadlockError, ExecutionError, VerificationError
from tasklane.pipeline import Phase, StepPipeline
from tasklane.progress import NullProgress, ProgressSink
from tasklane.tasks.model import Task, TaskGraph, TaskStatus, copy_graph, ids_with_status


@dataclass
class RunSummary:
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending


class DAGExecutor:
    """Runs every task of *graph* through *pipeline*, respecting dependencies.

    Usage::

        executor = DAGExecutor(graph, pipeline, cfg, resolver=resolver)
        summary = executor.run(rebuild)   # blocks until every task settles

    The graph is the single shared structure. Task pipelines run on worker
    threads; every status write and readiness computation holds ``_lock``,
    so a task finishing is visible to the very next scheduling pass.
    """

    def __init__(
        self,
        graph: TaskGraph,
        pipeline: StepPipeline,
        cfg: Config | None = None,
        *,
        resolver: DeadlockResolver | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self._graph = graph
        self.pipeline = pipeline
        self.cfg = cfg or Config()
        self.resolver = resolver
        self.progress = progress or NullProgress()

        self._lock = threading.RLock()
        self._running: set[str] = set()
        self._causes: dict[str, str] = {}

        self._stall_count = 0
        self._deadlock_attempts = 0
        self._last_pending_log = 0.0

    # ── introspection ────────────────────────────────────────────

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def running(self) -> set[str]:
        with self._lock:
            return set(self._running)

    def snapshot(self) -> TaskGraph:
        with self._lock:
            return copy_graph(self._graph)

    def failure_cause(self, task_id: str) -> str:
        return self._causes.get(task_id, "")

    def get_ready_tasks(self) -> list[str]:
        """Pending tasks whose every dependency exists and is completed."""
        with self._lock:
            return [
                tid for tid, task in self._graph.items()
                if task.status == TaskStatus.PENDING
                and all(
                    dep in self._graph and self._graph[dep].status == TaskStatus.COMPLETED
                    for dep in task.deps
                )
            ]

    # ── graph refresh ────────────────────────────────────────────

    def merge_snapshot(self, snapshot: TaskGraph) -> bool:
        """Fold a freshly built graph into the live one. Returns ``True`` on any change.

        New tasks are added, dependency and file sets follow the snapshot,
        pending tasks the snapshot reports completed are promoted, and
        pending tasks absent from the snapshot are dropped. Running and
        completed tasks never go back to pending.
        """
        changed = False
        with self._lock:
            for tid, incoming in snapshot.items():
                current = self._graph.get(tid)
                if current is None:
                    status = incoming.status
                    if status != TaskStatus.COMPLETED:
                        status = TaskStatus.PENDING
                    self._graph[tid] = Task(
                        id=tid,
                        deps=list(incoming.deps),
                        status=status,
                        files=list(incoming.files),
                    )
                    log.info(f"Added new task: {tid} (deps: {escape(', '.join(incoming.deps)) or 'none'})")
                    changed = True
                    continue

                if current.deps != incoming.deps:
                    log.info(
                        f"Updated deps for {tid}: {escape(', '.join(current.deps)) or 'none'} → {escape(', '.join(incoming.deps)) or 'none'}"
                    )
                    current.deps = list(incoming.deps)
                    changed = True
                if current.files != incoming.files:
                    current.files = list(incoming.files)
                    changed = True
                if current.status == TaskStatus.PENDING and incoming.status == TaskStatus.COMPLETED:
                    current.status = TaskStatus.COMPLETED
                    log.info(f"{tid} marked as completed from declarations")
                    changed = True

            for tid in list(self._graph):
                if tid not in snapshot and self._graph[tid].status == TaskStatus.PENDING:
                    del self._graph[tid]
                    log.info(f"Removed task no longer declared: {tid}")
                    changed = True

        return changed

    def _refresh(self, rebuild: Rebuild) -> bool:
        try:
            snapshot = rebuild()
        except OSError as e:
            log.warn(f"Could not rebuild the task graph, keeping the current one: {escape(str(e))}")
            return False
        if snapshot is None:
            return False
        if self.cfg.serialize_file_conflicts:
            auto_resolve_conflicts(snapshot, detect_file_conflicts(snapshot))
        return self.merge_snapshot(snapshot)

    # ── state transitions ────────────────────────────────────────

    def _set_step(self, task_id: str, step: str) -> None:
        with self._lock:
            task = self._graph.get(task_id)
            if task is not None:
                task.step = step

    def _settle(self, task_id: str, status: TaskStatus, message: str = "") -> None:
        with self._lock:
            task = self._graph.get(task_id)
            if task is None:
                return
            task.status = status
            task.step = ""
            task.message = message
        log.debug(f"Task {task_id}: running -> {status.value}")

    def _complete(self, task_id: str, message: str = "") -> None:
        self._settle(task_id, TaskStatus.COMPLETED, message)
        log.success(f"{task_id} completed{f' ({escape(message)})' if message else ''}")

    def _fail(self, task_id: str, cause: str) -> None:
        self._causes[task_id] = cause
        self._settle(task_id, TaskStatus.FAILED, cause)
        log.error(f"{task_id} failed: {escape(cause)}")

    def _launch(self, pool: ThreadPoolExecutor, task_id: str) -> None:
        with self._lock:
            self._graph[task_id].status = TaskStatus.RUNNING
            self._running.add(task_id)
        log.debug(f"Task {task_id}: pending -> running")
        future = pool.submit(self._execute_task, task_id)
        future.add_done_callback(lambda _f, tid=task_id: self._release(tid))

    def _release(self, task_id: str) -> None:
        with self._lock:
            self._running.discard(task_id)
            task = self._graph.get(task_id)
            if task is not None and task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.FAILED

    # ── per-task pipeline ────────────────────────────────────────

    def _execute_task(self, task_id: str) -> None:
        try:
            self._run_pipeline(task_id)
        except Exception as e:
            self._fail(task_id, str(e) or type(e).__name__)

    def _run_pipeline(self, task_id: str) -> None:
        p = self.pipeline
        cfg = self.cfg

        if p.is_approved(task_id):
            self._complete(task_id, "already approved")
            return

        limit = cfg.attempt_limit
        attempts = 0
        last_error: Exception | None = None

        while attempts < limit:
            attempts += 1
            try:
                if not p.has_plan(task_id):
                    if not cfg.allows(Phase.PLAN):
                        self._complete(task_id, "plan phase skipped")
                        return
                    self._set_step(task_id, f"Planning (attempt {attempts})")
                    p.plan(task_id)
                    if not p.exists(task_id):
                        log.info(f"{task_id} was split into subtasks")
                        self._complete(task_id, "split into subtasks")
                        return

                if not cfg.allows(Phase.IMPLEMENT):
                    self._complete(task_id, "implement phase skipped")
                    return
                if not p.is_implemented(task_id):
                    self._set_step(task_id, f"Implementing (attempt {attempts})")
                    p.implement(task_id)
                    if not p.is_implemented(task_id):
                        continue

                if not cfg.allows(Phase.REVIEW):
                    self._complete(task_id, "review phase skipped")
                    return
                if not p.has_approved_review(task_id):
                    self._set_step(task_id, f"Reviewing (attempt {attempts})")
                    p.review(task_id)

                if p.is_approved(task_id):
                    self._complete(task_id)
                    return
            except Exception as e:
                last_error = e
                log.warn(f"Attempt {attempts} for {task_id} failed: {escape(str(e))}")
                time.sleep(cfg.retry_delay)

        cause = f"Maximum attempts ({attempts}) reached for {task_id}"
        if last_error is not None:
            cause += f". Last error: {last_error}"
        self._fail(task_id, cause)

    # ── deadlock handling ────────────────────────────────────────

    def _failure_blocked(self) -> set[str]:
        """Pending tasks that can never run because a (transitive) dependency failed."""
        with self._lock:
            graph = self._graph
            blocked: set[str] = set()
            changed = True
            while changed:
                changed = False
                for tid, task in graph.items():
                    if task.status != TaskStatus.PENDING or tid in blocked:
                        continue
                    if any(
                        dep in blocked
                        or (dep in graph and graph[dep].status == TaskStatus.FAILED)
                        for dep in task.deps
                    ):
                        blocked.add(tid)
                        changed = True
            return blocked

    def deadlock_report(self) -> list[str]:
        """One line per pending task naming each unmet dependency."""
        with self._lock:
            lines = []
            for tid in ids_with_status(self._graph, TaskStatus.PENDING):
                unmet = unmet_dependencies(self._graph, tid)
                if unmet:
                    waiting = ", ".join(describe_unmet(self._graph, d) for d in unmet)
                    lines.append(f"{tid} waiting for: {waiting}")
            return lines

    def _handle_deadlock(self, rebuild: Rebuild | None) -> None:
        self.progress.stop()
        self._stall_count = 0
        report = self.deadlock_report()

        log.newline()
        log.warn("DEADLOCK DETECTED - No tasks can proceed")
        for line in report:
            log.warn(f"  {escape(line)}")

        limit = self.cfg.max_deadlock_attempts
        if self.resolver is None:
            raise DeadlockError("Deadlock detected and no resolver is configured", report)

        self._deadlock_attempts += 1
        if self._deadlock_attempts > limit:
            log.error(f"Maximum deadlock resolution attempts ({limit}) reached")
            log.error("Manual intervention required. Check the @dependencies of the tasks above.")
            raise DeadlockError(f"Deadlock could not be resolved after {limit} attempts", report)

        log.info(f"Attempting deadlock resolution (attempt {self._deadlock_attempts}/{limit})…")
        with self._lock:
            pending = ids_with_status(self._graph, TaskStatus.PENDING)
        if self.resolver.resolve(self.snapshot(), pending):
            log.success("Deadlock resolution completed - refreshing task graph")
            if rebuild is not None:
                self._refresh(rebuild)
        else:
            log.error("Deadlock resolution attempt failed")

        self.progress.start()

    # ── main loop ────────────────────────────────────────────────

    def _all_settled(self) -> bool:
        with self._lock:
            return not self._running and all(t.status.settled for t in self._graph.values())

    def _log_pending(self) -> None:
        now = time.monotonic()
        if now - self._last_pending_log < self.cfg.pending_log_interval:
            return
        with self._lock:
            if self._running:
                return
            waiting = [
                f"{tid}(waiting: {','.join(unmet_dependencies(self._graph, tid)) or 'ready!'})"
                for tid in ids_with_status(self._graph, TaskStatus.PENDING)
            ]
        if waiting:
            log.info(f"Pending tasks: {escape(', '.join(waiting))}")
            self._last_pending_log = now

    def _loop(self, pool: ThreadPoolExecutor, rebuild: Rebuild | None) -> None:
        cfg = self.cfg
        while True:
            if rebuild is not None:
                self._refresh(rebuild)

            self._log_pending()

            ready = self.get_ready_tasks()
            slots = cfg.max_concurrent - len(self.running)
            if ready and slots > 0:
                for task_id in ready[:slots]:
                    self._launch(pool, task_id)
                self._deadlock_attempts = 0

            if self._all_settled():
                return

            self.progress.update(self.snapshot())

            if self.running:
                self._stall_count = 0
                time.sleep(cfg.poll_interval)
                continue

            with self._lock:
                pending = set(ids_with_status(self._graph, TaskStatus.PENDING))
            if pending and pending <= self._failure_blocked():
                log.warn("Remaining tasks are blocked by failed dependencies")
                return

            self._stall_count += 1
            if self._stall_count >= cfg.stall_threshold:
                self._handle_deadlock(rebuild)
                continue
            time.sleep(cfg.idle_poll_interval)

    def run(self, rebuild: Rebuild | None = None) -> RunSummary:
        """Execute every task and the post phases. Blocks until the run settles.

        Raises :class:`DeadlockError` or :class:`VerificationError` on a fatal
        abort, after every already-launched task has finished. The end-of-run
        report is printed on every exit path.
        """
        cfg = self.cfg
        log.info(f"Starting DAG executor with max {cfg.max_concurrent} concurrent tasks")

        if cfg.serialize_file_conflicts:
            with self._lock:
                serialize_file_conflicts(self._graph)

        self.progress.start()
        try:
            with ThreadPoolExecutor(
                max_workers=cfg.max_concurrent, thread_name_prefix="tasklane"
            ) as pool:
                self._loop(pool, rebuild)
            self.progress.update(self.snapshot())
        except Exception:
            self.progress.stop()
            self._report(self.summary())
            raise
        finally:
            self.progress.stop()

        summary = self.summary()
        try:
            self._post_phases(summary)
        finally:
            self._report(summary)
        return summary

    # ── post phases / report ─────────────────────────────────────

    def summary(self) -> RunSummary:
        with self._lock:
            return RunSummary(
                completed=ids_with_status(self._graph, TaskStatus.COMPLETED),
                failed=ids_with_status(self._graph, TaskStatus.FAILED),
                pending=ids_with_status(self._graph, TaskStatus.PENDING),
            )

    def _post_phases(self, summary: RunSummary) -> None:
        if summary.failed or summary.pending or not summary.completed:
            return

        if self.cfg.allows(Phase.SWEEP):
            log.newline()
            log.info("Running global bug sweep…")
            try:
                self.pipeline.sweep(self.cfg.attempt_limit)
            except Exception as e:
                log.error(f"Bug sweep failed: {escape(str(e))}")
                raise VerificationError(str(e)) from e
            log.success("Bug sweep completed - no critical bugs found")
        else:
            log.warn("Bug sweep skipped; finalizing without global verification")

        if self.cfg.allows(Phase.FINALIZE):
            try:
                self.pipeline.finalize(summary.completed)
            except Exception as e:
                log.error(f"Finalize failed: {escape(str(e))}")
                raise ExecutionError(f"Finalize failed: {e}") from e
            log.success("Finalize completed")

    def _report(self, summary: RunSummary) -> None:
        log.newline()
        if summary.failed:
            log.error(f"Failed tasks: {', '.join(summary.failed)}")
            for tid in summary.failed:
                cause = self._causes.get(tid)
                if cause:
                    log.console.print(f"[dim]    {tid}: {escape(cause)}[/dim]")
        if summary.pending:
            log.info(f"Tasks still pending (unsatisfied dependencies): {', '.join(summary.pending)}")
        total = len(summary.completed) + len(summary.failed) + len(summary.pending)
        done = (
            f"Completed {len(summary.completed)}/{total} tasks "
            f"(failed: {len(summary.failed)}, pending: {len(summary.pending)})"
        )
        if summary.ok:
            log.success(done)
        else:
            log.warn(done)
