"""
Provisioning engine: runs an ordered plan of idempotent tasks and returns a
RunReport describing what happened to each one.
"""

import logging
import subprocess
import time
from graphlib import CycleError, TopologicalSorter
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .errors import (
    ApplyFailure,
    ConfigurationError,
    PreconditionCheckError,
    TimeoutFailure,
)
from .tasks import (
    BLOCKED_BY_DEPENDENCY,
    NOT_REACHED,
    PRECONDITION_MET,
    RunReport,
    Task,
    TaskContext,
    TaskOutcome,
    TaskStatus,
)


def validate_plan(tasks: Sequence[Task]) -> None:
    """
    Verify that a task list forms a valid dependency order.

    Args:
        tasks: Ordered task list

    Raises:
        ConfigurationError: On duplicate names, unknown dependencies, cycles,
            or a dependency that appears later in the list than its dependent
    """
    positions: Dict[str, int] = {}
    for index, task in enumerate(tasks):
        if not task.name:
            raise ConfigurationError(f"Task at position {index} has no name")
        if task.name in positions:
            raise ConfigurationError(f"Duplicate task name: {task.name}")
        positions[task.name] = index

    for task in tasks:
        for dep in task.depends_on:
            if dep not in positions:
                raise ConfigurationError(
                    f"Task {task.name} depends on unknown task {dep}"
                )

    sorter = TopologicalSorter({t.name: t.depends_on for t in tasks})
    try:
        sorter.prepare()
    except CycleError as e:
        cycle = " -> ".join(e.args[1]) if len(e.args) > 1 else "?"
        raise ConfigurationError(f"Dependency cycle detected: {cycle}") from e

    for task in tasks:
        for dep in task.depends_on:
            if positions[dep] > positions[task.name]:
                raise ConfigurationError(
                    f"Task {task.name} depends on {dep}, which appears later in the plan"
                )


class ProvisioningEngine:
    """
    Sequential executor for a provisioning plan.

    For every task the engine evaluates ``check`` first and only calls
    ``apply`` when the goal state does not already hold. Failures are recorded
    according to each task's failure policy. Once a fatal failure aborts the
    run, every remaining task is recorded as skipped: "blocked by dependency"
    when it depends (directly or through other tasks) on the failed task,
    "not reached" otherwise.

    Args:
        default_timeout: Seconds allowed for each check/apply call, None for no limit
        listener: Optional object with ``task_started(task)`` and
            ``task_finished(outcome)`` methods
        logger: Logger to use instead of ``trixie_setup.engine``
    """

    def __init__(
        self,
        default_timeout: Optional[float] = None,
        listener: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.default_timeout = default_timeout
        self.listener = listener
        self.logger = logger or logging.getLogger("trixie_setup.engine")
        self._cancel_requested = False
        self._outcomes: List[TaskOutcome] = []
        self._aborted = False
        self._interrupted = False
        self._started_at = 0.0

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    def cancel(self) -> None:
        """
        Request that the run stop before the next task starts.

        A request made before ``run`` is honoured by that run, which then
        records every task as not reached.
        """
        self._cancel_requested = True

    def snapshot(self) -> RunReport:
        """Return the report as it stands after the most recent recorded task."""
        return RunReport(
            outcomes=tuple(self._outcomes),
            aborted=self._aborted,
            interrupted=self._interrupted,
            started_at=self._started_at,
            finished_at=time.time(),
        )

    def run(self, tasks: Sequence[Task]) -> RunReport:
        """
        Execute a plan and return its report.

        Args:
            tasks: Tasks in dependency order

        Returns:
            RunReport: Final report, whether or not the run was aborted

        Raises:
            ConfigurationError: If the plan is malformed; nothing is executed
        """
        tasks = list(tasks)
        validate_plan(tasks)

        self._outcomes = []
        self._aborted = False
        self._interrupted = False
        self._started_at = time.time()
        failed: Set[str] = set()

        self.logger.info("Starting provisioning run with %d tasks", len(tasks))

        for task in tasks:
            recorded = len(self._outcomes)
            try:
                self._step(task, failed)
            except KeyboardInterrupt:
                # Raised outside the task itself, e.g. while the listener draws
                self._interrupted = True
                self.logger.warning("Run interrupted at %s", task.name)
                if len(self._outcomes) == recorded:
                    self._outcomes.append(TaskOutcome(task.name, TaskStatus.SKIPPED, NOT_REACHED))

        if self._cancel_requested:
            self._interrupted = True
            self._cancel_requested = False
        report = self.snapshot()
        self.logger.info(
            "Provisioning run finished in %.2fs: %s",
            report.elapsed,
            ", ".join(f"{k}={v}" for k, v in report.counts().items()),
        )
        return report

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------
    def _step(self, task: Task, failed: Set[str]) -> None:
        if self._cancel_requested and not self._interrupted:
            self._interrupted = True
            self.logger.warning("Run cancelled before %s", task.name)

        blocked = any(dep in failed for dep in task.depends_on)
        if blocked or self._aborted or self._interrupted:
            if blocked:
                failed.add(task.name)
            detail = BLOCKED_BY_DEPENDENCY if blocked else NOT_REACHED
            self._record(TaskOutcome(task.name, TaskStatus.SKIPPED, detail))
            return

        self._notify("task_started", task)
        try:
            outcome = self._execute(task)
        except KeyboardInterrupt:
            self._interrupted = True
            outcome = TaskOutcome(task.name, TaskStatus.FATAL_FAILURE, "interrupted")

        if outcome.status is TaskStatus.FATAL_FAILURE:
            self._aborted = True
            failed.add(task.name)
            self.logger.error("Fatal failure in %s, aborting run", task.name)
        self._record(outcome)

    def _timeout_for(self, task: Task) -> Optional[float]:
        return task.timeout if task.timeout is not None else self.default_timeout

    def _context(self, task: Task) -> TaskContext:
        return TaskContext.with_timeout(
            task.name,
            self._timeout_for(task),
            logging.getLogger(f"trixie_setup.task.{task.name}"),
        )

    def _execute(self, task: Task) -> TaskOutcome:
        start = time.monotonic()

        satisfied, check_note = self._evaluate_check(task)
        if satisfied:
            self.logger.info("%s: precondition met, skipping", task.name)
            return TaskOutcome(
                task.name,
                TaskStatus.SKIPPED,
                PRECONDITION_MET,
                time.monotonic() - start,
            )

        detail, failure = self._invoke_apply(task)
        if check_note:
            detail = f"{detail} (after {check_note})"
        duration = time.monotonic() - start

        if failure is None:
            self.logger.info("%s: applied in %.2fs", task.name, duration)
            return TaskOutcome(task.name, TaskStatus.APPLIED, detail, duration)

        if task.fatal:
            self.logger.error("%s: %s", task.name, detail)
            return TaskOutcome(task.name, TaskStatus.FATAL_FAILURE, detail, duration)

        self.logger.warning("%s (tolerated): %s", task.name, detail)
        return TaskOutcome(task.name, TaskStatus.TOLERATED_FAILURE, detail, duration)

    def _evaluate_check(self, task: Task) -> Tuple[bool, Optional[str]]:
        ctx = self._context(task)
        try:
            satisfied = bool(task.check(ctx))
            if ctx.expired():
                raise TimeoutFailure(
                    f"check exceeded {self._timeout_for(task)}s timeout"
                )
        except Exception as e:
            err = PreconditionCheckError(task.name, e)
            self.logger.warning("%s; treating as not satisfied", err)
            return False, str(err)
        return satisfied, None

    def _invoke_apply(self, task: Task) -> Tuple[str, Optional[ApplyFailure]]:
        ctx = self._context(task)
        try:
            detail = task.apply(ctx)
            if ctx.expired():
                raise TimeoutFailure(
                    f"apply exceeded {self._timeout_for(task)}s timeout"
                )
        except subprocess.TimeoutExpired as e:
            failure: ApplyFailure = TimeoutFailure(
                f"Command timed out after {e.timeout} seconds: {e.cmd}"
            )
        except ApplyFailure as e:
            failure = e
        except Exception as e:
            failure = ApplyFailure(f"{type(e).__name__}: {e}")
        else:
            return (detail or "applied"), None
        return failure.detail, failure

    def _record(self, outcome: TaskOutcome) -> None:
        self._outcomes.append(outcome)
        self._notify("task_finished", outcome)

    def _notify(self, hook: str, payload: Any) -> None:
        callback = getattr(self.listener, hook, None)
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            self.logger.debug("Listener %s failed: %s", hook, e)
