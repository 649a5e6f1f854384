"""
Task and report types consumed and produced by the provisioning engine.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import TimeoutFailure


class FailurePolicy(Enum):
    """Consequence of a failing apply step."""

    FATAL = "fatal"
    TOLERATED = "tolerated"


class TaskStatus(Enum):
    """Terminal state of a task within one run."""

    SKIPPED = "skipped"
    APPLIED = "applied"
    TOLERATED_FAILURE = "tolerated_failure"
    FATAL_FAILURE = "fatal_failure"


# Outcome details used by the engine
PRECONDITION_MET = "precondition met"
BLOCKED_BY_DEPENDENCY = "blocked by dependency"
NOT_REACHED = "not reached"


@dataclass
class TaskContext:
    """
    Per-call context handed to a task's check and apply callables.

    The deadline is measured on the monotonic clock; ``None`` means no timeout.
    """

    task: str
    deadline: Optional[float] = None
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("trixie_setup.task")
    )

    @classmethod
    def with_timeout(
        cls, task: str, timeout: Optional[float], logger: Optional[logging.Logger] = None
    ) -> "TaskContext":
        deadline = time.monotonic() + timeout if timeout is not None else None
        ctx = cls(task=task, deadline=deadline)
        if logger is not None:
            ctx.logger = logger
        return ctx

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def ensure_time(self) -> None:
        """
        Raise TimeoutFailure if the deadline has already passed.

        Raises:
            TimeoutFailure: When no time is left for the current call
        """
        if self.expired():
            raise TimeoutFailure(f"{self.task}: timed out")


CheckFn = Callable[[TaskContext], bool]
ApplyFn = Callable[[TaskContext], Optional[str]]


@dataclass(frozen=True)
class Task:
    """
    One declared, idempotent unit of system configuration.

    Attributes:
        name: Identifier, unique within a run
        check: Read-only predicate; True when the goal state already holds
        apply: Action that reaches the goal state; may return an outcome detail
        failure_policy: Whether a failing apply aborts the run
        depends_on: Names of tasks that must end in a non-fatal state first
        description: Human-readable summary for display
        timeout: Per-call timeout overriding the engine default
    """

    name: str
    check: CheckFn
    apply: ApplyFn
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    depends_on: Tuple[str, ...] = ()
    description: str = ""
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        # Accept any iterable of names but store an immutable tuple
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def fatal(self) -> bool:
        return self.failure_policy is FailurePolicy.FATAL


@dataclass(frozen=True)
class TaskOutcome:
    """Recorded terminal state of one task."""

    name: str
    status: TaskStatus
    detail: str = ""
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "detail": self.detail,
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class RunReport:
    """Immutable record of one provisioning run."""

    outcomes: Tuple[TaskOutcome, ...] = ()
    aborted: bool = False
    interrupted: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0

    def _with_status(self, status: TaskStatus) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def applied(self) -> List[TaskOutcome]:
        return self._with_status(TaskStatus.APPLIED)

    @property
    def skipped(self) -> List[TaskOutcome]:
        return self._with_status(TaskStatus.SKIPPED)

    @property
    def tolerated_failures(self) -> List[TaskOutcome]:
        return self._with_status(TaskStatus.TOLERATED_FAILURE)

    @property
    def fatal_failures(self) -> List[TaskOutcome]:
        return self._with_status(TaskStatus.FATAL_FAILURE)

    @property
    def elapsed(self) -> float:
        return max(0.0, self.finished_at - self.started_at)

    def outcome(self, name: str) -> Optional[TaskOutcome]:
        """Return the outcome recorded for ``name``, if any."""
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    def exit_code(self) -> int:
        """
        Process exit status for this report.

        Returns:
            int: 130 if the run was interrupted, 1 if a fatal failure aborted
            the run, 2 if the run completed with tolerated failures, 0 otherwise
        """
        if self.interrupted:
            return 130
        if self.aborted:
            return 1
        if self.tolerated_failures:
            return 2
        return 0

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for o in self.outcomes:
            counts[o.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aborted": self.aborted,
            "interrupted": self.interrupted,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed": round(self.elapsed, 3),
            "counts": self.counts(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
