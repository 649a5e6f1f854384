"""
Primary/fallback apply composition.

Used for packages whose name moves between releases (VirtualBox publishes
``virtualbox-7.1``, ``virtualbox-7.2``, ...): try the expected name, and if
that fails look up the best available substitute and try that instead.
"""

from typing import Callable, Optional

from .errors import ApplyFailure
from .tasks import ApplyFn, TaskContext

AttemptFn = Callable[[str, TaskContext], object]
DiscoverFn = Callable[[TaskContext], Optional[str]]


def _reason(err: Exception) -> str:
    return err.detail if isinstance(err, ApplyFailure) else str(err)


def with_fallback(primary: str, attempt: AttemptFn, discover: DiscoverFn) -> ApplyFn:
    """
    Build an apply callable that tries ``primary`` and then a discovered fallback.

    Args:
        primary: Preferred candidate (e.g. a package name)
        attempt: Called with a candidate; raises on failure
        discover: Returns a substitute candidate or None

    Returns:
        An apply callable whose detail names the path that succeeded.
        It raises ApplyFailure when the primary fails and no different
        fallback is found, or when the fallback fails as well.
    """

    def apply(ctx: TaskContext) -> str:
        try:
            attempt(primary, ctx)
            return f"installed {primary}"
        except Exception as e:
            primary_error = _reason(e)
        ctx.logger.warning("%s failed (%s), looking for a fallback", primary, primary_error)

        try:
            candidate = discover(ctx)
        except Exception as e:
            raise ApplyFailure(
                f"{primary} failed: {primary_error}; fallback discovery failed: {_reason(e)}. "
                "Manual intervention required."
            )
        if not candidate or candidate == primary:
            raise ApplyFailure(
                f"{primary} failed: {primary_error}; no fallback candidate found. "
                "Manual intervention required."
            )

        ctx.logger.info("Trying fallback %s", candidate)
        try:
            attempt(candidate, ctx)
        except Exception as e:
            raise ApplyFailure(
                f"{primary} failed: {primary_error}; fallback {candidate} also failed: "
                f"{_reason(e)}. Manual intervention required."
            )
        return f"installed fallback {candidate} ({primary} failed: {primary_error})"

    return apply
