"""
Error taxonomy for the provisioning engine.

Only ConfigurationError leaves the engine as an exception. Everything raised by
a task's check or apply is turned into a report entry.
"""

from typing import Optional, Sequence, Union


class SetupError(Exception):
    """Base exception for setup errors."""

    pass


class ConfigurationError(SetupError):
    """Raised when a task plan is malformed (duplicate, unknown, forward or cyclic dependency)."""

    pass


class PreconditionCheckError(SetupError):
    """Raised when a task's check could not determine the system state."""

    def __init__(self, task: str, cause: BaseException) -> None:
        self.task = task
        self.cause = cause
        super().__init__(f"check for {task} failed: {cause}")


class ApplyFailure(SetupError):
    """
    Raised when a task's apply step fails.

    Args:
        detail: Human-readable description recorded in the run report
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


class TimeoutFailure(ApplyFailure):
    """Raised when a check or apply call runs past its deadline."""

    pass


class ExecutionError(ApplyFailure):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        cmd: Union[Sequence[str], str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        self.cmd = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = f"Command failed (code {returncode}): {self.cmd}"
        tail = _last_line(self.stderr) or _last_line(self.stdout)
        if tail:
            detail += f": {tail}"
        super().__init__(detail)


class DownloadError(ApplyFailure):
    """Raised when a remote file cannot be fetched."""

    pass


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""
