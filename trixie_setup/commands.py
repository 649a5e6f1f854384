"""
Command execution for tasks.

All external programs (apt, dpkg-query, ufw, systemctl, usermod, gpg) are run
through CommandRunner so that every call is logged, bounded by the calling
task's deadline and non-interactive.
"""

import logging
import os
import subprocess
import time
from typing import Dict, Optional, Sequence

from .errors import ExecutionError, TimeoutFailure
from .tasks import TaskContext

logger = logging.getLogger("trixie_setup.commands")

APT_COMMANDS = ("apt", "apt-get", "nala")


class CommandRunner:
    """
    Execute system commands with timeouts and consistent error reporting.

    Args:
        default_timeout: Timeout in seconds when no task deadline applies
        env: Base environment (defaults to a copy of os.environ)
    """

    def __init__(
        self, default_timeout: Optional[float] = 300, env: Optional[Dict[str, str]] = None
    ) -> None:
        self.default_timeout = default_timeout
        self.env = dict(env) if env is not None else os.environ.copy()

    def _timeout(self, ctx: Optional[TaskContext]) -> Optional[float]:
        if ctx is None:
            return self.default_timeout
        ctx.ensure_time()
        remaining = ctx.remaining()
        if remaining is None:
            return self.default_timeout
        if self.default_timeout is None:
            return remaining
        return min(remaining, self.default_timeout)

    def _environment(self, cmd: Sequence[str]) -> Dict[str, str]:
        env = dict(self.env)
        if cmd and os.path.basename(cmd[0]) in APT_COMMANDS:
            # Never let debconf or apt prompt during an unattended run
            env["DEBIAN_FRONTEND"] = "noninteractive"
            env.setdefault("NEEDRESTART_MODE", "a")
        env.setdefault("LC_ALL", "C")
        return env

    def run(
        self,
        cmd: Sequence[str],
        ctx: Optional[TaskContext] = None,
        check: bool = True,
        input: Optional[bytes] = None,
        text: bool = True,
        retry: int = 1,
    ) -> subprocess.CompletedProcess:
        """
        Execute a command and capture its output.

        Args:
            cmd: Command as a list of strings
            ctx: Task context whose deadline bounds the command
            check: Whether a non-zero exit raises ExecutionError
            input: Data written to the command's stdin (implies binary output)
            text: Decode output as text
            retry: Number of attempts for transient failures

        Returns:
            subprocess.CompletedProcess object

        Raises:
            ExecutionError: If the command fails after all attempts and check is set
            TimeoutFailure: If the command exceeds the available time
        """
        cmd = list(cmd)
        cmd_str = " ".join(cmd)
        attempts = 0

        while True:
            attempts += 1
            timeout = self._timeout(ctx)
            logger.debug("Executing: %s (timeout=%s)", cmd_str, timeout)
            try:
                result = subprocess.run(
                    cmd,
                    env=self._environment(cmd),
                    input=input,
                    capture_output=True,
                    text=text and input is None,
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                raise TimeoutFailure(f"Command timed out after {timeout:.0f} seconds: {cmd_str}")
            except FileNotFoundError:
                raise ExecutionError(cmd, 127, stderr=f"{cmd[0]}: command not found")

            if result.returncode == 0 or not check:
                if attempts > 1:
                    logger.info("Command succeeded on attempt %d", attempts)
                return result

            stdout = _as_text(result.stdout)
            stderr = _as_text(result.stderr)
            if attempts < retry:
                logger.warning(
                    "Command failed (code %d): %s. Retrying (%d/%d)...",
                    result.returncode,
                    cmd_str,
                    attempts,
                    retry,
                )
                time.sleep(1)
                continue
            raise ExecutionError(cmd, result.returncode, stdout, stderr)

    def succeeds(self, cmd: Sequence[str], ctx: Optional[TaskContext] = None) -> bool:
        """Return True when the command exits with status 0."""
        return self.run(cmd, ctx=ctx, check=False).returncode == 0

    def output(self, cmd: Sequence[str], ctx: Optional[TaskContext] = None) -> str:
        """Run a command that must succeed and return its stdout."""
        return self.run(cmd, ctx=ctx).stdout


def _as_text(data: object) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)

