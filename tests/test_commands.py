import os
import time

import pytest

from trixie_setup import commands
from trixie_setup.commands import CommandRunner
from trixie_setup.errors import ExecutionError, TimeoutFailure
from trixie_setup.tasks import TaskContext


@pytest.fixture
def real_runner():
    return CommandRunner(default_timeout=10, env={"PATH": os.environ.get("PATH", "/usr/bin:/bin")})


def _script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


def test_output_returns_stdout(real_runner):
    assert real_runner.output(["echo", "hello"]) == "hello\n"
    assert real_runner.succeeds(["true"]) is True
    assert real_runner.succeeds(["false"]) is False


def test_non_zero_exit_raises_with_stderr_tail(real_runner):
    with pytest.raises(ExecutionError) as excinfo:
        real_runner.run(["sh", "-c", "echo starting; echo boom >&2; exit 4"])
    err = excinfo.value
    assert err.returncode == 4
    assert err.detail.endswith(": boom")
    assert "starting" in err.stdout


def test_check_false_returns_failed_result(real_runner):
    result = real_runner.run(["false"], check=False)
    assert result.returncode == 1


def test_missing_program_is_exit_127(real_runner, tmp_path):
    with pytest.raises(ExecutionError) as excinfo:
        real_runner.run([str(tmp_path / "no-such-program")])
    assert excinfo.value.returncode == 127
    assert "command not found" in excinfo.value.detail


def test_binary_input(real_runner):
    assert real_runner.run(["cat"], input=b"\x00abc").stdout == b"\x00abc"


# ----------------------------------------------------------------
# Deadlines
# ----------------------------------------------------------------
def test_command_bounded_by_task_deadline(real_runner):
    ctx = TaskContext.with_timeout("slow", 0.3)
    start = time.monotonic()
    with pytest.raises(TimeoutFailure) as excinfo:
        real_runner.run(["sleep", "5"], ctx)
    assert time.monotonic() - start < 4
    assert "timed out" in excinfo.value.detail


def test_command_bounded_by_default_timeout():
    runner = CommandRunner(default_timeout=0.3)
    with pytest.raises(TimeoutFailure):
        runner.run(["sleep", "5"], TaskContext.with_timeout("t", 60))


def test_expired_context_runs_nothing(real_runner, tmp_path):
    marker = tmp_path / "ran"
    ctx = TaskContext(task="late", deadline=time.monotonic() - 1)
    with pytest.raises(TimeoutFailure):
        real_runner.run(["touch", str(marker)], ctx)
    assert not marker.exists()


# ----------------------------------------------------------------
# Retries and environment
# ----------------------------------------------------------------
def test_retry_until_success(real_runner, tmp_path, monkeypatch):
    monkeypatch.setattr(commands.time, "sleep", lambda seconds: None)
    marker = tmp_path / "attempted"
    flaky = ["sh", "-c", 'test -f "$1" && exit 0; touch "$1"; exit 3', "sh", str(marker)]

    assert real_runner.run(flaky, retry=2).returncode == 0


def test_no_retry_by_default(real_runner, tmp_path):
    marker = tmp_path / "attempted"
    flaky = ["sh", "-c", 'test -f "$1" && exit 0; touch "$1"; exit 3', "sh", str(marker)]

    with pytest.raises(ExecutionError) as excinfo:
        real_runner.run(flaky)
    assert excinfo.value.returncode == 3


def test_apt_commands_run_non_interactive(real_runner, tmp_path):
    apt_get = _script(tmp_path / "apt-get", "env\n")

    apt_env = real_runner.output([str(apt_get)])
    assert "DEBIAN_FRONTEND=noninteractive" in apt_env.splitlines()
    assert "LC_ALL=C" in apt_env.splitlines()

    plain_env = real_runner.output(["env"])
    assert "DEBIAN_FRONTEND" not in plain_env
    assert "LC_ALL=C" in plain_env.splitlines()
