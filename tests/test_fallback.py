import logging

import pytest

from trixie_setup.engine import ProvisioningEngine
from trixie_setup.errors import ApplyFailure, ExecutionError
from trixie_setup.fallback import with_fallback
from trixie_setup.system import pick_newest
from trixie_setup.tasks import FailurePolicy, Task, TaskContext, TaskStatus


def _installer(available):
    installed = []

    def attempt(name, ctx):
        if name not in available:
            raise ExecutionError(["apt-get", "install", "-y", name], 100, stderr=f"E: Unable to locate package {name}")
        installed.append(name)

    return attempt, installed


def test_virtualbox_fallback_scenario():
    attempt, installed = _installer({"virtualbox-7.1"})
    apply = with_fallback(
        "virtualbox-7.2",
        attempt=attempt,
        discover=lambda ctx: pick_newest(["virtualbox-7.0", "virtualbox-7.1"], "virtualbox-"),
    )
    task = Task(
        name="InstallVBox",
        check=lambda ctx: bool(installed),
        apply=apply,
        failure_policy=FailurePolicy.TOLERATED,
    )
    report = ProvisioningEngine().run([task])

    outcome = report.outcome("InstallVBox")
    assert outcome.status is TaskStatus.APPLIED
    assert "virtualbox-7.1" in outcome.detail
    assert "fallback" in outcome.detail
    assert installed == ["virtualbox-7.1"]


def test_primary_success_skips_discovery():
    attempt, installed = _installer({"virtualbox-7.2"})

    def discover(ctx):
        raise AssertionError("discovery must not run")

    detail = with_fallback("virtualbox-7.2", attempt, discover)(TaskContext(task="vbox"))
    assert detail == "installed virtualbox-7.2"
    assert installed == ["virtualbox-7.2"]


@pytest.mark.parametrize("found", [None, "virtualbox-7.2"])
def test_no_usable_candidate_requires_manual_intervention(found):
    attempt, _ = _installer(set())
    apply = with_fallback("virtualbox-7.2", attempt, lambda ctx: found)

    with pytest.raises(ApplyFailure) as excinfo:
        apply(TaskContext(task="vbox"))
    assert "no fallback candidate" in excinfo.value.detail
    assert "Manual intervention required" in excinfo.value.detail


def test_failed_fallback_names_both_errors():
    attempt, _ = _installer(set())
    apply = with_fallback("virtualbox-7.2", attempt, lambda ctx: "virtualbox-7.1")

    with pytest.raises(ApplyFailure) as excinfo:
        apply(TaskContext(task="vbox"))
    detail = excinfo.value.detail
    assert "virtualbox-7.2 failed" in detail
    assert "fallback virtualbox-7.1 also failed" in detail
    assert "Unable to locate package virtualbox-7.1" in detail


def test_discovery_error_is_reported():
    attempt, _ = _installer(set())

    def discover(ctx):
        raise ExecutionError(["apt-cache", "search"], 1, stderr="cache corrupt")

    with pytest.raises(ApplyFailure) as excinfo:
        with_fallback("virtualbox-7.2", attempt, discover)(TaskContext(task="vbox"))
    assert "fallback discovery failed" in excinfo.value.detail
    assert "cache corrupt" in excinfo.value.detail


def test_fallback_logs_through_task_logger(caplog):
    attempt, installed = _installer({"virtualbox-7.1"})
    ctx = TaskContext(task="vbox", logger=logging.getLogger("vbox-task"))
    apply = with_fallback("virtualbox-7.2", attempt, lambda ctx: "virtualbox-7.1")

    with caplog.at_level(logging.INFO, logger="vbox-task"):
        apply(ctx)

    messages = [r.getMessage() for r in caplog.records if r.name == "vbox-task"]
    assert messages[0].startswith("virtualbox-7.2 failed")
    assert messages[1] == "Trying fallback virtualbox-7.1"
    assert installed == ["virtualbox-7.1"]
