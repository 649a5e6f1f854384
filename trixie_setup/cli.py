"""
Command line interface for trixie-setup.

Usage:
    sudo trixie-setup run [--user NAME] [--timeout SECONDS] [--report-json PATH]
    trixie-setup status [--user NAME]
    trixie-setup plan
"""

import dataclasses
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from .commands import CommandRunner
from .config import VERSION, AppConfig, resolve_target_user
from .console import (
    ConsoleListener,
    console,
    create_header,
    plan_table,
    print_error,
    print_next_steps,
    print_report,
    print_section,
    print_step,
    print_success,
    print_warning,
    status_table,
)
from .engine import ProvisioningEngine, validate_plan
from .errors import ConfigurationError
from .log import setup_logger
from .plan import build_plan
from .tasks import RunReport, TaskContext

logger = logging.getLogger("trixie_setup.cli")


def _is_root() -> bool:
    return os.geteuid() == 0


def _load_config(user: Optional[str], timeout: Optional[float] = None) -> AppConfig:
    config = AppConfig(TARGET=resolve_target_user(user))
    if timeout is not None:
        config.COMMAND_TIMEOUT = timeout
    return config


def _install_signal_handlers(engine: ProvisioningEngine) -> Dict[int, Any]:
    """
    Route SIGINT/SIGTERM/SIGHUP to a cancellation of the running plan.

    SIGTERM and SIGHUP let the current task finish; SIGINT also interrupts it.

    Returns:
        The previous handlers, keyed by signal number
    """

    def signal_handler(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.error("Run interrupted by %s, stopping", sig_name)
        engine.cancel()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
        previous[sig] = signal.signal(sig, signal_handler)
    return previous


def _write_report(report: RunReport, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2) + "\n")
        print_step(f"Report written to {path}")
    except OSError as e:
        print_warning(f"Could not write report to {path}: {e}")


# ----------------------------------------------------------------
# Main CLI Entry Point with click
# ----------------------------------------------------------------
@click.group()
@click.version_option(VERSION, prog_name="trixie-setup")
def cli() -> None:
    """Debian 13 (Trixie) GNOME post-install provisioning."""


@cli.command()
@click.option("--user", "user", default=None, help="User whose home and groups are configured")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Log file (default /var/log/trixie_setup.log)",
)
@click.option("--timeout", type=float, default=None, help="Seconds allowed per check/apply call")
@click.option(
    "--report-json",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the run report as JSON",
)
@click.option("--no-banner", is_flag=True, help="Do not print the ASCII header")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
def run(
    user: Optional[str],
    log_file: Optional[Path],
    timeout: Optional[float],
    report_json: Optional[Path],
    no_banner: bool,
    verbose: bool,
) -> None:
    """Apply the post-install plan (requires root)."""
    if not _is_root():
        print_error("This command must be run as root (e.g., using sudo).")
        sys.exit(1)

    try:
        config = _load_config(user, timeout)
    except ConfigurationError as e:
        print_error(str(e))
        sys.exit(1)

    if not no_banner:
        console.print(create_header(config.APP_NAME, config.VERSION))
    setup_logger(log_file or config.LOG_FILE, verbose=verbose, max_size=config.MAX_LOG_SIZE)
    logger.info("Configuring system for user %s (%s)", config.TARGET.name, config.TARGET.home)

    listener = ConsoleListener()
    engine = ProvisioningEngine(default_timeout=config.COMMAND_TIMEOUT, listener=listener)
    previous_handlers = _install_signal_handlers(engine)

    try:
        tasks = build_plan(config, CommandRunner(default_timeout=config.COMMAND_TIMEOUT))
        print_section(f"{config.APP_SUBTITLE}: {len(tasks)} tasks")
        report = engine.run(tasks)
    except ConfigurationError as e:
        print_error(f"Invalid plan: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        report = dataclasses.replace(engine.snapshot(), interrupted=True)
    finally:
        listener.close()
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    print_report(report)
    if report_json is not None:
        _write_report(report, report_json)
    if not report.aborted and not report.interrupted:
        print_next_steps(config.NEXT_STEPS)
    sys.exit(report.exit_code())


@cli.command()
@click.option("--user", "user", default=None, help="User whose home and groups are inspected")
def status(user: Optional[str]) -> None:
    """Show which tasks are already satisfied, without changing anything."""
    try:
        config = _load_config(user)
    except ConfigurationError as e:
        print_error(str(e))
        sys.exit(1)

    tasks = build_plan(config, CommandRunner(default_timeout=60))
    rows: List[tuple] = []
    for task in tasks:
        ctx = TaskContext.with_timeout(task.name, task.timeout or 60)
        try:
            rows.append((task.name, bool(task.check(ctx)), task.description))
        except Exception as e:
            rows.append((task.name, None, f"{type(e).__name__}: {e}"))

    console.print(status_table(rows))
    done = sum(1 for _, satisfied, _ in rows if satisfied)
    print_success(f"{done}/{len(rows)} tasks already satisfied")


@cli.command()
def plan() -> None:
    """List the ordered tasks."""
    config = AppConfig()
    tasks = build_plan(config)
    try:
        validate_plan(tasks)
    except ConfigurationError as e:
        print_error(f"Invalid plan: {e}")
        sys.exit(1)
    console.print(plan_table(tasks))


def main() -> None:
    cli(prog_name="trixie-setup")


if __name__ == "__main__":
    main()
