"""
Rich terminal UI: Nord themed console, Pyfiglet header, task progress and
the end-of-run report.
"""

import shutil
from typing import Dict, Iterable, List, Optional, Sequence

import pyfiglet
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from .config import VERSION
from .tasks import RunReport, Task, TaskOutcome, TaskStatus


# ----------------------------------------------------------------
# Nord Color Palette
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent styling."""

    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_4: str = "#4C566A"
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"
    RED: str = "#BF616A"
    ORANGE: str = "#D08770"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"
    PURPLE: str = "#B48EAD"


nord_theme = Theme(
    {
        "info": f"{NordColors.FROST_2}",
        "warning": f"{NordColors.YELLOW}",
        "error": f"{NordColors.RED}",
        "success": f"{NordColors.GREEN}",
        "debug": f"{NordColors.POLAR_NIGHT_4}",
        "header": f"bold {NordColors.FROST_1}",
        "title": f"bold {NordColors.FROST_3}",
        "path": f"italic {NordColors.FROST_3}",
        "panel.border": f"{NordColors.FROST_4}",
    }
)

console = Console(theme=nord_theme, highlight=False)

STATUS_STYLES: Dict[TaskStatus, str] = {
    TaskStatus.APPLIED: NordColors.GREEN,
    TaskStatus.SKIPPED: NordColors.FROST_3,
    TaskStatus.TOLERATED_FAILURE: NordColors.YELLOW,
    TaskStatus.FATAL_FAILURE: NordColors.RED,
}

STATUS_LABELS: Dict[TaskStatus, str] = {
    TaskStatus.APPLIED: "APPLIED",
    TaskStatus.SKIPPED: "SKIPPED",
    TaskStatus.TOLERATED_FAILURE: "TOLERATED",
    TaskStatus.FATAL_FAILURE: "FAILED",
}


# ----------------------------------------------------------------
# UI Helpers
# ----------------------------------------------------------------
def create_header(title: str, version: str = VERSION) -> Panel:
    """
    Generate an ASCII art header with gradient styling using Pyfiglet.

    Args:
        title: The title text to display in the ASCII art
        version: Version string shown in the panel title

    Returns:
        A Rich Panel containing the styled ASCII art header
    """
    term_width = shutil.get_terminal_size().columns
    adjusted_width = min(term_width - 4, 80)

    fonts = ["slant", "small", "standard", "digital"]
    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=adjusted_width)
            ascii_art = fig.renderText(title)
            if ascii_art.strip():
                break
        except pyfiglet.FigletError:
            continue
    if not ascii_art.strip():
        ascii_art = title

    ascii_lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = [
        NordColors.FROST_1,
        NordColors.FROST_2,
        NordColors.FROST_3,
        NordColors.FROST_4,
    ]

    styled_text = Text()
    for i, line in enumerate(ascii_lines):
        styled_text.append(Text(line, style=Style(color=colors[i % len(colors)], bold=True)))
        styled_text.append("\n")

    border_text = Text("━" * max(adjusted_width - 6, 10), style=Style(color=NordColors.FROST_3))
    content = Text()
    content.append(border_text)
    content.append("\n")
    content.append(styled_text)
    content.append(border_text)

    return Panel(
        content,
        border_style=Style(color=NordColors.FROST_1),
        padding=(1, 2),
        title=f"v{version}",
        title_align="right",
    )


def print_section(title: str) -> None:
    """Display a section header with consistent styling."""
    console.print()
    console.print(f"[bold {NordColors.FROST_3}]{title}[/]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")


def print_message(text: str, style: str = NordColors.FROST_2, prefix: str = "•") -> None:
    """Print a styled message with a prefix."""
    console.print(f"[{style}]{prefix} {escape(text)}[/{style}]")


def print_success(message: str) -> None:
    print_message(message, NordColors.GREEN, "✓")


def print_warning(message: str) -> None:
    print_message(message, NordColors.YELLOW, "⚠")


def print_error(message: str) -> None:
    print_message(message, NordColors.RED, "✗")


def print_step(message: str) -> None:
    print_message(message, NordColors.FROST_2, "→")


# ----------------------------------------------------------------
# Live task progress
# ----------------------------------------------------------------
class ConsoleListener:
    """
    Engine listener that shows a spinner while a task runs and one line per
    recorded outcome.
    """

    def __init__(self, out: Optional[Console] = None) -> None:
        self.console = out or console
        self._status = None

    def task_started(self, task: Task) -> None:
        self._stop()
        label = task.description or task.name
        self._status = self.console.status(
            f"[bold {NordColors.FROST_2}]{escape(label)}...", spinner="dots"
        )
        self._status.start()

    def task_finished(self, outcome: TaskOutcome) -> None:
        self._stop()
        style = STATUS_STYLES[outcome.status]
        label = STATUS_LABELS[outcome.status]
        self.console.print(
            f"[{style}]{label:<10}[/{style}] [bold]{outcome.name}[/bold] "
            f"[{NordColors.SNOW_STORM_1}]{escape(outcome.detail)}[/]",
            highlight=False,
        )

    def close(self) -> None:
        self._stop()

    def _stop(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None


# ----------------------------------------------------------------
# Reports
# ----------------------------------------------------------------
def _format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


def report_table(report: RunReport) -> Table:
    """Build the Task / Status / Detail table for a finished run."""
    table = Table(
        title="Debian Trixie Setup Status Report",
        title_style=f"bold {NordColors.FROST_1}",
        border_style=f"{NordColors.FROST_3}",
        box=box.ROUNDED,
        show_lines=True,
    )
    table.add_column("Task", style=f"bold {NordColors.FROST_2}")
    table.add_column("Status", style="bold")
    table.add_column("Detail")

    for outcome in report.outcomes:
        style = STATUS_STYLES[outcome.status]
        table.add_row(
            outcome.name,
            f"[{style}]{STATUS_LABELS[outcome.status]}[/{style}]",
            escape(outcome.detail),
        )
    return table


def summary_line(report: RunReport) -> str:
    """One-line summary, e.g. ``12 applied, 8 skipped, 1 tolerated, 0 failed``."""
    return (
        f"{len(report.applied)} applied, {len(report.skipped)} skipped, "
        f"{len(report.tolerated_failures)} tolerated, "
        f"{len(report.fatal_failures)} failed in {_format_elapsed(report.elapsed)}"
    )


def print_report(report: RunReport) -> None:
    """Display the report table followed by a colored summary."""
    console.print()
    console.print(Panel(report_table(report), border_style=f"{NordColors.FROST_1}"))

    summary = summary_line(report)
    if report.interrupted:
        print_error(f"Run interrupted: {summary}")
    elif report.aborted:
        print_error(f"Run aborted: {summary}")
    elif report.tolerated_failures:
        print_warning(f"Completed with warnings: {summary}")
    else:
        print_success(f"Completed: {summary}")


def print_next_steps(steps: Iterable[str]) -> None:
    lines = [f"[{NordColors.FROST_2}]{i}.[/] {step}" for i, step in enumerate(steps, 1)]
    console.print(
        Panel(
            "\n".join(lines),
            title="Next Steps",
            title_align="left",
            border_style=f"{NordColors.FROST_1}",
            padding=(1, 2),
        )
    )


def plan_table(tasks: Sequence[Task]) -> Table:
    """Table listing the ordered plan."""
    table = Table(
        title="Provisioning Plan",
        title_style=f"bold {NordColors.FROST_1}",
        border_style=f"{NordColors.FROST_3}",
        box=box.ROUNDED,
    )
    table.add_column("#", justify="right", style=f"{NordColors.POLAR_NIGHT_4}")
    table.add_column("Task", style=f"bold {NordColors.FROST_2}")
    table.add_column("Policy")
    table.add_column("Depends on", style=f"{NordColors.FROST_3}")
    table.add_column("Description")

    for i, task in enumerate(tasks, 1):
        policy = task.failure_policy.value
        color = NordColors.RED if task.fatal else NordColors.YELLOW
        table.add_row(
            str(i),
            task.name,
            f"[{color}]{policy}[/{color}]",
            ", ".join(task.depends_on) or "-",
            task.description,
        )
    return table


def status_table(rows: List[tuple]) -> Table:
    """
    Table of check results for the ``status`` command.

    Args:
        rows: (task name, satisfied or None when the check errored, note)
    """
    table = Table(
        title="Current System State",
        title_style=f"bold {NordColors.FROST_1}",
        border_style=f"{NordColors.FROST_3}",
        box=box.ROUNDED,
    )
    table.add_column("Task", style=f"bold {NordColors.FROST_2}")
    table.add_column("State", style="bold")
    table.add_column("Note")
    for name, satisfied, note in rows:
        if satisfied is None:
            state = f"[{NordColors.RED}]UNKNOWN[/]"
        elif satisfied:
            state = f"[{NordColors.GREEN}]DONE[/]"
        else:
            state = f"[{NordColors.YELLOW}]PENDING[/]"
        table.add_row(name, state, escape(note))
    return table
