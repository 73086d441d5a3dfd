# display.py
# All operator-facing terminal output.
#
# The orchestrator never formats strings for humans. It calls named
# functions here. Library diagnostics go through the logging module; this
# module only installs the rich handler for them.
#
# Colour language:
#   cyan    : phase routing events
#   yellow  : checklist and kill-switch checkpoints
#   green   : approvals and completed phases
#   red     : vetoes, rejections, halts
#   magenta : planner tool calls

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from phase_guard.models import ExecutablePlan, PhaseResult, PhaseStatus, RunResult, ToolResult

console = Console()

_STATUS_COLOURS = {
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.APPROVED: "green",
    PhaseStatus.REJECTED: "red",
    PhaseStatus.TIMEOUT: "yellow",
    PhaseStatus.MAX_ITERATIONS: "yellow",
    PhaseStatus.VERIFICATION_FAILED: "red",
    PhaseStatus.ERROR: "red",
    PhaseStatus.HALTED: "red",
}


def setup_logging(level: int | str = logging.INFO) -> None:
    """Route library logging through rich. Safe to call more than once."""
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, rich_tracebacks=True, show_path=False))
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


def run_start(task: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW TRADE RUN[/cyan]", style="cyan"))
    console.print(Panel(f"[white]{task}[/white]", title=_label("TASK", "cyan"), border_style="cyan", padding=(0, 2)))


def phase_start(phase: str, max_iterations: int, timeout: float) -> None:
    console.print()
    console.print(
        _label("PHASE", "cyan"),
        f"[cyan] {phase}[/cyan] [dim](max {max_iterations} iteration(s), {timeout:g}s)[/dim]",
    )


def phase_end(result: PhaseResult) -> None:
    colour = _STATUS_COLOURS.get(result.status, "white")
    console.print(
        f"  [{colour}]{result.status.value}[/{colour}]  [dim]{_mono(result.reason, 160)}[/dim]"
    )


def tool_result(result: ToolResult) -> None:
    if result.ok:
        console.print(f"  [magenta]Call[/magenta]  [bold white]{result.tool}[/bold white]  [dim]{_mono(json.dumps(result.args, default=str), 100)}[/dim]")
        return
    colour = "red" if result.status == "rejected" else "yellow"
    console.print(f"  [{colour}]{result.status}[/{colour}]  [bold white]{result.tool}[/bold white]  [dim]{_mono(result.error or '', 160)}[/dim]")


def checklist_failed(phase: str, reason: str, action: str | None) -> None:
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]\n[dim]Action: {action}[/dim]",
            title=_label(f"CHECKLIST: {phase.upper()} ✗", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def executable_plan(plan: ExecutablePlan) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Field", style="dim")
    table.add_column("Value", style="white")
    table.add_row("Security", plan.security_id)
    table.add_row("Entry", f"{plan.entry_price:.2f}")
    table.add_row("Stop loss", f"{plan.stop_loss:.2f} ({plan.stop_loss_percent * 100:.1f}%)")
    table.add_row("Partial target", f"{plan.partial_target.price:.2f} ({plan.partial_target.rr:.2f}R)")
    table.add_row("Final target", f"{plan.final_target.price:.2f} ({plan.final_target.rr:.2f}R)")
    table.add_row("Quantity", f"{plan.quantity} ({plan.lots} x {plan.lot_size})")
    table.add_row("Total risk", f"{plan.total_risk:.2f}")
    console.print(Panel(table, title=_label("RISK APPROVED ✓", "green"), border_style="green", padding=(0, 1)))


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def run_summary(result: RunResult) -> None:
    console.print()
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", show_header=True, header_style="bold dim", padding=(0, 1))
    table.add_column("Phase", width=18)
    table.add_column("Status", width=20)
    table.add_column("Iter", justify="center", width=6)
    table.add_column("Reason", style="dim white")

    for name, phase in result.phases.items():
        colour = _STATUS_COLOURS.get(phase.status, "white")
        table.add_row(
            name,
            f"[{colour}]{phase.status.value}[/{colour}]",
            f"{phase.iterations}/{phase.max_iterations}",
            _mono(phase.reason, 60),
        )

    colour = "green" if result.final_status == "executed" else "red" if result.halted else "yellow"
    console.print(
        Panel(
            table,
            title=_label(f"RUN: {result.final_status}", colour),
            border_style=colour,
            padding=(0, 1),
        )
    )
