"""Console rendering: live event lines and end-of-run summaries."""

import threading
from typing import Dict, List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .engine.events import EventBus, EventType, OrchestratorEvent
from .models import LoopResult, Task
from .parallel.coordinator import ParallelResult
from .state.snapshots import StepStatus, TaskSnapshot, WorkflowSnapshot
from .state.store import Snapshot
from .workflow.definition import WorkflowDefinition
from .workflow.runner import WorkflowResult
from .workflow.scheduler import ValidationResult

ACCENT = "#7FA6D9"
BORDER = "#3A4A5C"
DIM = "dim"
SUCCESS = "#57DB9C"
WARN = "#D9C27F"
ERROR = "#D97F7F"
INFO = "#7FD9D9"

# Status display: (icon, color)
_STATUS_DISPLAY = {
    "completed": ("✓", SUCCESS),
    "running": ("▸", INFO),
    "pending": ("○", DIM),
    "failed": ("✗", ERROR),
    "error": ("✗", ERROR),
    "skipped": ("–", DIM),
    "interrupted": ("‖", WARN),
    "halted": ("‖", WARN),
    "budget_exceeded": ("$", WARN),
    "max_iterations_reached": ("↻", WARN),
}


def _status_markup(value: str) -> str:
    icon, color = _STATUS_DISPLAY.get(value, ("?", DIM))
    return f"[{color}]{icon} {value}[/{color}]"


def _brief(text: Optional[str], limit: int = 80) -> str:
    if not text:
        return "-"
    first = text.strip().splitlines()[0] if text.strip() else ""
    return first if len(first) <= limit else first[:limit - 1] + "…"


def _money(value: Optional[float]) -> str:
    return "-" if value is None else f"${value:.4f}"


class ProgressPrinter:
    """Prints one line per orchestrator event."""

    def __init__(self, console: Console, verbose: bool = False):
        self.console = console
        self.verbose = verbose
        self._lock = threading.Lock()

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.on_event)

    def _print(self, markup: str) -> None:
        with self._lock:
            self.console.print(f"  {markup}")

    def on_event(self, event: OrchestratorEvent) -> None:
        label = f"[bold]{event.label}[/bold]" if event.label else ""
        if event.type is EventType.STARTED:
            resumed = " (resumed)" if event.data.get("resumed") else ""
            self._print(f"[{INFO}]▸ started[/{INFO}] {label}{resumed}")
        elif event.type is EventType.ITERATION_STARTED:
            if self.verbose:
                self._print(f"[{DIM}]… {event.label} iteration {event.iteration}[/{DIM}]")
        elif event.type is EventType.ITERATION_COMPLETED:
            spent = event.data.get("iteration_cost_usd", 0.0)
            self._print(
                f"[{DIM}]• {event.label} iteration {event.iteration} "
                f"+{_money(spent)} (total {_money(event.cost_usd)})[/{DIM}]"
            )
        elif event.type is EventType.TASK_COMPLETED:
            self._print(
                f"[{SUCCESS}]✓ completed[/{SUCCESS}] {label} "
                f"[{DIM}]{event.iteration} iteration(s), {_money(event.cost_usd)}[/{DIM}]"
            )
        elif event.type is EventType.TASK_FAILED:
            self._print(f"[{ERROR}]✗ failed[/{ERROR}] {label} [{ERROR}]{_brief(event.message)}[/{ERROR}]")
        elif event.type is EventType.LOOP_ERROR:
            self._print(f"[{ERROR}]! executor error[/{ERROR}] {label} {_brief(event.message)}")
        elif event.type is EventType.TASK_SKIPPED:
            self._print(f"[{DIM}]– skipped {event.label}: {event.message}[/{DIM}]")
        elif event.type is EventType.HALTED:
            self._print(f"[{WARN}]‖ interrupted[/{WARN}] {label} [{DIM}]{event.message}[/{DIM}]")


# ── Summaries ───────────────────────────────────────────────


def _result_table() -> Table:
    table = Table(show_header=True, header_style=f"bold {ACCENT}", border_style=BORDER, padding=(0, 1))
    table.add_column("Task", style="bold", min_width=10)
    table.add_column("Status", min_width=12)
    table.add_column("Iter", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Error", min_width=20)
    return table


def render_loop_result(console: Console, task: Task, result: LoopResult) -> None:
    table = _result_table()
    table.add_row(task.label, _status_markup(result.status.value), str(result.iteration),
                  _money(result.cost_usd), _brief(result.error))
    footer = f"[{DIM}]tokens in/out: {result.usage.input:,}/{result.usage.output:,} · {result.elapsed_seconds:.1f}s"
    if result.snapshot_failures:
        footer += f" · [{WARN}]{result.snapshot_failures} snapshot write(s) failed[/{WARN}]"
    footer += f"[/{DIM}]"
    console.print(Panel(table, title=f"[bold {ACCENT}] Task {task.short_id} [/bold {ACCENT}]",
                        title_align="left", border_style=BORDER, padding=(0, 1)))
    console.print(f"  {footer}")
    if not result.succeeded:
        console.print(f"  [{DIM}]Resume with: looprunner resume {task.short_id}[/{DIM}]")


def render_parallel_result(console: Console, tasks: Sequence[Task], result: ParallelResult) -> None:
    table = _result_table()
    skipped = set(result.skipped)
    not_started = set(result.not_started)
    for task in tasks:
        loop = result.results.get(task.id)
        if loop is not None:
            table.add_row(task.label, _status_markup(loop.status.value), str(loop.iteration),
                          _money(loop.cost_usd), _brief(loop.error))
        elif task.id in skipped:
            table.add_row(task.label, _status_markup("skipped"), "0", "-", "-")
        elif task.id in not_started:
            table.add_row(task.label, _status_markup("pending"), "0", "-", "not started")
    counts = f"{result.succeeded}/{len(tasks)} completed"
    if result.failed:
        counts += f" · {result.failed} failed"
    if result.interrupted:
        counts += f" · {result.interrupted} interrupted"
    title = (f"[bold {ACCENT}] Parallel run · {counts} · "
             f"{_money(result.total_cost_usd)} [/bold {ACCENT}]")
    console.print(Panel(table, title=title, title_align="left", border_style=BORDER, padding=(0, 1)))
    if result.halted_early:
        console.print(f"  [{WARN}]Halted early: {result.halt_reason}[/{WARN}]")


def render_workflow_result(console: Console, result: WorkflowResult) -> None:
    table = Table(show_header=True, header_style=f"bold {ACCENT}", border_style=BORDER, padding=(0, 1))
    table.add_column("Step", style="bold", min_width=12)
    table.add_column("Status", min_width=12)
    table.add_column("Model")
    table.add_column("Iter", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Error", min_width=20)
    for name, record in result.steps.items():
        note = "" if name in result.results or record.status is not StepStatus.COMPLETED else " [dim](earlier run)[/dim]"
        table.add_row(name, _status_markup(record.status.value) + note, record.model,
                      str(record.iterations), _money(record.cost_usd), _brief(record.error))
    title = (f"[bold {ACCENT}] Workflow {result.name} · {result.status.value} · "
             f"{_money(result.total_cost_usd)} [/bold {ACCENT}]")
    console.print(Panel(table, title=title, title_align="left", border_style=BORDER, padding=(0, 1)))
    if result.halted_early:
        console.print(f"  [{WARN}]Halted early: {result.halt_reason}[/{WARN}]")
    if not result.succeeded:
        console.print(f"  [{DIM}]Resume with: looprunner resume {result.short_id}[/{DIM}]")


def render_validation(console: Console, definition: Optional[WorkflowDefinition],
                      result: ValidationResult) -> None:
    if not result.valid:
        for err in result.errors:
            console.print(f"  [{ERROR}]✗ {err}[/{ERROR}]")
        for warning in result.warnings:
            console.print(f"  [{WARN}]! {warning}[/{WARN}]")
        return

    models: Dict[str, str] = {}
    if definition is not None:
        models = {s.name: definition.step_model(s) for s in definition.steps}
        console.print(f"  [{SUCCESS}]✓ {definition.name}[/{SUCCESS}] "
                      f"[{DIM}]{len(definition.steps)} step(s), "
                      f"{len(result.groups)} execution group(s)[/{DIM}]")
    for k, group in enumerate(result.groups):
        steps = ", ".join(f"{name} [{DIM}]({models.get(name, '?')})[/{DIM}]" for name in group)
        console.print(f"  [{ACCENT}]group {k}[/{ACCENT}] {steps}")
    for warning in result.warnings:
        console.print(f"  [{WARN}]! {warning}[/{WARN}]")


def render_snapshots(console: Console, snapshots: List[Snapshot], title: str) -> None:
    if not snapshots:
        console.print(f"  [{DIM}]Nothing to show.[/{DIM}]")
        return
    table = Table(show_header=True, header_style=f"bold {ACCENT}", border_style=BORDER, padding=(0, 1))
    table.add_column("ID", style="bold")
    table.add_column("Kind")
    table.add_column("Name / prompt", min_width=24)
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Updated")
    for snap in snapshots:
        if isinstance(snap, TaskSnapshot):
            name = snap.name or _brief(snap.prompt, 40)
            progress = f"{snap.iteration}/{snap.max_iterations}"
            cost = snap.cost_usd
        elif isinstance(snap, WorkflowSnapshot):
            name = snap.name
            done = sum(1 for s in snap.steps.values() if s.status is StepStatus.COMPLETED)
            progress = f"{done}/{len(snap.steps)} steps"
            cost = snap.total_cost_usd
        else:
            continue
        table.add_row(snap.short_id, snap.kind, name, _status_markup(snap.status.value),
                      progress, _money(cost), snap.updated_at.strftime("%Y-%m-%d %H:%M"))
    console.print(Panel(table, title=f"[bold {ACCENT}] {title} [/bold {ACCENT}]",
                        title_align="left", border_style=BORDER, padding=(0, 1)))
