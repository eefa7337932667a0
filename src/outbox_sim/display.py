"""Terminal rendering for outbox-sim.

The runner writes counters into a ``SimulationState``; everything here only
reads it. Panels are plain functions of the state so they can be printed
to any Rich console, live or not.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

MAX_THREAD_ROWS = 8
MAX_BLOCKED_ROWS = 4
MAX_EVENT_ROWS = 5

EVENT_COLORS = {
    "queued": "dim",
    "started": "yellow",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "magenta",
    "violation": "bold red",
    "timeout": "bold yellow",
}


@dataclass
class ThreadStatus:
    """Per-conversation counters, rebuilt by the runner from the queue on each tick."""

    name: str
    running_kind: str | None = None
    queued: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total_processed(self) -> int:
        return self.succeeded + self.failed + self.cancelled


@dataclass
class EventRecord:
    timestamp: datetime
    event_type: str
    task_id: str
    task_kind: str | None = None
    details: str = ""


@dataclass
class SimulationState:
    """Shared view of a running simulation."""

    submitted: int = 0
    queued: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0

    start_time: float = 0.0
    elapsed: float = 0.0

    threads: dict[str, ThreadStatus] = field(default_factory=dict)
    max_parallel: int = 2

    # Newest first, bounded by max_events
    events: deque[EventRecord] = field(default_factory=deque)
    max_events: int = 10

    # Echo of the SimConfig, for the footer
    target_count: int = 0
    latency_ms: int = 0
    latency_jitter: float = 0.2
    outlier_chance: float = 0.0
    error_rate: float = 0.0
    scenario_name: str = "mixed"

    violations: list[str] = field(default_factory=list)
    # Filled from TaskQueue.debug_blocked() while the queue looks stuck
    blocked_info: list[dict] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.events = deque(self.events, maxlen=self.max_events)

    @property
    def finished(self) -> int:
        return self.succeeded + self.failed + self.cancelled

    @property
    def active_threads(self) -> int:
        return sum(1 for t in self.threads.values() if t.running_kind)

    @property
    def throughput(self) -> float:
        """Successful tasks per second of elapsed time."""
        return self.succeeded / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def progress(self) -> float:
        """Finished share of submitted tasks, 0.0 to 1.0."""
        return self.finished / self.submitted if self.submitted > 0 else 0.0

    @property
    def stalled(self) -> bool:
        return bool(self.blocked_info) and self.running == 0 and self.queued > 0

    def add_event(
        self, event_type: str, task_id: str, task_kind: str | None = None, details: str = ""
    ) -> None:
        self.events.appendleft(EventRecord(datetime.now(), event_type, task_id, task_kind, details))


def _counter(label: str, value: object, style: str = "bold") -> str:
    return f"[dim]{label}[/dim] [{style}]{value}[/{style}]"


def queue_panel(s: SimulationState) -> Panel:
    counts = Table.grid(expand=True, padding=(0, 2))
    counts.add_row(
        _counter("Queued", f"{s.queued:,}"),
        _counter("Running", s.running, "bold yellow"),
        _counter("Succeeded", f"{s.succeeded:,}", "bold green"),
        _counter("Failed", s.failed, "bold red"),
        _counter("Cancelled", s.cancelled, "bold magenta"),
    )

    usage = s.active_threads / s.max_parallel if s.max_parallel else 0.0
    busy = "red" if usage >= 0.9 else "yellow" if usage >= 0.7 else "green"
    meter = Table.grid(padding=(0, 1))
    meter.add_row(
        Text("Threads", style="dim"),
        ProgressBar(total=1.0, completed=min(usage, 1.0), width=8, complete_style=busy),
        Text(f"{s.active_threads}/{s.max_parallel}"),
    )

    rates = Table.grid(expand=True, padding=(0, 2))
    rates.add_row(
        meter,
        _counter("Progress", f"{s.progress:.0%}"),
        _counter("Throughput", f"{s.throughput:.1f}/s"),
    )
    return Panel(Group(counts, rates), title="[bold]Queue[/bold]", border_style="blue")


def _processed_cell(thread: ThreadStatus) -> str:
    parts = [f"[green]{thread.succeeded}[/green]"]
    if thread.failed:
        parts.append(f"[red]{thread.failed}[/red]")
    if thread.cancelled:
        parts.append(f"[magenta]{thread.cancelled}[/magenta]")
    return "/".join(parts)


def threads_panel(s: SimulationState) -> Panel:
    table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
    table.add_column(width=14)
    table.add_column(width=20)
    table.add_column(width=8, justify="right")
    table.add_column(width=14, justify="right")

    # Running threads on top, then by backlog
    rows = sorted(s.threads.values(), key=lambda t: (t.running_kind is None, -t.queued, t.name))
    for thread in rows[:MAX_THREAD_ROWS]:
        activity = f"[yellow]▶ {thread.running_kind}[/yellow]" if thread.running_kind else "[dim]idle[/dim]"
        table.add_row(f"[bold]{thread.name[:14]}[/bold]", activity, str(thread.queued), _processed_cell(thread))

    hidden = len(rows) - MAX_THREAD_ROWS
    if not rows:
        table.add_row("[dim]No tasks yet[/dim]")
    elif hidden > 0:
        table.add_row(f"[dim]+{hidden} more[/dim]")
    return Panel(table, title="[bold]Threads[/bold]", border_style="blue")


def blocked_panel(s: SimulationState) -> Panel:
    table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
    table.add_column(width=18)
    table.add_column(width=12)
    table.add_column(ratio=1)

    for item in s.blocked_info[:MAX_BLOCKED_ROWS]:
        task = item.get("task")
        reason = item.get("reason", "unknown")
        color = "yellow" if reason == "thread_busy" else "blue"
        table.add_row(
            f"[bold]{task.kind.value if task else '?'}[/bold]",
            f"[{color}]{reason}[/{color}]",
            Text(item.get("details", "")[:50], style="dim"),
        )

    extra = len(s.blocked_info) - MAX_BLOCKED_ROWS
    if extra > 0:
        table.add_row("", "", f"[dim]... and {extra} more[/dim]")
    return Panel(table, title="[bold yellow]⚠ Blocked Tasks[/bold yellow]", border_style="yellow")


def events_panel(s: SimulationState) -> Panel:
    table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
    table.add_column(width=10, style="dim")
    table.add_column(width=11)
    table.add_column(width=10)
    table.add_column(width=18)
    table.add_column()

    shown = list(s.events)[:MAX_EVENT_ROWS]
    for event in shown:
        color = EVENT_COLORS.get(event.event_type, "white")
        table.add_row(
            f"{event.timestamp:%H:%M:%S}",
            f"[{color}]{event.event_type}[/{color}]",
            event.task_id[:8],
            event.task_kind or "",
            event.details[:30],
        )
    if not shown:
        table.add_row("[dim]No events yet[/dim]")
    return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")


def settings_panel(s: SimulationState) -> Panel:
    footer = Text.assemble(
        ("Latency ", "dim"),
        (f"{s.latency_ms}ms", "bold"),
        (f" ±{s.latency_jitter:.0%}" if s.latency_jitter > 0 else "", "dim"),
    )
    if s.outlier_chance > 0:
        footer.append("   Outliers ", style="dim")
        footer.append(f"{s.outlier_chance:.0%}", style="bold yellow")
    footer.append("   Errors ", style="dim")
    footer.append(f"{s.error_rate:.0%}", style="bold red" if s.error_rate > 0 else "bold")
    footer.append("   Tasks ", style="dim")
    footer.append(f"{s.target_count:,}", style="bold")
    footer.append("     Ctrl+C stops the run", style="dim")
    return Panel(footer, title="[bold]Config[/bold]", border_style="dim")


class SimulatorDisplay:
    """Live Rich view of a ``SimulationState``; use as a context manager."""

    def __init__(self, state: SimulationState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SimulatorDisplay:
        self._live = Live(self._build_layout(), console=self.console, refresh_per_second=10)
        self._live.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def refresh(self) -> None:
        if self._live is not None:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        s = self.state
        rows = [
            Layout(queue_panel(s), name="queue", size=4),
            Layout(threads_panel(s), name="threads", size=3 + max(min(len(s.threads), MAX_THREAD_ROWS), 1)),
        ]
        if s.stalled:
            rows.append(Layout(blocked_panel(s), name="blocked", size=2 + min(len(s.blocked_info), MAX_BLOCKED_ROWS)))
        rows.append(Layout(events_panel(s), name="events", size=2 + MAX_EVENT_ROWS))
        rows.append(Layout(settings_panel(s), name="settings", size=3))

        layout = Layout()
        layout.split_column(*rows)
        return Panel(
            layout,
            title=f"[bold cyan]outbox-sim[/bold cyan] [dim]{s.scenario_name}[/dim]",
            border_style="cyan",
        )


def print_simple_stats(state: SimulationState) -> None:
    """Overwrite the current terminal line with a one-line progress report."""
    s = state
    line = (
        f"[{s.finished}/{s.submitted}] Q:{s.queued} R:{s.running} "
        f"✓:{s.succeeded} ✗:{s.failed} ⊘:{s.cancelled} "
        f"({s.progress:.0%}) {s.throughput:.1f}/s"
    )
    print("\r" + line, end="", flush=True)


def print_final_summary(state: SimulationState, console: Console | None = None) -> None:
    console = console or Console()
    rows = [
        ("Scenario", state.scenario_name),
        ("Submitted", str(state.submitted)),
        ("Succeeded", f"[green]{state.succeeded}[/green]"),
        ("Failed", f"[red]{state.failed}[/red]" if state.failed else "0"),
        ("Cancelled", str(state.cancelled)),
        ("Conversations", str(len(state.threads))),
        ("Duration", f"{state.elapsed:.2f}s"),
        ("Throughput", f"{state.throughput:.2f}/s"),
    ]
    if state.violations:
        rows.append(("Ordering violations", f"[bold red]{len(state.violations)}[/bold red]"))

    table = Table(title="Simulation Results", show_header=False, border_style="green")
    table.add_column(style="dim")
    table.add_column(style="bold")
    for label, value in rows:
        table.add_row(label, value)

    console.print()
    console.print(table)
