"""
Live terminal view of a download run: one line of session figures, the outcome
counters of the running coordinator and a progress bar per film in transfer.
"""

import time

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from rich.text import Text

from film_mirror.models.stats import DownloadStats
from film_mirror.utils.formatting import format_duration, format_size

_MAX_TITLE = 48


class ProgressManager:
    """
    Renders the state of a download run with Rich. The counters are read from
    the coordinator's ``DownloadStats`` on every refresh, so the manager only
    owns the per-film bars. With ``enabled=False`` every method is a no-op,
    which is how non-interactive runs and tests use it.
    """

    def __init__(self, console: Console, enabled: bool = True):
        self.console = console
        self.enabled = enabled
        self.stats: DownloadStats | None = None

        self.progress = Progress(
            SpinnerColumn("dots"),
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=24),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(compact=True),
            console=console,
            expand=False,
        )

        self._live: Live | None = None
        self._started: float | None = None
        self._selected = 0
        self._peak_concurrent = 0
        self._titles: dict[TaskID, str] = {}

    def attach_stats(self, stats: DownloadStats) -> None:
        self.stats = stats

    def initialize_session(self, selected: int = 0) -> None:
        self._started = time.monotonic()
        self._selected = selected

    def add_to_total(self, count: int) -> None:
        """Records films picked up by a selection pass."""
        self._selected += count

    def add_film_task(self, film_id: int, title: str) -> TaskID | None:
        if not self.enabled:
            return None
        if len(title) > _MAX_TITLE:
            title = title[: _MAX_TITLE - 1] + "…"
        description = f"[dim]#{film_id}[/dim] {title}"
        task_id = self.progress.add_task(description, total=None)
        self._titles[task_id] = description
        self._peak_concurrent = max(self._peak_concurrent, len(self.progress.tasks))
        return task_id

    def update_task_total(
        self, task_id: TaskID | None, total: int | None, resumed_from: int = 0
    ) -> None:
        """Sets the expected size once the response headers are known."""
        if task_id is None or not self.enabled:
            return
        self.progress.update(task_id, total=total, completed=resumed_from)
        if resumed_from:
            self.progress.update(
                task_id, description=f"{self._titles[task_id]} [yellow]↻[/yellow]"
            )

    def update_task_progress(self, task_id: TaskID | None, completed: int) -> None:
        if task_id is not None and self.enabled:
            self.progress.update(task_id, completed=completed)

    def remove_task(self, task_id: TaskID | None) -> None:
        if task_id is None or not self.enabled:
            return
        try:
            self.progress.remove_task(task_id)
        except KeyError:
            pass
        self._titles.pop(task_id, None)

    def get_statistics(self) -> dict:
        elapsed = time.monotonic() - self._started if self._started else 0.0
        return {
            "selected": self._selected,
            "peak_concurrent": self._peak_concurrent,
            "elapsed_s": elapsed,
        }

    def _render_summary(self) -> Table:
        stats = self.stats or DownloadStats()
        elapsed = self.get_statistics()["elapsed_s"]

        grid = Table.grid(padding=(0, 3))
        for _ in range(4):
            grid.add_column()
        grid.add_row(
            Text.from_markup(f"[bold cyan]⏱[/] {format_duration(elapsed)}"),
            Text.from_markup(
                f"[bold magenta]⚡[/] {format_size(int(stats.current_speed_bps))}/s"
            ),
            Text.from_markup(f"[bold]Σ[/] {format_size(stats.bytes_downloaded)}"),
            Text.from_markup(
                f"[cyan]{len(self.progress.tasks)}[/] active of "
                f"[cyan]{self._selected}[/] selected"
            ),
        )
        grid.add_row(
            Text.from_markup(f"[green]✓ {stats.completed}[/] done"),
            Text.from_markup(f"[yellow]↻ {stats.retried}[/] retried"),
            Text.from_markup(f"[dim]○ {stats.skipped}[/] skipped"),
            Text.from_markup(
                f"[red]✗ {stats.failed + stats.permanently_failed}[/] failed"
            ),
        )
        return grid

    def _render(self) -> Panel:
        if self.progress.tasks:
            bars = self.progress
        else:
            bars = Text("Waiting for the next film...", style="dim italic")
        return Panel(
            Group(self._render_summary(), Text(), bars),
            title="[bold cyan]🎬 Film Mirror[/bold cyan]",
            border_style="cyan",
        )

    async def __aenter__(self) -> "ProgressManager":
        if not self.enabled:
            return self
        self._live = Live(
            console=self.console,
            refresh_per_second=4,
            get_renderable=self._render,
            transient=True,
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._live:
            self._live.stop()
            self._live = None
