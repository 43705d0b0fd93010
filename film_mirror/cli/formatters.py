"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from film_mirror.models.stats import DownloadStats, ReconcileReport, SyncReport
from film_mirror.utils.formatting import format_duration, format_size


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `film-mirror init --force` to write a fresh default file.",
            "• stale_after must be larger than transfer_timeout.",
        ],
        "CatalogError": [
            "• Check that the database path is correct and writable.",
            "• Another program may hold an exclusive lock on the database.",
            "• Run `film-mirror init` if the database has never been created.",
        ],
        "DiskError": [
            "• Check that the download root exists and is writable.",
            "• Free up disk space or lower `min_free_space_mb`.",
        ],
        "ApiError": [
            "• The offstream.dk API may be temporarily unavailable.",
            "• Please try again in a few minutes.",
        ],
        "CircuitBreakerError": [
            "• The app has detected too many failures and is cooling down.",
            "• Check your internet connection.",
        ],
        "TimeoutError": [
            "• A request timed out, which may indicate network throttling.",
            "• Try reducing the number of `--workers`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the effective configuration."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in config_data.items())
    console.print(
        Panel(
            content,
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_status_table(stats_data: dict[str, int]):
    """Displays catalog counts by download state."""
    console = Console()
    table = Table(title="Catalog Status", box=box.SIMPLE_HEAVY)
    table.add_column("State", style="bold cyan")
    table.add_column("Films", justify="right")

    table.add_row("Downloaded", f"[green]{stats_data.get('downloaded', 0)}[/green]")
    table.add_row("In progress", f"[cyan]{stats_data.get('in_progress', 0)}[/cyan]")
    table.add_row("Pending", f"[yellow]{stats_data.get('pending', 0)}[/yellow]")
    table.add_row(
        "Permanently failed", f"[red]{stats_data.get('permanently_failed', 0)}[/red]"
    )
    table.add_row("Ineligible", f"[dim]{stats_data.get('ineligible', 0)}[/dim]")
    table.add_section()
    table.add_row("Total", f"[bold]{stats_data.get('films', 0)}[/bold]")
    console.print(table)


def print_reconcile_report(report: ReconcileReport):
    console = Console()
    if not report.total:
        console.print("[green]✓ No abandoned downloads found.[/green]")
        return
    if report.completed:
        console.print(
            f"[green]✓ Completed {len(report.completed)} download(s) whose file "
            f"was already in place:[/green] [dim]{report.completed}[/dim]"
        )
    if report.released:
        console.print(
            f"[yellow]↻ Released {len(report.released)} abandoned claim(s):"
            f"[/yellow] [dim]{report.released}[/dim]"
        )


def print_sync_report(report: SyncReport, duration_s: float):
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()
    table.add_row("Listed:", str(report.listed))
    table.add_row("Imported:", f"[green]{report.imported}[/green]")
    if report.failed:
        table.add_row("Failed:", f"[red]{report.failed}[/red]")
    table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")
    console.print(
        Panel(table, title="📚 [bold]Catalog Sync[/bold]", border_style="cyan", expand=False)
    )


def print_summary_panel(
    stats: DownloadStats,
    duration_s: float,
    progress_stats: dict | None = None,
    halt_reason: str | None = None,
):
    """
    Displays the final summary of a download run. ``halt_reason`` explains why
    new downloads were stopped; it is not stored in the catalog.
    """
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("✓ Completed:", f"[bold green]{stats.completed}[/bold green]")
    stats_table.add_row("↻ Retried:", f"[yellow]{stats.retried}[/yellow]")
    stats_table.add_row(
        "✗ Permanently failed:", f"[bold red]{stats.permanently_failed}[/bold red]"
    )
    stats_table.add_row("○ Skipped:", f"[yellow]{stats.skipped}[/yellow]")
    stats_table.add_row("✗ Failed:", f"[red]{stats.failed}[/red]")
    stats_table.add_row("◼ Interrupted:", f"[cyan]{stats.interrupted}[/cyan]")

    stats_table.add_row("", "")

    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.bytes_downloaded)}[/cyan]"
    )
    avg_speed = stats.bytes_downloaded / duration_s if duration_s > 0 else 0
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(int(avg_speed))}/s[/magenta]"
    )
    if stats.peak_speed_bps > 0:
        stats_table.add_row(
            "Peak Speed:",
            f"[magenta]{format_size(int(stats.peak_speed_bps))}/s[/magenta]",
        )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if progress_stats:
        stats_table.add_row("", "")
        stats_table.add_row(
            "Peak Concurrent:",
            f"[green]{progress_stats.get('peak_concurrent', 0)}[/green]",
        )

    if halt_reason:
        stats_table.add_row("", "")
        stats_table.add_row("■ Halted:", f"[bold red]{escape(halt_reason)}[/bold red]")
        stats_table.add_row(
            "",
            "[dim]Not recorded in the catalog; the affected films stay eligible\n"
            "and are picked up again once the problem is fixed.[/dim]",
        )

    if halt_reason:
        title, border_color = "🎬 [bold]Download Halted[/bold]", "red"
    elif stats.failed or stats.permanently_failed:
        title, border_color = "🎬 [bold]Download Finished With Errors[/bold]", "red"
    elif stats.interrupted:
        title, border_color = "🎬 [bold]Download Interrupted[/bold]", "yellow"
    else:
        title, border_color = "🎬 [bold]Download Complete![/bold]", "green"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=title,
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
