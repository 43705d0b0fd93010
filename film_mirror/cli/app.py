"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Coroutine
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from film_mirror import __version__
from film_mirror.api.client import OffstreamAPIClient
from film_mirror.api.locator import AssetLocator
from film_mirror.core.catalog_sync import CatalogImporter
from film_mirror.core.coordinator import DownloadCoordinator
from film_mirror.core.reconciler import StatusReconciler
from film_mirror.exceptions import FilmMirrorError
from film_mirror.media.downloader import Downloader
from film_mirror.models.config import MirrorConfig
from film_mirror.storage.catalog import CatalogStore
from film_mirror.storage.config_manager import ConfigManager
from film_mirror.utils.path import ensure_writable_dir
from film_mirror.utils.structured_logger import create_event_logger

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_reconcile_report,
    print_status_table,
    print_summary_panel,
    print_sync_report,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("film_mirror")

app = typer.Typer(
    name="film-mirror",
    help=(
        "Mirror the offstream.dk film catalog into a local database and download"
        " every available film. Use 'film-mirror <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "film-mirror"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(ctx: typer.Context, **overrides: Any) -> MirrorConfig:
    """Loads the INI file and applies the global and command-level overrides."""
    options = ctx.obj or {}
    cli_options = {"database_path": options.get("database"), **overrides}
    config_file = options.get("config_file", CONFIG_FILE)
    return ConfigManager(config_file).load_config(cli_options)


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Runs a command coroutine, rendering application errors as a panel."""
    try:
        return asyncio.run(coro)
    except FilmMirrorError as e:
        console.print(format_error_with_suggestions(e))
        log.debug("Full traceback:", exc_info=True)
        raise typer.Exit(code=1) from e


@contextmanager
def _shutdown_on_signals(shutdown_event: asyncio.Event):
    """Sets ``shutdown_event`` on SIGINT/SIGTERM so workers stop after a chunk."""
    loop = asyncio.get_running_loop()
    installed = []

    def request_shutdown() -> None:
        if not shutdown_event.is_set():
            console.print(
                "\n[yellow]⚠️  Shutdown requested, finishing current chunks...[/yellow]"
            )
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v for info, -vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
    database: str | None = typer.Option(
        None,
        "--database",
        envvar="DATABASE_PATH",
        help="Path to the SQLite catalog (overrides the config file).",
    ),
    config_file: Path = typer.Option(
        CONFIG_FILE,
        "--config",
        envvar="FILM_MIRROR_CONFIG",
        help="Path to the INI configuration file.",
    ),
):
    """Film Mirror CLI"""
    if version:
        console.print(f"[bold]film-mirror[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose == 1:
        log_level = "INFO"
    elif verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("film_mirror").setLevel(log_level)

    ctx.obj = {"database": database, "config_file": config_file}

    if show_config:
        try:
            config = _load_config(ctx)
        except FilmMirrorError as e:
            console.print(format_error_with_suggestions(e))
            raise typer.Exit(code=1) from e
        print_config(config_file, config.model_dump(exclude={"config_path"}))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    ctx: typer.Context,
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Write a default configuration file and create the catalog database."""
    config_file: Path = ctx.obj["config_file"]
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    async def _init_async():
        settings = {}
        if ctx.obj.get("database"):
            settings["database_path"] = ctx.obj["database"]
        ConfigManager(config_file).save_new_config(settings)
        console.print(f"[bold green]✓ Configuration saved to '{config_file}'[/bold green]")

        config = _load_config(ctx)
        CatalogStore(Path(config.database_path))
        console.print(
            f"[green]✓ Catalog database ready at '{config.database_path}'[/green]"
        )
        console.print("Next: [cyan]film-mirror sync[/cyan] to import the catalog.")

    _run(_init_async())


@app.command()
def sync(ctx: typer.Context):
    """Import films from offstream.dk that are missing from the catalog."""

    async def _sync_async():
        config = _load_config(ctx)
        store = CatalogStore(Path(config.database_path))
        shutdown_event = asyncio.Event()
        console.print("[bold cyan]📚 Syncing catalog...[/bold cyan]")
        start_time = time.monotonic()
        async with OffstreamAPIClient() as client:
            importer = CatalogImporter(
                client, store, config.request_delay, shutdown_event
            )
            with _shutdown_on_signals(shutdown_event):
                report = await importer.sync()
        print_sync_report(report, time.monotonic() - start_time)

    _run(_sync_async())


@app.command(name="download")
def download_command(
    ctx: typer.Context,
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous downloads."
    ),
    max_retries: int | None = typer.Option(
        None,
        "--max-retries",
        help="Consecutive failures before a film is marked permanently failed.",
    ),
    stale_after: str | None = typer.Option(
        None,
        "--stale-after",
        help="Age after which an unfinished claim is abandoned (e.g. 90m, 2h).",
    ),
    root: Path | None = typer.Option(
        None, "--root", help="Directory the films are downloaded to."
    ),
    verify_media: bool | None = typer.Option(
        None,
        "--verify/--no-verify",
        help="Check that each file is a playable MP4 before accepting it.",
    ),
    thumbnails: bool | None = typer.Option(
        None,
        "--thumbnails/--no-thumbnails",
        help="Also download each film's largest thumbnail.",
    ),
    once: bool = typer.Option(
        False, "--once", help="Run a single pass instead of waiting out retries."
    ),
):
    """Download every eligible film that has not been downloaded yet."""

    async def _download_async():
        config = _load_config(
            ctx,
            concurrency=workers,
            max_retries=max_retries,
            stale_after=stale_after,
            download_root=str(root) if root else None,
            verify_media=verify_media,
            download_thumbnails=thumbnails,
        )
        store = CatalogStore(Path(config.database_path))
        ensure_writable_dir(Path(config.download_root))

        reconciler = StatusReconciler(store, config.stale_after, config.verify_media)
        report = await reconciler.reconcile()
        if report.total:
            print_reconcile_report(report)

        event_logger = (
            create_event_logger(Path(config.config_path) / "logs")
            if config.event_log
            else None
        )
        if event_logger:
            event_logger.logger.set_session_context(
                download_root=config.download_root, concurrency=config.concurrency
            )
        locator = AssetLocator()
        downloader = Downloader(
            timeout=config.transfer_timeout,
            verify_media=config.verify_media,
            max_workers=config.concurrency,
        )
        shutdown_event = asyncio.Event()

        console.print("[bold cyan]🎬 Starting download session...[/bold cyan]")
        start_time = time.monotonic()
        try:
            async with ProgressManager(
                console=console, enabled=console.is_terminal
            ) as progress_manager:
                progress_manager.initialize_session()
                coordinator = DownloadCoordinator(
                    config,
                    store,
                    locator,
                    downloader,
                    shutdown_event=shutdown_event,
                    progress_manager=progress_manager,
                    reconciler=reconciler,
                    event_logger=event_logger,
                )
                with _shutdown_on_signals(shutdown_event):
                    stats = await coordinator.run(until_idle=not once)
                progress_stats = progress_manager.get_statistics()
        finally:
            await downloader.close()
            await locator.close()
            if event_logger:
                event_logger.logger.close()

        print_summary_panel(
            stats,
            time.monotonic() - start_time,
            progress_stats,
            halt_reason=coordinator.halt_reason,
        )
        if coordinator.halted:
            raise typer.Exit(code=1)

    _run(_download_async())


@app.command()
def reconcile(
    ctx: typer.Context,
    stale_after: str | None = typer.Option(
        None,
        "--stale-after",
        help="Age after which an unfinished claim is abandoned (e.g. 90m, 2h).",
    ),
):
    """Complete or release download claims abandoned by crashed runs."""

    async def _reconcile_async():
        config = _load_config(ctx, stale_after=stale_after)
        store = CatalogStore(Path(config.database_path))
        reconciler = StatusReconciler(store, config.stale_after, config.verify_media)
        print_reconcile_report(await reconciler.reconcile())

    _run(_reconcile_async())


@app.command()
def status(ctx: typer.Context):
    """Show how many films are downloaded, pending or failed."""

    async def _status_async():
        config = _load_config(ctx)
        store = CatalogStore(Path(config.database_path))
        print_status_table(await store.get_stats())

    _run(_status_async())


@app.command()
def reset(
    ctx: typer.Context,
    film_id: int | None = typer.Argument(
        None, help="Only reset this film (default: all permanently failed films)."
    ),
):
    """Make permanently failed films eligible for download again."""

    async def _reset_async():
        config = _load_config(ctx)
        store = CatalogStore(Path(config.database_path))
        count = await store.reset_failed(film_id)
        if count:
            console.print(f"[green]✓ Reset {count} film(s) to available.[/green]")
        else:
            console.print("[yellow]No permanently failed films to reset.[/yellow]")

    _run(_reset_async())


@app.command()
def vacuum(ctx: typer.Context):
    """Optimize the catalog database."""

    async def _vacuum_async():
        config = _load_config(ctx)
        console.print("[cyan]Optimizing catalog database...[/cyan]")
        store = CatalogStore(Path(config.database_path))
        await store.vacuum()
        console.print("[green]✓ Database optimized.[/green]")

    _run(_vacuum_async())
