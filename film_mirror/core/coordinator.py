"""
The download coordinator: selects eligible films, claims them in the catalog and
drives each one through locating, transferring and recording the outcome.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from pathlib import Path

from rich.markup import escape

from film_mirror.api.locator import AssetLocator
from film_mirror.cli.progress_manager import ProgressManager
from film_mirror.core.reconciler import StatusReconciler
from film_mirror.exceptions import (
    CatalogError,
    ClaimConflict,
    DiskError,
    FilmMirrorError,
    NotAvailable,
    TransferInterrupted,
)
from film_mirror.media.downloader import Downloader
from film_mirror.models.catalog import EligibleFilm, FilmDownload, TransferResult
from film_mirror.models.config import MirrorConfig
from film_mirror.models.stats import DownloadStats
from film_mirror.storage.catalog import CatalogStore
from film_mirror.utils.formatting import format_size, utcnow
from film_mirror.utils.path import film_destination, free_space, thumbnail_destination
from film_mirror.utils.structured_logger import DownloadLogger

log = logging.getLogger(__name__)

_RESOLUTION = re.compile(r"(\d+)\D+(\d+)")


def _thumbnail_rank(resolution: str) -> int:
    """Orders thumbnail resolutions such as '1920x1080' or '640' by pixel count."""
    match = _RESOLUTION.search(resolution)
    if match:
        return int(match.group(1)) * int(match.group(2))
    digits = re.sub(r"\D", "", resolution)
    return int(digits) if digits else 0


class DownloadCoordinator:
    """
    Runs download passes over the catalog with a bounded number of concurrent
    transfers.

    Mutual exclusion between workers (and between processes) comes solely from the
    catalog's unique claim per film. Retry bookkeeping lives in memory: each
    retryable failure releases the claim and delays the film's next attempt with
    exponential backoff; after ``max_retries`` consecutive failures the film is
    marked permanently failed in the catalog.
    """

    def __init__(
        self,
        config: MirrorConfig,
        store: CatalogStore,
        locator: AssetLocator,
        downloader: Downloader,
        shutdown_event: asyncio.Event | None = None,
        progress_manager: ProgressManager | None = None,
        reconciler: StatusReconciler | None = None,
        event_logger: DownloadLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.locator = locator
        self.downloader = downloader
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.progress_manager = progress_manager
        self.reconciler = reconciler
        self.event_logger = event_logger
        self._clock = clock

        self.root = Path(config.download_root)
        self.stats = DownloadStats()
        if progress_manager:
            progress_manager.attach_stats(self.stats)
        self.semaphore = asyncio.Semaphore(config.concurrency)

        self._failures: dict[int, int] = {}
        self._retry_at: dict[int, float] = {}
        self._active: set[int] = set()
        self._halted = False
        self.halt_reason: str | None = None

    @property
    def halted(self) -> bool:
        """True once a host-level problem (disk) has stopped new claims."""
        return self._halted

    @property
    def active_ids(self) -> frozenset[int]:
        """Ids of films this coordinator currently holds claims for."""
        return frozenset(self._active)

    def failure_count(self, film_id: int) -> int:
        return self._failures.get(film_id, 0)

    def backoff_delay(self, failures: int) -> float:
        """Delay before the next attempt after ``failures`` consecutive failures."""
        return min(
            self.config.backoff_base * 2 ** (failures - 1), self.config.backoff_max
        )

    def _halt(self, reason: str) -> None:
        if not self._halted:
            log.error(f"[red]✗ Halting new downloads: {reason}[/red]")
            self.halt_reason = reason
        self._halted = True

    def _next_retry_delay(self) -> float | None:
        if not self._retry_at:
            return None
        return max(0.0, min(self._retry_at.values()) - self._clock())

    async def run(self, until_idle: bool = True) -> DownloadStats:
        """
        Runs selection passes. With ``until_idle`` the coordinator keeps going
        while films are waiting out a backoff, sleeping until the earliest one is
        due. Returns the accumulated statistics.
        """
        start = time.monotonic()
        stop_sweep = asyncio.Event()
        if self.reconciler and self.config.reconcile_interval > 0:
            self.reconciler.start_background(
                self.config.reconcile_interval,
                stop_sweep,
                exclude=lambda: self.active_ids,
            )

        try:
            while True:
                await self.run_pass()
                if not until_idle or self._halted or self.shutdown_event.is_set():
                    break
                delay = self._next_retry_delay()
                if delay is None:
                    break
                log.info(
                    f"Waiting {delay:.0f}s for {len(self._retry_at)} film(s) "
                    "in backoff..."
                )
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            stop_sweep.set()
            if self.reconciler:
                await self.reconciler.stop_background()
            if self.event_logger:
                self.event_logger.run_completed(
                    time.monotonic() - start, **self.stats.as_counts()
                )
        return self.stats

    async def run_pass(self) -> DownloadStats:
        """Performs exactly one selection pass over the eligible films."""
        if self._halted or self.shutdown_event.is_set():
            return self.stats

        films = await self.store.get_eligible_films()
        eligible_ids = {film.id for film in films}
        # Films that vanished from selection (finished or claimed elsewhere) no
        # longer need a retry slot.
        for film_id in list(self._retry_at):
            if film_id not in eligible_ids:
                del self._retry_at[film_id]

        now = self._clock()
        ready = [
            film
            for film in films
            if film.id not in self._active and self._retry_at.get(film.id, 0) <= now
        ]
        log.debug(f"Selected {len(ready)} of {len(films)} eligible film(s).")
        if self.progress_manager:
            self.progress_manager.add_to_total(len(ready))

        async def worker(film: EligibleFilm) -> None:
            async with self.semaphore:
                if self._halted or self.shutdown_event.is_set():
                    return
                try:
                    await self.process_film(film)
                except Exception as e:
                    # Catalog bookkeeping failed; the other workers keep going.
                    self.stats.failed += 1
                    self._record_failure_event(film.id, e, retryable=True)
                    log.error(f"  [red]✗ Failed:[/] film {film.id} ({e})")
                    log.debug(f"Error while processing film {film.id}", exc_info=True)

        await asyncio.gather(*(worker(film) for film in ready))
        return self.stats

    async def _has_free_space(self) -> bool:
        floor = self.config.min_free_space_mb * 1024 * 1024
        if not floor:
            return True
        try:
            available = await asyncio.to_thread(free_space, self.root)
        except OSError as e:
            self._halt(f"cannot inspect download root '{self.root}': {e}")
            return False
        if available < floor:
            self._halt(
                f"only {format_size(available)} free in '{self.root}' "
                f"(minimum {format_size(floor)})."
            )
            return False
        return True

    def _skip(self, film_id: int, reason: str) -> None:
        self.stats.skipped += 1
        self._retry_at.pop(film_id, None)
        if self.event_logger:
            self.event_logger.film_skipped(film_id, reason)
        log.debug(f"Skipping film {film_id}: {reason}")

    async def process_film(self, film: EligibleFilm) -> None:
        """Claims, transfers and records a single film."""
        film_id = film.id
        if not await self._has_free_space():
            return

        destination = film_destination(self.root, film_id)
        try:
            claim = await self.store.claim_download(film_id, str(destination), utcnow())
        except (ClaimConflict, NotAvailable) as e:
            self._skip(film_id, str(e))
            return

        self._active.add(film_id)
        title = escape(film.film.title or f"Film {film_id}")
        if self.event_logger:
            self.event_logger.film_claimed(film_id, str(destination))
        task_id = (
            self.progress_manager.add_film_task(film_id, title)
            if self.progress_manager
            else None
        )
        started = time.monotonic()
        try:
            try:
                source = await self.locator.resolve(film.status)
                result = await self.downloader.transfer(
                    source,
                    destination,
                    shutdown_event=self.shutdown_event,
                    stats=self.stats,
                    progress_manager=self.progress_manager,
                    task_id=task_id,
                )
            except TransferInterrupted as e:
                self.stats.interrupted += 1
                log.info(f"  [yellow]◼ Interrupted:[/] {title} ({e})")
                return
            except NotAvailable as e:
                await self.store.release_claim(film_id, claim)
                self._skip(film_id, str(e))
                return
            except DiskError as e:
                await self.store.release_claim(film_id, claim)
                self.stats.failed += 1
                self._record_failure_event(film_id, e, retryable=False)
                log.error(f"  [red]✗ Failed:[/] {title} ({e})")
                self._halt(str(e))
                return
            except Exception as e:
                await self._handle_failure(film, claim, title, e)
                return

            elapsed = time.monotonic() - started
            await self._complete(film, claim, title, result, elapsed)
        except Exception:
            await self._abandon_claim(claim)
            raise
        finally:
            self._active.discard(film_id)
            if self.progress_manager:
                self.progress_manager.remove_task(task_id)

    async def _abandon_claim(self, claim: FilmDownload) -> None:
        """Releases a claim whose bookkeeping failed, unless it is already settled."""
        try:
            await self.store.release_claim(claim.film_id, claim)
        except CatalogError as e:
            log.warning(
                f"Could not release the claim on film {claim.film_id} ({e}); "
                "it is released once it goes stale."
            )

    async def _complete(
        self,
        film: EligibleFilm,
        claim: FilmDownload,
        title: str,
        result: TransferResult,
        elapsed: float,
    ) -> None:
        film_id = film.id
        if not await self.store.finish_download(film_id, claim=claim):
            log.warning(
                f"Download row for film {film_id} disappeared before it was finished."
            )
        self._failures.pop(film_id, None)
        self._retry_at.pop(film_id, None)
        self.stats.completed += 1

        if result.reused:
            log.info(f"  [green]✓ Recorded:[/] {title} (file already present)")
        else:
            resumed = (
                f", resumed at {format_size(result.resumed_from)}"
                if result.resumed_from
                else ""
            )
            log.info(
                f"  [green]✓ Downloaded:[/] {title} "
                f"({format_size(result.bytes_written)}{resumed})"
            )
        if self.event_logger:
            self.event_logger.film_completed(
                film_id, result.bytes_written, result.resumed_from, elapsed
            )

        if self.config.download_thumbnails:
            await self._download_thumbnail(film_id)

    async def _handle_failure(
        self, film: EligibleFilm, claim: FilmDownload, title: str, error: Exception
    ) -> None:
        film_id = film.id
        retryable = error.retryable if isinstance(error, FilmMirrorError) else True
        if not isinstance(error, FilmMirrorError):
            log.debug(f"Unexpected error for film {film_id}", exc_info=True)

        await self.store.release_claim(film_id, claim)
        failures = self._failures.get(film_id, 0) + 1
        self._failures[film_id] = failures
        self._record_failure_event(film_id, error, retryable, attempt=failures)

        if retryable and failures < self.config.max_retries:
            delay = self.backoff_delay(failures)
            self._retry_at[film_id] = self._clock() + delay
            self.stats.retried += 1
            log.warning(
                f"  [yellow]↻ Retrying:[/] {title} in {delay:.1f}s "
                f"(attempt {failures}/{self.config.max_retries}: {error})"
            )
            return

        await self.store.mark_permanently_failed(film_id)
        self._retry_at.pop(film_id, None)
        self.stats.permanently_failed += 1
        log.error(
            f"  [red]✗ Giving up:[/] {title} after {failures} attempt(s) ({error})"
        )

    def _record_failure_event(
        self, film_id: int, error: Exception, retryable: bool, attempt: int = 1
    ) -> None:
        if self.event_logger:
            self.event_logger.film_failed(
                film_id,
                f"{type(error).__name__}: {error}",
                attempt=attempt,
                retryable=retryable,
            )

    async def _download_thumbnail(self, film_id: int) -> None:
        try:
            thumbnails = await self.store.get_film_thumbnails(film_id)
        except CatalogError as e:
            log.debug(f"Could not look up thumbnails for film {film_id}: {e}")
            return
        if not thumbnails:
            return
        _resolution, url = max(thumbnails, key=lambda t: _thumbnail_rank(t[0]))
        destination = thumbnail_destination(self.root, film_id)
        if await self.downloader.download_asset(url, destination):
            log.debug(f"Saved thumbnail for film {film_id}.")
