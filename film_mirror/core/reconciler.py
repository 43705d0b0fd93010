"""
Recovers download claims left behind by crashed or killed processes.
"""

import asyncio
import logging
import os
from collections.abc import Callable, Collection
from contextlib import suppress
from datetime import datetime, timedelta
from pathlib import Path

from film_mirror.exceptions import CatalogError
from film_mirror.media.integrity import FileIntegrityChecker
from film_mirror.models.stats import ReconcileReport
from film_mirror.storage.catalog import CatalogStore
from film_mirror.utils.formatting import utcnow

log = logging.getLogger(__name__)


def _is_complete_file(path: Path, verify_media: bool) -> bool:
    try:
        if os.path.getsize(path) <= 0:
            return False
    except OSError:
        return False
    return not verify_media or FileIntegrityChecker.check_mp4(str(path))


class StatusReconciler:
    """
    Sweeps unfinished claims older than ``stale_after``.

    A claim whose final file exists was interrupted between the rename and the
    database commit, so it is completed. Any other stale claim is deleted, which
    makes the film eligible again; its partial file stays on disk so the next
    transfer resumes from it.
    """

    def __init__(
        self,
        store: CatalogStore,
        stale_after: float,
        verify_media: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.stale_after = stale_after
        self.verify_media = verify_media
        self._clock = clock
        self._periodic_task: asyncio.Task | None = None

    async def reconcile(self, exclude: Collection[int] = ()) -> ReconcileReport:
        """Runs one sweep, ignoring claims for the film ids in ``exclude``."""
        cutoff = self._clock() - timedelta(seconds=self.stale_after)
        report = ReconcileReport()

        for download in await self.store.get_stale_downloads(cutoff):
            if download.film_id in exclude:
                continue
            complete = await asyncio.to_thread(
                _is_complete_file, Path(download.path), self.verify_media
            )
            if complete:
                if await self.store.finish_download(download.film_id, claim=download):
                    report.completed.append(download.film_id)
                    log.info(
                        f"[green]Recovered finished download of film "
                        f"{download.film_id}.[/green]"
                    )
            elif await self.store.release_claim(download.film_id, claim=download):
                report.released.append(download.film_id)
                log.info(
                    f"[yellow]Released abandoned claim on film {download.film_id} "
                    f"(started {download.started_at}).[/yellow]"
                )

        if report.total:
            log.debug(
                f"Reconciled {report.total} stale claim(s): "
                f"{len(report.completed)} completed, {len(report.released)} released."
            )
        return report

    async def run_periodic(
        self,
        interval: float,
        stop_event: asyncio.Event,
        exclude: Callable[[], Collection[int]] | None = None,
    ) -> None:
        """
        Repeats ``reconcile()`` every ``interval`` seconds until ``stop_event`` is
        set. ``exclude`` is called before each sweep to get the ids of claims the
        running process still holds.
        """
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.reconcile(exclude=exclude() if exclude else ())
            except CatalogError as e:
                log.warning(f"Periodic reconciliation failed: {e}")

    def start_background(
        self,
        interval: float,
        stop_event: asyncio.Event,
        exclude: Callable[[], Collection[int]] | None = None,
    ) -> None:
        """Starts ``run_periodic`` as a background task."""
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(
                self.run_periodic(interval, stop_event, exclude)
            )
            log.debug(f"Started background reconciliation every {interval:.0f}s.")

    async def stop_background(self) -> None:
        """Stops the background task gracefully."""
        if self._periodic_task and not self._periodic_task.done():
            self._periodic_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._periodic_task
            log.debug("Stopped background reconciliation.")
        self._periodic_task = None
