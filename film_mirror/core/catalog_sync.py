"""
Imports films listed by the offstream.dk API into the local catalog.
"""

import asyncio
import logging

from film_mirror.api.client import OffstreamAPIClient
from film_mirror.exceptions import ApiError, CatalogError
from film_mirror.models.stats import SyncReport
from film_mirror.storage.catalog import CatalogStore

log = logging.getLogger(__name__)


class CatalogImporter:
    """Fetches the details of every film the catalog does not know yet."""

    def __init__(
        self,
        client: OffstreamAPIClient,
        store: CatalogStore,
        request_delay: float = 1.0,
        shutdown_event: asyncio.Event | None = None,
    ):
        self.client = client
        self.store = store
        self.request_delay = request_delay
        self.shutdown_event = shutdown_event or asyncio.Event()

    async def sync(self) -> SyncReport:
        """
        Lists all films and imports the missing ones, one request at a time.

        A failure to import a single film is logged and counted; only failing to
        get the film list at all is raised.

        Raises:
            ApiError: If the token or the film list cannot be fetched.
        """
        await self.client.update_xsrf_token()
        films = await self.client.get_films()
        missing = await self.store.missing_film_ids(sorted(films))
        report = SyncReport(listed=len(films))
        log.info(
            f"Received {len(films)} film(s); {len(missing)} not present in the catalog."
        )

        for index, film_id in enumerate(missing):
            if self.shutdown_event.is_set():
                log.info("[yellow]Sync interrupted.[/yellow]")
                break
            if index and self.request_delay:
                try:
                    await asyncio.wait_for(
                        self.shutdown_event.wait(), timeout=self.request_delay
                    )
                    continue
                except asyncio.TimeoutError:
                    pass

            try:
                film = await self.client.get_film(film_id)
                await self.store.import_film(film_id, film)
            except (ApiError, CatalogError) as e:
                report.failed += 1
                log.error(f"  [red]✗ Could not import film {film_id}:[/] {e}")
                continue

            report.imported += 1
            log.info(
                f"  [green]✓ Imported:[/] {film.data.title or film_id} "
                f"[dim]({film.status.status})[/dim]"
            )

        return report
