"""
Resolves a film's remote video id to a directly downloadable MP4 rendition.
"""

import asyncio
import json
import logging
from typing import Any

import aiohttp
from bs4 import BeautifulSoup

from film_mirror.exceptions import NotAvailable, NotFound, ResolutionError
from film_mirror.models.catalog import FilmStatus, SourceDescriptor
from film_mirror.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

log = logging.getLogger(__name__)

PLAYER_URL_TEMPLATE = "https://player.vimeo.com/video/{vimeo_id}?app_id=122963"
REFERER = "https://offstream.dk/"

# Variable names under which the player page has embedded its config over time
_CONFIG_MARKERS = ("playerConfig", "var config")


def extract_player_config(html: str) -> dict[str, Any]:
    """
    Finds the JSON player config embedded in one of the page's script tags.

    Raises:
        ResolutionError: If no script contains a decodable config object.
    """
    soup = BeautifulSoup(html, "html.parser")
    decoder = json.JSONDecoder()
    for script in soup.find_all("script"):
        text = script.string or script.get_text()
        for marker in _CONFIG_MARKERS:
            start = text.find(marker)
            if start == -1:
                continue
            brace = text.find("{", start + len(marker))
            if brace == -1:
                continue
            try:
                config, _ = decoder.raw_decode(text, brace)
            except ValueError:
                continue
            if isinstance(config, dict):
                return config
    raise ResolutionError("Player page does not contain a player config.")


def select_progressive(config: dict[str, Any]) -> dict[str, Any]:
    """
    Picks the highest-resolution progressive rendition. Progressive files are
    plain MP4s served with byte-range support, which makes them resumable.
    """
    files = (config.get("request") or {}).get("files") or {}
    renditions = [
        r
        for r in files.get("progressive") or []
        if isinstance(r, dict) and r.get("url")
    ]
    if not renditions:
        raise ResolutionError("Player config lists no progressive renditions.")
    return max(renditions, key=lambda r: (r.get("height") or 0, r.get("width") or 0))


class AssetLocator:
    """Maps a FilmStatus to a SourceDescriptor the Downloader can fetch."""

    def __init__(
        self,
        player_url_template: str = PLAYER_URL_TEMPLATE,
        referer: str = REFERER,
        timeout: float = 30,
    ):
        self.player_url_template = player_url_template
        self.referer = referer
        self.timeout = timeout

        self._session: aiohttp.ClientSession | None = None
        self._circuit_breaker = CircuitBreaker(
            "Vimeo player",
            failure_threshold=5,
            recovery_timeout=60,
            counted=(aiohttp.ClientError, asyncio.TimeoutError),
        )

    async def _initialize_session(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout, connect=15)
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def describe(self, status: FilmStatus) -> SourceDescriptor:
        """
        Returns the player-page descriptor for a film without any network I/O.

        Raises:
            NotAvailable: If the status does not allow a download.
        """
        if not status.is_eligible:
            raise NotAvailable(
                f"Film {status.film_id} is not available "
                f"(status={status.status!r}, vimeo_id={status.vimeo_id!r})."
            )
        remote_id = status.vimeo_id.strip()
        return SourceDescriptor(
            remote_id=remote_id,
            url=self.player_url_template.format(vimeo_id=remote_id),
            headers={"Referer": self.referer},
        )

    async def resolve(self, status: FilmStatus) -> SourceDescriptor:
        """
        Resolves a film to its best streamable MP4 URL.

        Raises:
            NotAvailable: If the status does not allow a download.
            NotFound: If the player reports the video as gone.
            ResolutionError: On network, HTTP or parse failures.
        """
        page = self.describe(status)
        html = await self._fetch_player_page(page)
        rendition = select_progressive(extract_player_config(html))

        size = rendition.get("size")
        log.debug(
            f"Resolved video {page.remote_id} to {rendition.get('quality') or '?'} "
            f"({rendition.get('width')}x{rendition.get('height')})"
        )
        return SourceDescriptor(
            remote_id=page.remote_id,
            url=rendition["url"],
            expected_size=size if isinstance(size, int) and size > 0 else None,
            headers={"Referer": self.referer},
        )

    async def _fetch_player_page(self, page: SourceDescriptor) -> str:
        await self._initialize_session()
        try:
            async with self._circuit_breaker:
                async with self._session.get(page.url, headers=page.headers) as r:
                    if r.status in (404, 410):
                        raise NotFound(f"Video {page.remote_id} no longer exists.")
                    if r.status in (401, 403):
                        raise ResolutionError(
                            f"Access to video {page.remote_id} was denied "
                            f"(HTTP {r.status})."
                        )
                    r.raise_for_status()
                    return await r.text()
        except CircuitBreakerError as e:
            raise ResolutionError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ResolutionError(
                f"Could not load the player page for video {page.remote_id}: {e}"
            ) from e
