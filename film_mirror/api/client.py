"""
Async client for the offstream.dk JSON API with circuit breaker protection.
"""

import asyncio
import logging
from typing import Any
from urllib.parse import unquote

import aiohttp
from pydantic import ValidationError

from film_mirror.exceptions import ApiError
from film_mirror.models.api import FilmResponse
from film_mirror.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"
)


class OffstreamAPIClient:
    """
    Client for the offstream.dk catalog API.

    Every request must carry the XSRF token handed out by ``/csrf-cookie``, so
    ``update_xsrf_token()`` has to be called before any other method. Redirects are
    never followed: the API answers unauthenticated requests with a redirect to the
    login page, which is reported as an error instead.
    """

    BASE_URL = "https://api.offstream.dk"
    ORIGIN = "https://offstream.dk"
    XSRF_COOKIE = "XSRF-TOKEN"

    def __init__(self, base_url: str | None = None, timeout: float = 60):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.xsrf_token: str | None = None

        self._session: aiohttp.ClientSession | None = None
        self._circuit_breaker = CircuitBreaker(
            "offstream.dk API",
            failure_threshold=5,
            recovery_timeout=60,
            success_threshold=2,
            counted=(aiohttp.ClientError, asyncio.TimeoutError),
        )

    async def _initialize_session(self) -> None:
        """Ensures an active aiohttp session with a cookie store is available."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                # The API sets its cookies on the host it is served from, which may
                # be a bare IP address when pointed at a local mirror.
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={
                    "User-Agent": USER_AGENT,
                    "Origin": self.ORIGIN,
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout, connect=15),
            )

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "OffstreamAPIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def update_xsrf_token(self) -> str:
        """
        Requests a fresh XSRF token from the API.

        Raises:
            ApiError: If the request fails or the response sets no token cookie.
        """
        await self._initialize_session()
        url = f"{self.base_url}/csrf-cookie"
        try:
            async with self._circuit_breaker:
                async with self._session.get(url, allow_redirects=False) as r:
                    r.raise_for_status()
                    cookie = r.cookies.get(self.XSRF_COOKIE)
        except CircuitBreakerError as e:
            raise ApiError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ApiError(f"Could not request a new XSRF token: {e}") from e

        if cookie is None or not cookie.value:
            raise ApiError("The API did not hand out a valid XSRF token.")

        self.xsrf_token = unquote(cookie.value)
        log.debug("Obtained a new XSRF token.")
        return self.xsrf_token

    async def api_call(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> Any:
        """
        Makes a token-authenticated API call and returns the decoded JSON body.

        Raises:
            ApiError: On a missing token, network failure, HTTP error, redirect,
                open circuit or a body that is not JSON.
        """
        if not self.xsrf_token:
            raise ApiError("Missing a valid XSRF token; call update_xsrf_token() first.")

        await self._initialize_session()
        url = f"{self.base_url}{path}"
        try:
            async with self._circuit_breaker:
                async with self._session.request(
                    method,
                    url,
                    json=payload,
                    headers={"x-xsrf-token": self.xsrf_token},
                    allow_redirects=False,
                ) as r:
                    r.raise_for_status()
                    if r.status >= 300:
                        raise ApiError(
                            f"{method} {path} was redirected to "
                            f"'{r.headers.get('Location', '?')}'; is the token valid?"
                        )
                    return await r.json(content_type=None)
        except CircuitBreakerError as e:
            log.error(f"[red]Circuit breaker is open for API calls: {e}[/red]")
            raise ApiError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise ApiError(f"{method} {path} returned invalid JSON: {e}") from e

    async def get_films(self) -> dict[int, dict[str, Any]]:
        """
        Requests the complete list of films, keyed by film id.

        Raises:
            ApiError: If the response has no ``data`` object.
        """
        response = await self.api_call("GET", "/films")
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, dict):
            raise ApiError("API response did not include a .data field")

        films: dict[int, dict[str, Any]] = {}
        for key, value in data.items():
            try:
                films[int(key)] = value
            except (TypeError, ValueError):
                log.warning(f"Ignoring film with non-numeric id '{key}'.")
        log.debug(f"Received a list containing {len(films)} films")
        return films

    async def get_film(self, film_id: int) -> FilmResponse:
        """
        Loads the full details and playback status of a single film.

        Raises:
            ApiError: If the response is missing the film object or fails validation.
        """
        response = await self.api_call("POST", "/films/load", {"film_id": film_id})
        if not isinstance(response, dict):
            raise ApiError(f"Unexpected response for film {film_id}.")

        data = response.get("data")
        if not isinstance(data, dict) or not data:
            raise ApiError(f"Could not extract data field from film {film_id}.")

        film_data = next(iter(data.values()))
        try:
            return FilmResponse.model_validate(
                {"data": film_data, "status": response.get("status")}
            )
        except ValidationError as e:
            raise ApiError(f"Invalid payload for film {film_id}:\n{e}") from e
