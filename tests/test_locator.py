import json
from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from film_mirror.api.locator import AssetLocator, extract_player_config, select_progressive
from film_mirror.exceptions import NotAvailable, NotFound, ResolutionError
from film_mirror.models.catalog import FilmStatus

PLAYER_CONFIG = {
    "video": {"id": 123456, "title": "Testfilm"},
    "request": {
        "files": {
            "progressive": [
                {"url": "https://cdn.example/360.mp4", "height": 360, "width": 640},
                {
                    "url": "https://cdn.example/1080.mp4",
                    "height": 1080,
                    "width": 1920,
                    "quality": "1080p",
                    "size": 734003200,
                },
                {"url": "https://cdn.example/720.mp4", "height": 720, "width": 1280},
            ]
        }
    },
}


def player_page(config: dict) -> str:
    return (
        "<html><head><script>var analytics = {};</script></head><body>"
        f"<script>window.playerConfig = {json.dumps(config)}; initPlayer();</script>"
        "</body></html>"
    )


@pytest.fixture
async def player_server():
    pages: dict[str, tuple[int, str]] = {}
    referers: list[str | None] = []

    async def handle(request: web.Request) -> web.Response:
        referers.append(request.headers.get("Referer"))
        status, body = pages.get(request.match_info["video_id"], (404, ""))
        return web.Response(status=status, text=body, content_type="text/html")

    app = web.Application()
    app.router.add_get("/video/{video_id}", handle)
    server = TestServer(app)
    await server.start_server()
    yield SimpleNamespace(server=server, pages=pages, referers=referers)
    await server.close()


@pytest.fixture
async def locator(player_server):
    template = str(player_server.server.make_url("/video/")) + "{vimeo_id}?app_id=122963"
    locator = AssetLocator(player_url_template=template)
    yield locator
    await locator.close()


def status(vimeo_id="123456", state="available") -> FilmStatus:
    return FilmStatus(film_id=42, status=state, vimeo_id=vimeo_id)


def test_describe_builds_player_url():
    descriptor = AssetLocator().describe(status())

    assert descriptor.remote_id == "123456"
    assert descriptor.url == "https://player.vimeo.com/video/123456?app_id=122963"
    assert descriptor.headers == {"Referer": "https://offstream.dk/"}


@pytest.mark.parametrize(
    "film_status",
    [
        status(state="coming_soon"),
        status(state="permanently_failed"),
        status(vimeo_id=""),
        status(vimeo_id="  "),
        status(vimeo_id=None),
    ],
)
def test_describe_rejects_ineligible_status(film_status):
    with pytest.raises(NotAvailable):
        AssetLocator().describe(film_status)


async def test_resolve_picks_highest_progressive(player_server, locator):
    player_server.pages["123456"] = (200, player_page(PLAYER_CONFIG))

    descriptor = await locator.resolve(status())

    assert descriptor.url == "https://cdn.example/1080.mp4"
    assert descriptor.expected_size == 734003200
    assert descriptor.remote_id == "123456"
    assert descriptor.headers == {"Referer": "https://offstream.dk/"}
    assert player_server.referers == ["https://offstream.dk/"]


@pytest.mark.parametrize("http_status", [404, 410])
async def test_resolve_gone_video_is_not_found(player_server, locator, http_status):
    player_server.pages["123456"] = (http_status, "")

    with pytest.raises(NotFound):
        await locator.resolve(status())


@pytest.mark.parametrize("http_status", [401, 403, 500])
async def test_resolve_http_errors(player_server, locator, http_status):
    player_server.pages["123456"] = (http_status, "")

    with pytest.raises(ResolutionError) as exc_info:
        await locator.resolve(status())

    assert not isinstance(exc_info.value, NotFound)
    assert exc_info.value.retryable


async def test_resolve_page_without_config(player_server, locator):
    player_server.pages["123456"] = (200, "<html><body>Private video</body></html>")

    with pytest.raises(ResolutionError):
        await locator.resolve(status())


async def test_resolve_network_failure():
    locator = AssetLocator(player_url_template="http://127.0.0.1:1/video/{vimeo_id}")
    try:
        with pytest.raises(ResolutionError):
            await locator.resolve(status())
    finally:
        await locator.close()


def test_extract_player_config_legacy_variable():
    html = f"<script>var config = {json.dumps(PLAYER_CONFIG)}; if (!config.request) {{}}</script>"
    assert extract_player_config(html)["video"]["id"] == 123456


def test_select_progressive_without_renditions():
    with pytest.raises(ResolutionError):
        select_progressive({"request": {"files": {"hls": {}}}})
