from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from film_mirror.api.client import OffstreamAPIClient
from film_mirror.exceptions import ApiError

TOKEN = "abc=="

FILM = {
    "title": "Testfilm",
    "director": "Jane Doe",
    "production_year": 2020,
    "thumbnails": {"640x360": "https://img.example/640.jpg"},
    "genres": [{"id": "documentary", "title": "Dokumentar"}],
    "countries": [{"title": "Danmark", "code": "DK"}],
    "year": {"id": 2021, "title": "CPH:DOX 2021"},
    "competitions": [],
}


@pytest.fixture
async def api_server():
    state = SimpleNamespace(hand_out_token=True, films_body=None, seen_tokens=[])

    async def csrf_cookie(request: web.Request) -> web.Response:
        response = web.Response(status=204)
        if state.hand_out_token:
            response.set_cookie("XSRF-TOKEN", "abc%3D%3D")
        return response

    def authorized(request: web.Request) -> bool:
        token = request.headers.get("x-xsrf-token")
        state.seen_tokens.append(token)
        return token == TOKEN

    async def films(request: web.Request) -> web.Response:
        if not authorized(request):
            return web.Response(status=403)
        if state.films_body is not None:
            return web.Response(text=state.films_body)
        return web.json_response(
            {"data": {"1": {"title": "One"}, "2": {"title": "Two"}, "draft": {}}}
        )

    async def load_film(request: web.Request) -> web.Response:
        if not authorized(request):
            return web.Response(status=403)
        film_id = (await request.json())["film_id"]
        if film_id == 404:
            return web.json_response({"data": {}})
        film = dict(FILM)
        if film_id == 500:
            del film["year"]
        return web.json_response(
            {
                "data": {"film": film},
                "status": {"status": "available", "vimeo_id": "123456"},
            }
        )

    async def private(request: web.Request) -> web.Response:
        raise web.HTTPFound("/login")

    app = web.Application()
    app.router.add_get("/csrf-cookie", csrf_cookie)
    app.router.add_get("/films", films)
    app.router.add_post("/films/load", load_film)
    app.router.add_get("/private", private)
    server = TestServer(app)
    await server.start_server()
    state.server = server
    yield state
    await server.close()


@pytest.fixture
async def client(api_server):
    client = OffstreamAPIClient(base_url=str(api_server.server.make_url("/")))
    yield client
    await client.close()


async def test_update_xsrf_token_unquotes_cookie(client):
    assert await client.update_xsrf_token() == TOKEN
    assert client.xsrf_token == TOKEN


async def test_missing_token_cookie_raises(api_server, client):
    api_server.hand_out_token = False

    with pytest.raises(ApiError):
        await client.update_xsrf_token()


async def test_call_without_token_raises(client):
    with pytest.raises(ApiError, match="XSRF"):
        await client.get_films()


async def test_get_films_keys_by_numeric_id(api_server, client):
    await client.update_xsrf_token()

    films = await client.get_films()

    assert films == {1: {"title": "One"}, 2: {"title": "Two"}}
    assert api_server.seen_tokens == [TOKEN]


async def test_get_films_without_data_raises(api_server, client):
    api_server.films_body = '{"message": "maintenance"}'
    await client.update_xsrf_token()

    with pytest.raises(ApiError, match="data"):
        await client.get_films()


async def test_invalid_json_raises(api_server, client):
    api_server.films_body = "<html>maintenance</html>"
    await client.update_xsrf_token()

    with pytest.raises(ApiError):
        await client.get_films()


async def test_get_film_validates_payload(client):
    await client.update_xsrf_token()

    film = await client.get_film(42)

    assert film.data.title == "Testfilm"
    assert film.data.year.id == 2021
    assert film.status.vimeo_id == "123456"


@pytest.mark.parametrize("film_id", [404, 500])
async def test_get_film_with_bad_payload_raises(client, film_id):
    await client.update_xsrf_token()

    with pytest.raises(ApiError):
        await client.get_film(film_id)


async def test_wrong_token_is_http_error(client):
    client.xsrf_token = "stale"

    with pytest.raises(ApiError):
        await client.get_films()


async def test_redirect_is_not_followed(client):
    await client.update_xsrf_token()

    with pytest.raises(ApiError, match="redirected"):
        await client.api_call("GET", "/private")


async def test_unreachable_api_raises():
    client = OffstreamAPIClient(base_url="http://127.0.0.1:1")
    try:
        with pytest.raises(ApiError):
            await client.update_xsrf_token()
    finally:
        await client.close()
