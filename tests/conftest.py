from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from film_mirror.media.downloader import Downloader
from film_mirror.models.api import FilmResponse
from film_mirror.models.config import MirrorConfig
from film_mirror.storage.catalog import CatalogStore


def film_payload(
    title: str = "Testfilm",
    status: str = "available",
    vimeo_id: str | None = "123456",
    **data,
) -> dict:
    """A ``/films/load`` response body for one film."""
    details = {
        "title": title,
        "original_title": title,
        "director": "Jane Doe",
        "production_year": 2020,
        "duration": 90,
        "description": "A film about testing.",
        "age_restriction": "15",
        "thumbnails": {
            "640x360": "https://img.example/640.jpg",
            "1920x1080": "https://img.example/1920.jpg",
        },
        "genres": [{"id": "documentary", "title": "Dokumentar"}],
        "countries": [{"title": "Danmark", "code": "DK"}],
        "year": {"id": 2021, "title": "CPH:DOX 2021", "product_id": 7},
        "competitions": ["DOX:AWARD"],
    }
    details.update(data)
    return {
        "data": {"film": details},
        "status": {"status": status, "vimeo_id": vimeo_id, "greeting_vimeo_id": None},
    }


@pytest.fixture
def tmp_db(tmp_path) -> Path:
    """Returns path to a temporary SQLite database file."""
    return tmp_path / "films.db"


@pytest.fixture
def store(tmp_db) -> CatalogStore:
    return CatalogStore(tmp_db)


def build_film(**kwargs) -> FilmResponse:
    payload = film_payload(**kwargs)
    return FilmResponse.model_validate(
        {"data": payload["data"]["film"], "status": payload["status"]}
    )


@pytest.fixture
def film_response():
    """Builds a validated FilmResponse; keyword arguments go to ``film_payload``."""
    return build_film


@pytest.fixture
def add_film(store):
    """Imports a film into the catalog; keyword arguments go to ``film_payload``."""

    async def _add(film_id: int, **kwargs) -> None:
        await store.import_film(film_id, build_film(**kwargs))

    return _add


@pytest.fixture
def config(tmp_path) -> MirrorConfig:
    return MirrorConfig(
        database_path=str(tmp_path / "films.db"),
        download_root=str(tmp_path / "films"),
        concurrency=2,
        max_retries=3,
        backoff_base=0.01,
        backoff_max=0.05,
        min_free_space_mb=0,
    )


class FileServer:
    """Serves registered byte strings with optional HTTP range support."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.status_overrides: dict[str, int] = {}
        self.honor_ranges = True
        self.requests: list[dict[str, str | None]] = []
        self.server: TestServer | None = None

    async def handle(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        range_header = request.headers.get("Range")
        self.requests.append(
            {
                "name": name,
                "range": range_header,
                "referer": request.headers.get("Referer"),
            }
        )
        if name in self.status_overrides:
            return web.Response(status=self.status_overrides[name])

        body = self.files.get(name)
        if body is None:
            return web.Response(status=404)

        if range_header and self.honor_ranges:
            start = int(range_header.removeprefix("bytes=").rstrip("-"))
            if start >= len(body):
                return web.Response(
                    status=416, headers={"Content-Range": f"bytes */{len(body)}"}
                )
            return web.Response(
                status=206,
                body=body[start:],
                headers={"Content-Range": f"bytes {start}-{len(body) - 1}/{len(body)}"},
            )
        return web.Response(body=body)

    def url(self, name: str) -> str:
        return str(self.server.make_url(f"/files/{name}"))


@pytest.fixture
async def file_server():
    state = FileServer()
    app = web.Application()
    app.router.add_get("/files/{name}", state.handle)
    server = TestServer(app)
    await server.start_server()
    state.server = server
    yield state
    await server.close()


@pytest.fixture
async def downloader():
    downloader = Downloader(timeout=30, max_workers=2)
    yield downloader
    await downloader.close()
