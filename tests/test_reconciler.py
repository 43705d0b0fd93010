import asyncio
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

from film_mirror.core.coordinator import DownloadCoordinator
from film_mirror.core.reconciler import StatusReconciler
from film_mirror.exceptions import CatalogError
from film_mirror.media.integrity import FileIntegrityChecker
from film_mirror.models.catalog import SourceDescriptor
from film_mirror.utils.formatting import utcnow

VIDEO = bytes(range(256)) * 400


async def claim(store, film_id: int, path: Path, age: timedelta) -> None:
    await store.claim_download(film_id, str(path), started_at=utcnow() - age)


async def test_stale_claim_with_final_file_is_completed(store, add_film, tmp_path):
    await add_film(42)
    final = tmp_path / "42.mp4"
    final.write_bytes(VIDEO)
    await claim(store, 42, final, timedelta(hours=3))

    report = await StatusReconciler(store, stale_after=3600).reconcile()

    assert report.completed == [42]
    assert report.released == []
    assert (await store.get_download(42)).is_finished


async def test_stale_claim_without_file_is_released(store, add_film, tmp_path):
    await add_film(42)
    final = tmp_path / "42.mp4"
    part = tmp_path / "42.mp4.part"
    part.write_bytes(VIDEO[:100])
    await claim(store, 42, final, timedelta(hours=3))

    report = await StatusReconciler(store, stale_after=3600).reconcile()

    assert report.released == [42]
    assert await store.get_download(42) is None
    assert [film.id for film in await store.get_eligible_films()] == [42]
    # The partial file is kept so the next transfer can resume.
    assert part.read_bytes() == VIDEO[:100]


async def test_empty_final_file_does_not_count(store, add_film, tmp_path):
    await add_film(42)
    final = tmp_path / "42.mp4"
    final.write_bytes(b"")
    await claim(store, 42, final, timedelta(hours=3))

    report = await StatusReconciler(store, stale_after=3600).reconcile()

    assert report.released == [42]


async def test_media_check_rejects_broken_file(store, add_film, tmp_path):
    await add_film(42)
    final = tmp_path / "42.mp4"
    final.write_bytes(b"not a video")
    await claim(store, 42, final, timedelta(hours=3))

    reconciler = StatusReconciler(store, stale_after=3600, verify_media=True)
    with patch.object(FileIntegrityChecker, "check_mp4", return_value=False):
        report = await reconciler.reconcile()

    assert report.released == [42]


async def test_fresh_and_finished_claims_are_untouched(store, add_film, tmp_path):
    await add_film(1)
    await add_film(2)
    await claim(store, 1, tmp_path / "1.mp4", timedelta(minutes=5))
    await claim(store, 2, tmp_path / "2.mp4", timedelta(hours=3))
    await store.finish_download(2)

    report = await StatusReconciler(store, stale_after=3600).reconcile()

    assert report.total == 0
    assert not (await store.get_download(1)).is_finished
    assert (await store.get_download(2)).is_finished


async def test_excluded_claims_are_skipped(store, add_film, tmp_path):
    await add_film(42)
    await claim(store, 42, tmp_path / "42.mp4", timedelta(hours=3))

    report = await StatusReconciler(store, stale_after=3600).reconcile(exclude={42})

    assert report.total == 0
    assert await store.get_download(42) is not None


async def test_reconcile_is_idempotent(store, add_film, tmp_path):
    await add_film(42)
    await claim(store, 42, tmp_path / "42.mp4", timedelta(hours=3))
    reconciler = StatusReconciler(store, stale_after=3600)

    await reconciler.reconcile()
    second = await reconciler.reconcile()

    assert second.total == 0


async def test_crashed_download_resumes_after_reconcile(
    config, store, add_film, file_server, downloader
):
    file_server.files["42"] = VIDEO
    await add_film(42)
    root = Path(config.download_root)
    root.mkdir(parents=True)
    (root / "42.mp4.part").write_bytes(VIDEO[:5000])
    await claim(store, 42, root / "42.mp4", timedelta(hours=3))

    await StatusReconciler(store, stale_after=3600).reconcile()
    locator = AsyncMock()
    locator.resolve.return_value = SourceDescriptor(
        remote_id="123456", url=file_server.url("42")
    )
    stats = await DownloadCoordinator(config, store, locator, downloader).run()

    assert stats.completed == 1
    assert file_server.requests[0]["range"] == "bytes=5000-"
    assert (root / "42.mp4").read_bytes() == VIDEO
    assert (await store.get_download(42)).is_finished


async def test_run_periodic_sweeps_until_stopped(store, add_film, tmp_path):
    await add_film(1)
    await add_film(2)
    await claim(store, 1, tmp_path / "1.mp4", timedelta(hours=3))
    await claim(store, 2, tmp_path / "2.mp4", timedelta(hours=3))
    reconciler = StatusReconciler(store, stale_after=3600)
    stop = asyncio.Event()

    reconciler.start_background(0.01, stop, exclude=lambda: {2})
    for _ in range(100):
        if await store.get_download(1) is None:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await reconciler.stop_background()

    assert await store.get_download(1) is None
    assert await store.get_download(2) is not None


async def test_run_periodic_survives_catalog_errors():
    store = AsyncMock()
    store.get_stale_downloads.side_effect = CatalogError("database is locked")
    reconciler = StatusReconciler(store, stale_after=3600)
    stop = asyncio.Event()

    task = asyncio.create_task(reconciler.run_periodic(0.01, stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert store.get_stale_downloads.await_count >= 1
