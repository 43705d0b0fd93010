import json
from unittest.mock import AsyncMock

from film_mirror.core.coordinator import DownloadCoordinator
from film_mirror.exceptions import AuthError
from film_mirror.models.catalog import SourceDescriptor, TransferResult
from film_mirror.utils.structured_logger import create_event_logger


def read_events(log_dir):
    (path,) = log_dir.glob("film_mirror_*.jsonl")
    return [json.loads(line) for line in path.read_text().splitlines()]


async def test_coordinator_writes_lifecycle_events(config, store, add_film, tmp_path):
    await add_film(1)
    await add_film(2)
    log_dir = tmp_path / "logs"
    event_logger = create_event_logger(log_dir)
    locator = AsyncMock()
    locator.resolve.return_value = SourceDescriptor(remote_id="1", url="http://x/1")
    downloader = AsyncMock()
    downloader.transfer.side_effect = [TransferResult(2048), AuthError("forbidden")]
    config.concurrency = 1

    try:
        await DownloadCoordinator(
            config, store, locator, downloader, event_logger=event_logger
        ).run()
    finally:
        event_logger.logger.close()

    events = read_events(log_dir)
    names = [event["event"] for event in events]
    assert names.count("film_claimed") == 2
    completed = next(e for e in events if e["event"] == "film_completed")
    assert completed["film_id"] == 1
    assert completed["size_bytes"] == 2048
    failed = next(e for e in events if e["event"] == "film_failed")
    assert failed["film_id"] == 2
    assert failed["retryable"] is False
    assert failed["error"].startswith("AuthError")
    assert names[-1] == "run_completed"
    assert events[-1]["completed"] == 1
    assert events[-1]["permanently_failed"] == 1
    assert len({event["session_id"] for event in events}) == 1


def test_console_only_logger_writes_no_file(tmp_path):
    event_logger = create_event_logger()

    event_logger.film_skipped(42, "claimed elsewhere")

    assert event_logger.logger.path is None
    assert list(tmp_path.iterdir()) == []
