from datetime import datetime

import pytest

from film_mirror.utils.formatting import (
    format_duration,
    format_size,
    from_db_timestamp,
    parse_duration,
    to_db_timestamp,
    utcnow,
)
from film_mirror.utils.path import film_destination, partial_path, thumbnail_destination


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 B"), (512, "512.0 B"), (1536, "1.5 KB"), (734003200, "700.0 MB")],
)
def test_format_size(size, expected):
    assert format_size(size) == expected


@pytest.mark.parametrize(
    "seconds, expected", [(0, "0s"), (59, "59s"), (3600, "1h"), (9252, "2h 34m 12s")]
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(45, 45.0), ("45", 45.0), ("1.5m", 90.0), ("2H", 7200.0), (" 1d ", 86400.0)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "5w", "-1h"])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_db_timestamps():
    moment = datetime(2024, 3, 1, 8, 5, 9)

    assert to_db_timestamp(moment) == "2024-03-01 08:05:09"
    assert from_db_timestamp("2024-03-01 08:05:09") == moment
    assert from_db_timestamp(None) is None


def test_utcnow_is_naive_whole_seconds():
    now = utcnow()
    assert now.tzinfo is None
    assert now.microsecond == 0


def test_download_paths(tmp_path):
    destination = film_destination(tmp_path, 42)

    assert destination == tmp_path / "42.mp4"
    assert partial_path(destination) == tmp_path / "42.mp4.part"
    assert thumbnail_destination(tmp_path, 42) == tmp_path / "42.jpg"
