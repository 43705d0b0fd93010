import pytest
from pydantic import ValidationError

from film_mirror.exceptions import ConfigurationError
from film_mirror.models.config import MirrorConfig
from film_mirror.storage.config_manager import ConfigManager


def test_defaults_are_valid():
    config = MirrorConfig()

    assert config.concurrency == 4
    assert config.max_retries == 5
    assert config.stale_after > config.transfer_timeout
    assert not config.verify_media


@pytest.mark.parametrize(
    "value, seconds", [("90", 90), ("90s", 90), ("30m", 1800), ("2h", 7200), (5, 5)]
)
def test_durations_accept_suffixes(value, seconds):
    config = MirrorConfig(stale_after="1d", transfer_timeout=value)
    assert config.transfer_timeout == seconds


def test_invalid_duration_is_rejected():
    with pytest.raises(ValidationError):
        MirrorConfig(stale_after="two hours")


def test_stale_after_must_outlast_transfer_timeout():
    with pytest.raises(ValidationError, match="stale_after"):
        MirrorConfig(stale_after="1h", transfer_timeout="1h")


@pytest.mark.parametrize(
    "overrides",
    [
        {"concurrency": 0},
        {"concurrency": 33},
        {"max_retries": 0},
        {"min_free_space_mb": -1},
        {"request_delay": -1},
        {"backoff_base": 10, "backoff_max": 5},
        {"download_root": ""},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        MirrorConfig(**overrides)


def test_missing_file_uses_defaults(tmp_path):
    manager = ConfigManager(tmp_path / "config.ini")

    config = manager.load_config()

    assert config.concurrency == MirrorConfig().concurrency
    assert config.config_path == str(tmp_path)
    assert not (tmp_path / "config.ini").exists()


def test_save_and_load(tmp_path):
    manager = ConfigManager(tmp_path / "config.ini")
    manager.save_new_config(
        {"download_root": "/srv/films", "concurrency": 8, "verify_media": True}
    )

    text = (tmp_path / "config.ini").read_text()
    assert "verify_media = true" in text
    config = ConfigManager(tmp_path / "config.ini").load_config()
    assert config.download_root == "/srv/films"
    assert config.concurrency == 8
    assert config.verify_media is True


def test_cli_options_override_file(tmp_path):
    manager = ConfigManager(tmp_path / "config.ini")
    manager.save_new_config({"concurrency": 8})

    config = manager.load_config({"concurrency": 2, "max_retries": None})

    assert config.concurrency == 2
    assert config.max_retries == MirrorConfig().max_retries


def test_missing_keys_are_migrated(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nconcurrency = 3\nstale_after = 3h\n")

    config = ConfigManager(path).load_config()

    assert config.concurrency == 3
    assert config.stale_after == 10800
    text = path.read_text()
    assert "max_retries = 5" in text
    assert "stale_after = 3h" in text


def test_unknown_keys_are_ignored(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nquality = 27\n")

    config = ConfigManager(path).load_config()

    assert not hasattr(config, "quality")


def test_invalid_file_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nconcurrency = lots\n")

    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()


def test_unparseable_file_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("concurrency = 3\n")  # no section header

    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()


def test_saving_invalid_settings_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigManager(tmp_path / "config.ini").save_new_config({"concurrency": 0})
