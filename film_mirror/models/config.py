"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from film_mirror.utils.formatting import parse_duration


class MirrorConfig(BaseModel):
    """A validated configuration model for the application."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Storage
    database_path: str = "films.db"
    download_root: str = "films"

    # Download pipeline
    concurrency: int = 4
    max_retries: int = 5
    stale_after: float = 7200.0
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    transfer_timeout: float = 3600.0
    reconcile_interval: float = 0.0
    min_free_space_mb: int = 512
    verify_media: bool = False
    download_thumbnails: bool = False

    # Catalog import
    request_delay: float = 1.0

    # Logging
    event_log: bool = False

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    @field_validator(
        "stale_after", "transfer_timeout", "reconcile_interval", mode="before"
    )
    @classmethod
    def parse_durations(cls, v):
        """Accepts seconds or suffixed durations such as '30m' or '2h'."""
        return parse_duration(v)

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1 or v > 32:
            raise ValueError("Concurrency must be between 1 and 32.")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_retries must be at least 1.")
        return v

    @field_validator("stale_after", "transfer_timeout", "backoff_base", "backoff_max")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Durations must be positive.")
        return v

    @field_validator("reconcile_interval", "request_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Value cannot be negative.")
        return v

    @field_validator("min_free_space_mb")
    @classmethod
    def validate_free_space(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_free_space_mb cannot be negative.")
        return v

    @field_validator("database_path", "download_root")
    @classmethod
    def validate_paths(cls, v: str) -> str:
        if not v:
            raise ValueError("Path cannot be empty.")
        return v

    @model_validator(mode="after")
    def validate_timing(self) -> "MirrorConfig":
        """
        A claim may only look abandoned once no live transfer can still hold it,
        so the staleness threshold has to outlast a full transfer attempt.
        """
        if self.stale_after <= self.transfer_timeout:
            raise ValueError(
                f"stale_after ({self.stale_after:.0f}s) must be greater than "
                f"transfer_timeout ({self.transfer_timeout:.0f}s)."
            )
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max cannot be smaller than backoff_base.")
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
