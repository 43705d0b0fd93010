"""
Row types read from the catalog database, plus the transfer descriptors that flow
between the locator, the downloader and the coordinator.
"""

from dataclasses import dataclass, field
from datetime import datetime

STATUS_AVAILABLE = "available"
STATUS_PERMANENTLY_FAILED = "permanently_failed"

ELIGIBLE_STATUSES = frozenset({STATUS_AVAILABLE})


@dataclass(frozen=True)
class Film:
    id: int
    title: str | None = None
    original_title: str | None = None
    director: str | None = None
    production_year: int | None = None
    duration: int | None = None
    description: str | None = None
    age_restriction: str | None = None


@dataclass(frozen=True)
class FilmStatus:
    film_id: int
    status: str | None
    vimeo_id: str | None
    greeting_vimeo_id: str | None = None

    @property
    def is_eligible(self) -> bool:
        return self.status in ELIGIBLE_STATUSES and bool(
            self.vimeo_id and self.vimeo_id.strip()
        )


@dataclass(frozen=True)
class FilmDownload:
    id: int
    film_id: int
    started_at: datetime
    finished_at: datetime | None
    path: str

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


@dataclass(frozen=True)
class EligibleFilm:
    """A film selected for download, with the status row the locator needs."""

    film: Film
    status: FilmStatus

    @property
    def id(self) -> int:
        return self.film.id


@dataclass(frozen=True)
class SourceDescriptor:
    """Where to fetch a film's bytes from, and how."""

    remote_id: str
    url: str
    expected_size: int | None = None
    headers: dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class TransferResult:
    """A completed transfer. ``resumed_from`` is the offset the transfer continued at."""

    bytes_written: int
    resumed_from: int = 0
    reused: bool = False
