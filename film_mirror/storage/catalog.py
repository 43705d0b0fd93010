"""
Manages the SQLite catalog of films and their download claims.

The unique index on ``film_downloads.film_id`` is the only mutual-exclusion
primitive for downloads: claiming a film is a plain INSERT, and a uniqueness
violation means somebody else (another worker or another process) owns it.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from film_mirror.exceptions import CatalogError, ClaimConflict, NotAvailable
from film_mirror.models.api import FilmResponse
from film_mirror.models.catalog import (
    ELIGIBLE_STATUSES,
    STATUS_AVAILABLE,
    STATUS_PERMANENTLY_FAILED,
    EligibleFilm,
    Film,
    FilmDownload,
    FilmStatus,
)
from film_mirror.utils.formatting import from_db_timestamp, to_db_timestamp, utcnow

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS films (
    id INTEGER PRIMARY KEY,
    title VARCHAR,
    original_title VARCHAR,
    director VARCHAR,
    production_year INTEGER,
    duration INTEGER,
    description VARCHAR,
    age_restriction VARCHAR
);

CREATE TABLE IF NOT EXISTS film_status (
    film_id INTEGER UNIQUE REFERENCES films (id) ON DELETE CASCADE,
    status VARCHAR,
    vimeo_id VARCHAR,
    greeting_vimeo_id VARCHAR
);

CREATE TABLE IF NOT EXISTS film_thumbnails (
    id INTEGER PRIMARY KEY,
    film_id INTEGER REFERENCES films (id) ON DELETE CASCADE,
    resolution VARCHAR NOT NULL,
    url VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS countries (
    id INTEGER PRIMARY KEY,
    title VARCHAR,
    code VARCHAR
);

CREATE TABLE IF NOT EXISTS film_countries (
    film_id INTEGER REFERENCES films (id) ON DELETE CASCADE,
    country_id INTEGER REFERENCES countries (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS genres (
    id INTEGER PRIMARY KEY,
    identifier VARCHAR,
    title VARCHAR
);

CREATE TABLE IF NOT EXISTS film_genres (
    film_id INTEGER REFERENCES films (id) ON DELETE CASCADE,
    genre_id INTEGER REFERENCES genres (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS film_competitions (
    film_id INTEGER REFERENCES films (id) ON DELETE CASCADE,
    name VARCHAR
);

CREATE TABLE IF NOT EXISTS film_years (
    id INTEGER NOT NULL,
    film_id INTEGER UNIQUE REFERENCES films (id) ON DELETE CASCADE,
    title VARCHAR,
    product_id VARCHAR
);

CREATE TABLE IF NOT EXISTS film_downloads (
    id INTEGER PRIMARY KEY,
    film_id INTEGER UNIQUE REFERENCES films (id) ON DELETE CASCADE,
    started_at DATETIME DEFAULT CURRENT_TIMESTAMP NOT NULL,
    finished_at DATETIME,
    path VARCHAR NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_film_thumbnails ON film_thumbnails (film_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_genres ON genres (identifier);
CREATE UNIQUE INDEX IF NOT EXISTS idx_film_genres ON film_genres (film_id, genre_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_film_countries ON film_countries (film_id, country_id);
CREATE INDEX IF NOT EXISTS idx_film_downloads ON film_downloads (film_id);
"""

_ELIGIBLE_PLACEHOLDERS = ",".join("?" * len(ELIGIBLE_STATUSES))


def _row_to_download(row: sqlite3.Row) -> FilmDownload:
    return FilmDownload(
        id=row["id"],
        film_id=row["film_id"],
        started_at=from_db_timestamp(row["started_at"]),
        finished_at=from_db_timestamp(row["finished_at"]),
        path=row["path"],
    )


def _row_to_film(row: sqlite3.Row) -> Film:
    return Film(
        id=row["id"],
        title=row["title"],
        original_title=row["original_title"],
        director=row["director"],
        production_year=row["production_year"],
        duration=row["duration"],
        description=row["description"],
        age_restriction=row["age_restriction"],
    )


class CatalogStore:
    """
    Async facade over the SQLite catalog. Every call opens its own connection in a
    worker thread, bounded by a small connection semaphore.
    """

    def __init__(self, db_path: Path, pool_size: int = 5):
        self.db_path = Path(db_path)
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with foreign keys and WAL enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yields a connection whose work is committed as one transaction."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """
        Creates the database file and schema if they don't exist.

        Raises:
            CatalogError: If the database cannot be opened or initialized.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise CatalogError(
                f"Failed to open catalog database at '{self.db_path}': {e}"
            ) from e

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection semaphore."""
        async with self._connection_semaphore:
            try:
                return await asyncio.to_thread(func, *args)
            except sqlite3.Error as e:
                raise CatalogError(f"Catalog operation failed: {e}") from e

    # ---------- Catalog import ----------

    def _missing_film_ids_sync(self, film_ids: list[int]) -> list[int]:
        if not film_ids:
            return []

        BATCH_SIZE = 999  # SQLite's default limit on variables prior to 3.32.0
        existing: set[int] = set()
        with self._connect() as conn:
            for i in range(0, len(film_ids), BATCH_SIZE):
                chunk = film_ids[i : i + BATCH_SIZE]
                placeholders = ",".join("?" * len(chunk))
                cursor = conn.execute(
                    f"SELECT id FROM films WHERE id IN ({placeholders})",  # noqa: S608
                    chunk,
                )
                existing.update(row[0] for row in cursor.fetchall())
        return [fid for fid in film_ids if fid not in existing]

    async def missing_film_ids(self, film_ids: list[int]) -> list[int]:
        """Returns the ids from ``film_ids`` that are not in the catalog yet."""
        return await self._run_in_executor(self._missing_film_ids_sync, film_ids)

    def _import_film_sync(self, film_id: int, film: FilmResponse) -> None:
        data = film.data
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO films
                    (id, title, original_title, director, production_year,
                     duration, description, age_restriction)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    film_id,
                    data.title,
                    data.original_title,
                    data.director,
                    data.production_year,
                    data.duration,
                    data.description,
                    data.age_restriction,
                ),
            )
            conn.executemany(
                "INSERT INTO film_thumbnails (film_id, resolution, url) VALUES (?, ?, ?)",
                [(film_id, res, url) for res, url in data.thumbnails.items()],
            )

            for genre in data.genres:
                conn.execute(
                    "INSERT OR IGNORE INTO genres (identifier, title) VALUES (?, ?)",
                    (genre.id, genre.title),
                )
                genre_id = conn.execute(
                    "SELECT id FROM genres WHERE identifier = ?", (genre.id,)
                ).fetchone()[0]
                conn.execute(
                    "INSERT OR IGNORE INTO film_genres (film_id, genre_id) VALUES (?, ?)",
                    (film_id, genre_id),
                )

            for country in data.countries:
                row = conn.execute(
                    "SELECT id FROM countries WHERE code = ?", (country.code,)
                ).fetchone()
                if row is None:
                    log.debug(
                        f"Creating new country (title={country.title}, "
                        f"code={country.code})"
                    )
                    country_id = conn.execute(
                        "INSERT INTO countries (title, code) VALUES (?, ?)",
                        (country.title, country.code),
                    ).lastrowid
                else:
                    country_id = row[0]
                conn.execute(
                    "INSERT OR IGNORE INTO film_countries (film_id, country_id) "
                    "VALUES (?, ?)",
                    (film_id, country_id),
                )

            conn.executemany(
                "INSERT INTO film_competitions (film_id, name) VALUES (?, ?)",
                [(film_id, name) for name in data.competitions],
            )
            conn.execute(
                "INSERT INTO film_years (id, film_id, title, product_id) "
                "VALUES (?, ?, ?, ?)",
                (data.year.id, film_id, data.year.title, data.year.product_id),
            )
            conn.execute(
                "INSERT INTO film_status (film_id, status, vimeo_id, greeting_vimeo_id) "
                "VALUES (?, ?, ?, ?)",
                (
                    film_id,
                    film.status.status,
                    film.status.vimeo_id,
                    film.status.greeting_vimeo_id,
                ),
            )

    async def import_film(self, film_id: int, film: FilmResponse) -> None:
        """Inserts a film with all of its relations in a single transaction."""
        await self._run_in_executor(self._import_film_sync, film_id, film)

    # ---------- Reads ----------

    def _get_film_sync(self, film_id: int) -> Film | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM films WHERE id = ?", (film_id,)).fetchone()
        return _row_to_film(row) if row else None

    async def get_film(self, film_id: int) -> Film | None:
        return await self._run_in_executor(self._get_film_sync, film_id)

    def _get_film_status_sync(self, film_id: int) -> FilmStatus | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT film_id, status, vimeo_id, greeting_vimeo_id "
                "FROM film_status WHERE film_id = ?",
                (film_id,),
            ).fetchone()
        return FilmStatus(**dict(row)) if row else None

    async def get_film_status(self, film_id: int) -> FilmStatus | None:
        return await self._run_in_executor(self._get_film_status_sync, film_id)

    def _get_film_thumbnails_sync(self, film_id: int) -> list[tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT resolution, url FROM film_thumbnails WHERE film_id = ? "
                "ORDER BY id",
                (film_id,),
            ).fetchall()
        return [(row["resolution"], row["url"]) for row in rows]

    async def get_film_thumbnails(self, film_id: int) -> list[tuple[str, str]]:
        """Returns ``(resolution, url)`` pairs stored for a film."""
        return await self._run_in_executor(self._get_film_thumbnails_sync, film_id)

    def _get_eligible_films_sync(self) -> list[EligibleFilm]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT f.*, s.status, s.vimeo_id, s.greeting_vimeo_id
                FROM films AS f
                JOIN film_status AS s ON s.film_id = f.id
                LEFT JOIN film_downloads AS dl ON dl.film_id = f.id
                WHERE s.status IN ({_ELIGIBLE_PLACEHOLDERS})
                  AND s.vimeo_id IS NOT NULL AND TRIM(s.vimeo_id) != ''
                  AND (dl.id IS NULL OR dl.finished_at IS NULL)
                ORDER BY f.id
                """,  # noqa: S608
                tuple(ELIGIBLE_STATUSES),
            ).fetchall()
        return [
            EligibleFilm(
                film=_row_to_film(row),
                status=FilmStatus(
                    film_id=row["id"],
                    status=row["status"],
                    vimeo_id=row["vimeo_id"],
                    greeting_vimeo_id=row["greeting_vimeo_id"],
                ),
            )
            for row in rows
        ]

    async def get_eligible_films(self) -> list[EligibleFilm]:
        """
        Returns films whose status allows a download and which have no finished
        download. Films with an unfinished claim are included; claiming them
        will conflict unless the claim has been released.
        """
        return await self._run_in_executor(self._get_eligible_films_sync)

    # ---------- Download claims ----------

    def _claim_download_sync(
        self, film_id: int, path: str, started_at: datetime
    ) -> FilmDownload:
        try:
            with self._connect() as conn:
                row_id = conn.execute(
                    "INSERT INTO film_downloads (film_id, started_at, path) "
                    "VALUES (?, ?, ?)",
                    (film_id, to_db_timestamp(started_at), path),
                ).lastrowid
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise NotAvailable(f"Film {film_id} is not in the catalog.") from e
            raise ClaimConflict(f"Film {film_id} is already claimed.") from e
        return FilmDownload(
            id=row_id,
            film_id=film_id,
            started_at=started_at,
            finished_at=None,
            path=path,
        )

    async def claim_download(
        self, film_id: int, path: str, started_at: datetime | None = None
    ) -> FilmDownload:
        """
        Atomically claims a film for download by inserting its download row.

        Raises:
            ClaimConflict: If a download row already exists for the film.
            NotAvailable: If the film no longer exists.
        """
        return await self._run_in_executor(
            self._claim_download_sync, film_id, path, started_at or utcnow()
        )

    @staticmethod
    def _claim_filter(
        film_id: int, claim: FilmDownload | None
    ) -> tuple[str, tuple[Any, ...]]:
        """WHERE clause for an unfinished claim, optionally pinned to one claim."""
        if claim is None:
            return "film_id = ? AND finished_at IS NULL", (film_id,)
        # Row ids of deleted claims are reused, the claim time tells them apart.
        return (
            "film_id = ? AND id = ? AND started_at = ? AND finished_at IS NULL",
            (film_id, claim.id, to_db_timestamp(claim.started_at)),
        )

    def _finish_download_sync(
        self, film_id: int, finished_at: datetime, claim: FilmDownload | None
    ) -> bool:
        where, params = self._claim_filter(film_id, claim)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE film_downloads SET finished_at = MAX(?, started_at) "
                f"WHERE {where}",  # noqa: S608
                (to_db_timestamp(finished_at), *params),
            )
        return cursor.rowcount > 0

    async def finish_download(
        self,
        film_id: int,
        finished_at: datetime | None = None,
        claim: FilmDownload | None = None,
    ) -> bool:
        """
        Marks an unfinished download as finished. ``finished_at`` never precedes
        ``started_at``. With ``claim`` only that claim is touched, so a claim that
        was released and taken again by another worker is left alone. Returns
        False if there was no matching unfinished row to update.
        """
        return await self._run_in_executor(
            self._finish_download_sync, film_id, finished_at or utcnow(), claim
        )

    def _release_claim_sync(self, film_id: int, claim: FilmDownload | None) -> bool:
        where, params = self._claim_filter(film_id, claim)
        with self._connect() as conn:
            cursor = conn.execute(
                f"DELETE FROM film_downloads WHERE {where}",  # noqa: S608
                params,
            )
        return cursor.rowcount > 0

    async def release_claim(
        self, film_id: int, claim: FilmDownload | None = None
    ) -> bool:
        """
        Deletes an unfinished claim so the film becomes claimable again. With
        ``claim`` only that claim is deleted.
        """
        return await self._run_in_executor(self._release_claim_sync, film_id, claim)

    def _get_download_sync(self, film_id: int) -> FilmDownload | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM film_downloads WHERE film_id = ?", (film_id,)
            ).fetchone()
        return _row_to_download(row) if row else None

    async def get_download(self, film_id: int) -> FilmDownload | None:
        return await self._run_in_executor(self._get_download_sync, film_id)

    def _get_stale_downloads_sync(self, cutoff: datetime) -> list[FilmDownload]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM film_downloads "
                "WHERE finished_at IS NULL AND started_at < ? ORDER BY film_id",
                (to_db_timestamp(cutoff),),
            ).fetchall()
        return [_row_to_download(row) for row in rows]

    async def get_stale_downloads(self, cutoff: datetime) -> list[FilmDownload]:
        """Returns unfinished downloads claimed before ``cutoff``."""
        return await self._run_in_executor(self._get_stale_downloads_sync, cutoff)

    # ---------- Film status ----------

    def _set_film_status_sync(self, film_id: int, status: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE film_status SET status = ? WHERE film_id = ?",
                (status, film_id),
            )
        return cursor.rowcount > 0

    async def set_film_status(self, film_id: int, status: str) -> bool:
        return await self._run_in_executor(self._set_film_status_sync, film_id, status)

    async def mark_permanently_failed(self, film_id: int) -> bool:
        """Excludes a film from selection until it is explicitly reset."""
        return await self.set_film_status(film_id, STATUS_PERMANENTLY_FAILED)

    def _reset_failed_sync(self, film_id: int | None) -> int:
        query = "UPDATE film_status SET status = ? WHERE status = ?"
        params: tuple[Any, ...] = (STATUS_AVAILABLE, STATUS_PERMANENTLY_FAILED)
        if film_id is not None:
            query += " AND film_id = ?"
            params += (film_id,)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount

    async def reset_failed(self, film_id: int | None = None) -> int:
        """Makes permanently failed films eligible again. Returns the number reset."""
        return await self._run_in_executor(self._reset_failed_sync, film_id)

    def _delete_film_sync(self, film_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM films WHERE id = ?", (film_id,))
        return cursor.rowcount > 0

    async def delete_film(self, film_id: int) -> bool:
        """Deletes a film; its status, download, thumbnails and relations cascade."""
        return await self._run_in_executor(self._delete_film_sync, film_id)

    # ---------- Maintenance ----------

    def _get_stats_sync(self) -> dict[str, int]:
        with self._connect() as conn:

            def count(query: str, *params: Any) -> int:
                return conn.execute(query, params).fetchone()[0]

            return {
                "films": count("SELECT COUNT(*) FROM films"),
                "downloaded": count(
                    "SELECT COUNT(*) FROM film_downloads WHERE finished_at IS NOT NULL"
                ),
                "in_progress": count(
                    "SELECT COUNT(*) FROM film_downloads WHERE finished_at IS NULL"
                ),
                "pending": count(
                    f"""
                    SELECT COUNT(*) FROM film_status AS s
                    LEFT JOIN film_downloads AS dl ON dl.film_id = s.film_id
                    WHERE s.status IN ({_ELIGIBLE_PLACEHOLDERS})
                      AND s.vimeo_id IS NOT NULL AND TRIM(s.vimeo_id) != ''
                      AND dl.id IS NULL
                    """,  # noqa: S608
                    *ELIGIBLE_STATUSES,
                ),
                "permanently_failed": count(
                    "SELECT COUNT(*) FROM film_status WHERE status = ?",
                    STATUS_PERMANENTLY_FAILED,
                ),
                "ineligible": count(
                    f"""
                    SELECT COUNT(*) FROM films AS f
                    LEFT JOIN film_status AS s ON s.film_id = f.id
                    LEFT JOIN film_downloads AS dl ON dl.film_id = f.id
                    WHERE dl.id IS NULL
                      AND COALESCE(s.status, '') != ?
                      AND NOT (
                          COALESCE(s.status, '') IN ({_ELIGIBLE_PLACEHOLDERS})
                          AND TRIM(COALESCE(s.vimeo_id, '')) != ''
                      )
                    """,  # noqa: S608
                    STATUS_PERMANENTLY_FAILED,
                    *ELIGIBLE_STATUSES,
                ),
            }

    async def get_stats(self) -> dict[str, int]:
        """Counts films by download state for the ``status`` command."""
        return await self._run_in_executor(self._get_stats_sync)

    def _vacuum_sync(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("VACUUM;")
            conn.execute("ANALYZE;")
        finally:
            conn.close()
        log.info("Catalog database optimized successfully.")

    async def vacuum(self) -> None:
        """Optimizes the database file by rebuilding it."""
        await self._run_in_executor(self._vacuum_sync)
