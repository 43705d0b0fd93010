"""
Handles the low-level transfer of film files over HTTP with resume support and
adaptive chunk sizing.

Bytes are always written to ``<destination>.part`` and only renamed onto the final
path after the transfer has been verified, so a file at the final path is always
complete.
"""

import asyncio
import logging
import os
import re
from pathlib import Path

import aiofiles
import aiohttp
from rich.progress import TaskID

from film_mirror.cli.progress_manager import ProgressManager
from film_mirror.exceptions import (
    AuthError,
    DiskError,
    FileIntegrityError,
    FilmMirrorError,
    NetworkError,
    NotFound,
    SizeMismatch,
    TransferInterrupted,
)
from film_mirror.media.integrity import FileIntegrityChecker
from film_mirror.models.catalog import SourceDescriptor, TransferResult
from film_mirror.models.stats import DownloadStats
from film_mirror.utils.path import create_dir, free_space, partial_path

log = logging.getLogger(__name__)

_CONTENT_RANGE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")


def _file_size(path: Path) -> int:
    """Returns the size of ``path`` in bytes, or 0 if it does not exist."""
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        return 0


def _discard(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def parse_content_range(value: str | None) -> tuple[int, int | None] | None:
    """
    Parses ``bytes <start>-<end>/<total>`` into ``(start, total)``. The total is
    None when the server reports it as ``*``.
    """
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if not match:
        return None
    start, _end, total = match.groups()
    return int(start), None if total == "*" else int(total)


class Downloader:
    """A resumable single-file downloader with adaptive chunk sizing."""

    MIN_CHUNK_SIZE = 131072  # 128 KB
    MAX_CHUNK_SIZE = 1048576  # 1 MB

    def __init__(
        self,
        timeout: float = 3600,
        verify_media: bool = False,
        max_workers: int = 4,
    ):
        """
        Args:
            timeout: Upper bound in seconds for a single transfer attempt.
            verify_media: Whether to parse the finished file as MP4 before the
                final rename.
            max_workers: Number of concurrent transfers, used to size the pool.
        """
        self.timeout = timeout
        self.verify_media = verify_media
        self.max_workers = max_workers

        self._session: aiohttp.ClientSession | None = None
        self._chunk_size = self.MIN_CHUNK_SIZE

    async def _get_session(self) -> aiohttp.ClientSession:
        """Gets or creates the ClientSession shared by this downloader's transfers."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_workers * 2,
                limit_per_host=self.max_workers,
                ttl_dns_cache=600,  # 10 minutes
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(
                    total=self.timeout, sock_connect=15, sock_read=90
                ),
                # Byte offsets must refer to the stored representation
                auto_decompress=False,
            )
            log.debug(f"Created download pool with limit_per_host={self.max_workers}")
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            log.debug("Downloader connection pool closed.")

    def _adapt_chunk_size(self, current_speed_bps: float) -> int:
        """Adapts the chunk size based on current network speed."""
        if current_speed_bps > 10 * 1024 * 1024:  # > 10 MB/s
            self._chunk_size = self.MAX_CHUNK_SIZE
        elif current_speed_bps > 5 * 1024 * 1024:  # > 5 MB/s
            self._chunk_size = 524288  # 512 KB
        elif current_speed_bps > 1 * 1024 * 1024:  # > 1 MB/s
            self._chunk_size = 262144  # 256 KB
        else:
            self._chunk_size = self.MIN_CHUNK_SIZE
        return self._chunk_size

    async def transfer(
        self,
        source: SourceDescriptor,
        destination: Path,
        shutdown_event: asyncio.Event | None = None,
        stats: DownloadStats | None = None,
        progress_manager: ProgressManager | None = None,
        task_id: TaskID | None = None,
    ) -> TransferResult:
        """
        Downloads ``source`` to ``destination``, resuming a previous partial file.

        Returns:
            A TransferResult whose ``bytes_written`` is the final file size.

        Raises:
            NetworkError: Connection failures, timeouts and unexpected statuses.
            AuthError: The source answered 401 or 403.
            NotFound: The source answered 404 or 410.
            DiskError: The destination could not be written or is too full.
            SizeMismatch: The finished file failed verification and was discarded.
            TransferInterrupted: ``shutdown_event`` was set mid-transfer.
        """
        destination = Path(destination)
        existing = await asyncio.to_thread(_file_size, destination)
        if existing > 0:
            if not source.expected_size or existing == source.expected_size:
                log.debug(f"'{destination.name}' already exists, skipping transfer.")
                return TransferResult(bytes_written=existing, reused=True)
            log.warning(
                f"'{destination.name}' has {existing} bytes but {source.expected_size} "
                "are expected; downloading it again."
            )
            try:
                await asyncio.to_thread(_discard, destination)
            except OSError as e:
                raise DiskError(f"Cannot remove '{destination}': {e}") from e

        part = partial_path(destination)
        try:
            await asyncio.to_thread(create_dir, destination.parent)
            offset = await asyncio.to_thread(_file_size, part)
        except OSError as e:
            raise DiskError(f"Cannot prepare '{destination.parent}': {e}") from e

        headers = dict(source.headers)
        if offset:
            headers["Range"] = f"bytes={offset}-"
            log.debug(f"Resuming '{destination.name}' from byte {offset}.")

        session = await self._get_session()
        bytes_written = offset
        try:
            async with session.get(source.url, headers=headers) as response:
                mode, offset, expected = await self._check_response(
                    response, part, offset, source
                )
                bytes_written = offset

                if expected is not None:
                    await self._check_free_space(part.parent, expected - offset)
                if progress_manager and task_id is not None:
                    progress_manager.update_task_total(
                        task_id, expected, resumed_from=offset
                    )

                async with aiofiles.open(part, mode) as f:
                    last_speed_check = asyncio.get_running_loop().time()
                    async for chunk in response.content.iter_chunked(self._chunk_size):
                        await f.write(chunk)
                        bytes_written += len(chunk)

                        if stats:
                            await stats.add_bytes(len(chunk))
                            now = asyncio.get_running_loop().time()
                            if now - last_speed_check > 2.0:
                                self._adapt_chunk_size(stats.current_speed_bps)
                                last_speed_check = now
                        if progress_manager and task_id is not None:
                            progress_manager.update_task_progress(
                                task_id, completed=bytes_written
                            )
                        if shutdown_event is not None and shutdown_event.is_set():
                            raise TransferInterrupted(
                                f"Shutdown requested; kept {bytes_written} bytes of "
                                f"'{part.name}'.",
                                bytes_written=bytes_written,
                            )

            await self._verify(part, bytes_written, expected)
            await asyncio.to_thread(os.replace, part, destination)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(
                f"Transfer of '{destination.name}' failed: {e or type(e).__name__}",
                bytes_written=bytes_written,
            ) from e
        except OSError as e:
            raise DiskError(
                f"Cannot write '{part}': {e}", bytes_written=bytes_written
            ) from e

        log.debug(
            f"'{destination.name}' complete ({bytes_written} bytes, "
            f"resumed from {offset})."
        )
        return TransferResult(bytes_written=bytes_written, resumed_from=offset)

    async def _check_response(
        self,
        response: aiohttp.ClientResponse,
        part: Path,
        offset: int,
        source: SourceDescriptor,
    ) -> tuple[str, int, int | None]:
        """
        Maps the response status to a write plan.

        Returns:
            The file mode for the partial file, the offset writing starts at and
            the expected final size if it is known.
        """
        status = response.status
        if status == 416:
            await asyncio.to_thread(_discard, part)
            raise SizeMismatch(
                f"Server rejected resume offset {offset}; discarded partial file."
            )
        if status in (401, 403):
            raise AuthError(
                f"Access to '{source.remote_id}' was denied (HTTP {status}).",
                bytes_written=offset,
            )
        if status in (404, 410):
            raise NotFound(f"'{source.remote_id}' is gone (HTTP {status}).")
        if status not in (200, 206):
            raise NetworkError(
                f"Unexpected HTTP {status} for '{source.remote_id}'.",
                bytes_written=offset,
            )

        content_length = response.content_length
        if status == 206:
            content_range = parse_content_range(response.headers.get("Content-Range"))
            if content_range is not None and content_range[0] != offset:
                await asyncio.to_thread(_discard, part)
                raise SizeMismatch(
                    f"Server resumed at byte {content_range[0]} instead of {offset}; "
                    "discarded partial file."
                )
            range_total = content_range[1] if content_range else None
            mode = "ab"
        else:
            if offset:
                log.debug("Server ignored the range request; restarting from zero.")
            offset = 0
            range_total = None
            mode = "wb"

        if source.expected_size:
            expected = source.expected_size
        elif range_total is not None:
            expected = range_total
        elif content_length is not None:
            expected = content_length + offset
        else:
            expected = None
        return mode, offset, expected

    async def _check_free_space(self, directory: Path, remaining: int) -> None:
        available = await asyncio.to_thread(free_space, directory)
        if remaining > available:
            raise DiskError(
                f"Not enough free space in '{directory}': need {remaining} bytes, "
                f"{available} available."
            )

    async def _verify(self, part: Path, size: int, expected: int | None) -> None:
        """Discards the partial file and raises if the finished transfer is wrong."""
        if expected is not None and size != expected:
            await asyncio.to_thread(_discard, part)
            raise SizeMismatch(
                f"'{part.name}' has {size} bytes, expected {expected}; discarded."
            )
        if size == 0:
            await asyncio.to_thread(_discard, part)
            raise SizeMismatch(f"'{part.name}' is empty; discarded.")
        if self.verify_media:
            valid = await asyncio.to_thread(FileIntegrityChecker.check_mp4, str(part))
            if not valid:
                await asyncio.to_thread(_discard, part)
                raise FileIntegrityError(
                    f"'{part.name}' is not a playable MP4 file; discarded."
                )

    async def download_asset(
        self, url: str, destination: Path, headers: dict[str, str] | None = None
    ) -> bool:
        """
        Downloads a small asset (like a thumbnail) if it doesn't already exist.
        Failures are logged and never raised. Returns True if a file was written.
        """
        source = SourceDescriptor(remote_id=url, url=url, headers=headers or {})
        try:
            result = await self.transfer(source, destination)
        except (FilmMirrorError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.debug(f"Failed to download asset '{Path(destination).name}': {e}")
            return False
        return not result.reused
