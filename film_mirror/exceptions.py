"""
Defines custom exceptions for the application to allow for more specific error handling.

Download failures carry a ``retryable`` flag which the coordinator uses to decide
between backing off and giving up on a film.
"""


class FilmMirrorError(Exception):
    """Base exception for all application-specific errors."""

    retryable = False


class ConfigurationError(FilmMirrorError):
    """Raised for issues related to configuration loading or validation."""


class CatalogError(FilmMirrorError):
    """Raised when the catalog database cannot be opened or written."""


class ApiError(FilmMirrorError):
    """Raised when the offstream.dk API returns an unexpected payload."""


class NotAvailable(FilmMirrorError):
    """Raised when a film is not in a downloadable state. Skipped silently."""


class ClaimConflict(FilmMirrorError):
    """Raised when another worker or process already holds the film's claim."""


class ResolutionError(FilmMirrorError):
    """Raised when a remote video id cannot be resolved to a streamable URL."""

    retryable = True


class NotFound(ResolutionError):
    """Raised when the remote video id no longer exists."""


class TransferError(FilmMirrorError):
    """Base class for byte-transfer failures; records how far the transfer got."""

    def __init__(self, message: str, bytes_written: int = 0):
        super().__init__(message)
        self.bytes_written = bytes_written


class NetworkError(TransferError):
    """Raised on connection resets, timeouts and server-side errors."""

    retryable = True


class AuthError(TransferError):
    """Raised when the remote source denies access to the media."""


class DiskError(TransferError):
    """Raised when the destination cannot be written (no space, permissions)."""


class SizeMismatch(TransferError):
    """
    Raised when a finished transfer fails verification. The partial file has been
    discarded, so the next attempt restarts from zero.
    """

    retryable = True


class FileIntegrityError(SizeMismatch):
    """Raised when a downloaded file fails a post-download container check."""


class TransferInterrupted(TransferError):
    """Raised when a shutdown was requested while a transfer was in flight."""
