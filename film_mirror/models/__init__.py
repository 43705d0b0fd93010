"""
Data Models Layer.

This package contains the pydantic models and dataclasses that define the core
data structures used throughout the application: configuration, catalog rows,
API payloads and run statistics.
"""

from .catalog import EligibleFilm, Film, FilmDownload, FilmStatus, SourceDescriptor
from .config import MirrorConfig
from .stats import DownloadStats, ReconcileReport, SyncReport

__all__ = [
    "DownloadStats",
    "EligibleFilm",
    "Film",
    "FilmDownload",
    "FilmStatus",
    "MirrorConfig",
    "ReconcileReport",
    "SourceDescriptor",
    "SyncReport",
]
