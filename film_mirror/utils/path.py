"""
Utilities for deriving download paths from film ids and checking the destination.
"""

import os
import shutil
from pathlib import Path

from film_mirror.exceptions import DiskError

VIDEO_EXTENSION = "mp4"
THUMBNAIL_EXTENSION = "jpg"
PARTIAL_SUFFIX = ".part"


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def film_destination(root: Path, film_id: int) -> Path:
    """The final, deterministic location of a film's video file."""
    return root / f"{film_id}.{VIDEO_EXTENSION}"


def thumbnail_destination(root: Path, film_id: int) -> Path:
    return root / f"{film_id}.{THUMBNAIL_EXTENSION}"


def partial_path(destination: Path) -> Path:
    """The temporary path a transfer writes to before the final rename."""
    return destination.with_name(destination.name + PARTIAL_SUFFIX)


def free_space(directory: Path) -> int:
    """Returns the number of free bytes on the filesystem holding ``directory``."""
    return shutil.disk_usage(directory).free


def ensure_writable_dir(directory: Path) -> None:
    """
    Creates ``directory`` if needed and verifies files can be created in it.

    Raises:
        DiskError: If the directory cannot be created or written to.
    """
    try:
        create_dir(directory)
    except OSError as e:
        raise DiskError(f"Cannot create download root '{directory}': {e}") from e

    if not os.access(directory, os.W_OK | os.X_OK):
        raise DiskError(f"Download root '{directory}' is not writable.")
