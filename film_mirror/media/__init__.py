"""
Media Processing Layer.

This package is responsible for all media file operations: resumable
downloading and integrity validation.
"""

from .downloader import Downloader
from .integrity import FileIntegrityChecker

__all__ = ["Downloader", "FileIntegrityChecker"]
