"""
Remote API Layer.

This package handles communication with the offstream.dk catalog API and the
video player that serves the films.
"""

from .client import OffstreamAPIClient
from .locator import AssetLocator

__all__ = ["AssetLocator", "OffstreamAPIClient"]
