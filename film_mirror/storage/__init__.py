"""
Storage Layer.

This package handles all data persistence: the INI configuration file and the
SQLite film catalog with its download claims.
"""

from .catalog import CatalogStore
from .config_manager import ConfigManager

__all__ = ["CatalogStore", "ConfigManager"]
