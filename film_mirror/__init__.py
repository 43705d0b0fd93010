"""
film-mirror: catalogs offstream.dk films and mirrors their videos locally.
"""

__version__ = "0.3.0"
