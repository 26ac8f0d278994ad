"""
API layer for the catalog sync service.

This module contains:
- HTTP status surface (aiohttp): health, sync status, manual trigger, conflicts
"""

from .http_server import HttpServer, create_http_app

__all__ = ["HttpServer", "create_http_app"]
