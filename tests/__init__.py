"""
Catalog sync test suite.

This package contains:
- unit/: Unit tests (temporary SQLite files, in-memory object store)
- integration/: Integration tests (several simulated instances sharing one
  in-memory object store, HTTP app through the aiohttp test client)
"""
