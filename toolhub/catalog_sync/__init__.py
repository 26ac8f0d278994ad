"""
Catalog Sync - shared tool/function catalog for multi-instance query servers.

Each server instance keeps its own SQLite copy of the catalog and reconciles
it with one shared copy in a remote object store (S3). There is no lock
server: instances coordinate through a lease object written with conditional
writes.

Architecture:
    ┌──────────────┐      ┌──────────────────────────────────────────────┐
    │  Scheduler / │─────▶│                Synchronizer                  │
    │  HTTP / CLI  │      │ lease → versions → download → merge → backup │
    └──────────────┘      │        → upload → publish → release          │
                          └──────┬─────────────┬───────────────┬─────────┘
                                 │             │               │
                                 ▼             ▼               ▼
                          ┌────────────┐ ┌───────────┐ ┌──────────────────┐
                          │  SQLite    │ │    S3     │ │    Recovery      │
                          │ (catalog)  │ │ lease +   │ │ restore / seed / │
                          │            │ │ catalog + │ │ offline          │
                          └────────────┘ │ backups   │ └──────────────────┘
                                         └───────────┘

Invariants:
    - At most one unexpired lease exists on the remote store
    - Only the lease holder merges and uploads
    - Uploads are conditional on the ETag that was downloaded
    - The local store is only rewritten after a successful upload, in one transaction
    - Nothing inside a sync cycle raises past the Synchronizer

How to change safely:
    - Keep the remote catalog document format additive (new keys only)
    - Register schema changes as idempotent migrations, bump minor for additive changes
    - Bump the major version only together with a manual migration plan

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
