"""
Seed definitions for the catalog.

Seed files are the original YAML definitions the catalog was bootstrapped
from. The Recovery Controller rebuilds the local store from them as a last
resort when both the store and its backups are unusable.

Seed format:
    version: 1
    tools:
      - id: top_customers
        author: seed
        description: Top customers by revenue
        query: "SELECT ..."
    functions:
      - id: revenue
        params: [start, end]
        body: "..."

Every key other than id/author/version becomes part of the record payload.

Invariants:
    - Seed records load with version 0 so any synced value supersedes them
    - Record ids are unique across tools and functions
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ..errors import SeedError
from .catalog_store import CatalogRecord

logger = logging.getLogger(__name__)

_SECTIONS = {"tools": "tool", "functions": "function"}
_RESERVED_KEYS = {"id", "author", "version"}


def parse_seed(data: dict[str, Any], source: str = "<seed>") -> list[CatalogRecord]:
    """Convert parsed seed data into catalog records.

    Args:
        data: Parsed YAML document
        source: Name used in error messages

    Returns:
        Seed records ordered as they appear in the document

    Raises:
        SeedError: If the document is malformed
    """
    if not isinstance(data, dict):
        raise SeedError(f"Seed document must be a mapping: {source}", path=source)

    records: list[CatalogRecord] = []
    seen: set[str] = set()

    for section, kind in _SECTIONS.items():
        entries = data.get(section) or []
        if not isinstance(entries, list):
            raise SeedError(f"'{section}' must be a list in {source}", path=source)

        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise SeedError(f"Every {kind} needs an 'id' in {source}", path=source)

            record_id = str(entry["id"])
            if record_id in seen:
                raise SeedError(f"Duplicate seed record '{record_id}' in {source}", path=source)
            seen.add(record_id)

            records.append(
                CatalogRecord(
                    record_id=record_id,
                    kind=kind,
                    payload={k: v for k, v in entry.items() if k not in _RESERVED_KEYS},
                    author=str(entry.get("author", "seed")),
                    version=0,
                    updated_at=0,
                )
            )

    return records


def load_seed(path: str | Path) -> list[CatalogRecord]:
    """Load seed records from a YAML file.

    Raises:
        SeedError: If the file is missing, unreadable or malformed
    """
    seed_path = Path(path)
    try:
        text = seed_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SeedError(f"Cannot read seed file {seed_path}: {e}", path=str(seed_path)) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SeedError(f"Invalid YAML in seed file {seed_path}: {e}", path=str(seed_path)) from e

    records = parse_seed(data or {}, source=str(seed_path))
    logger.info(f"Loaded {len(records)} seed records from {seed_path}")
    return records
