"""
Operational tools for the catalog sync service.

This module contains:
- sync_cli: operator CLI (run, status, conflicts, ack, backups, restore, rebuild-seed)
"""
