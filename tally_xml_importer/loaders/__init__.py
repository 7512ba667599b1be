"""
Database loaders for extracted Tally data.

This module contains the PostgreSQL side of the importer:
- Connection management and schema setup
- Batch persistence of voucher headers, their child rows and masters
- Group and ledger hierarchy paths
"""

from .base import DatabaseLoader, get_connection
from .hierarchy import HIERARCHY_TABLE, hierarchy_path, resolve_paths
from .persister import BatchPersister, DEFAULT_TABLES, HEADER_TABLE, MASTER_TABLES

__all__ = [
    "DatabaseLoader",
    "get_connection",
    "BatchPersister",
    "DEFAULT_TABLES",
    "HEADER_TABLE",
    "MASTER_TABLES",
    "HIERARCHY_TABLE",
    "hierarchy_path",
    "resolve_paths",
]
