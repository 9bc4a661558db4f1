"""
Persistence Layer

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import LedgerEntry, LedgerOutcome, EntryType
from .repository import LedgerRepository
from .catalog import (
    SqlResourceCatalog,
    VMCatalog,
    ManagedAppCatalog,
    AddOnCatalog,
    default_catalogs,
)

__all__ = [
    "Database",
    "get_database",
    "LedgerEntry",
    "LedgerOutcome",
    "EntryType",
    "LedgerRepository",
    "SqlResourceCatalog",
    "VMCatalog",
    "ManagedAppCatalog",
    "AddOnCatalog",
    "default_catalogs",
]
