"""Storage backends for hearthcal."""

from .sqlite_store import SQLiteEventStore

__all__ = ["SQLiteEventStore"]
