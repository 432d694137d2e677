"""Protocol definitions for the storage collaborators of hearthcal.

The engine is storage-agnostic: the query engine, backfill and drift detector
talk to anything that satisfies ``EventRepository``. ``SQLiteEventStore`` is
the reference implementation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from hearthcal.calendar.models import EventRow

RawEventRow = dict[str, Any]


@dataclass(frozen=True)
class RowUpdate:
    """Column changes for one event row, keyed by event id."""

    event_id: str
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackfillCheckpoint:
    """Persisted progress of a backfill run for one scope.

    ``scope`` is a household id, or ``"*"`` for a global run.
    """

    scope: str
    last_rowid: int = 0
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    updated_at: int = 0


class EventRepository(Protocol):
    """Protocol for event storage used by the timekeeping engine."""

    async def list_events(self, household_id: str) -> list[EventRow]:
        """Return the non-deleted events of a household.

        Args:
            household_id: Owning household

        Returns:
            Events as canonical rows
        """
        ...

    async def get_household_tz(self, household_id: str) -> Optional[str]:
        """Return the household's fallback timezone, or None when unset."""
        ...

    async def list_household_tzs(self) -> dict[str, Optional[str]]:
        """Return every household id mapped to its fallback timezone."""
        ...

    async def count_rows(self, household_id: Optional[str] = None) -> int:
        """Count non-deleted event rows in scope (all households when None)."""
        ...

    async def fetch_rows_after(
        self, after_rowid: int, limit: int, household_id: Optional[str] = None
    ) -> list[RawEventRow]:
        """Fetch raw rows with ``rowid > after_rowid`` in rowid order.

        Raw rows carry stored values untouched (legacy strings included) plus
        ``rowid`` and ``household_tz``.
        """
        ...

    async def apply_batch(
        self, updates: Sequence[RowUpdate], checkpoint: Optional[BackfillCheckpoint]
    ) -> None:
        """Write row updates and the checkpoint in a single transaction."""
        ...

    async def load_checkpoint(self, scope: str) -> Optional[BackfillCheckpoint]:
        """Load the checkpoint for a scope, or None when absent."""
        ...

    async def reset_checkpoint(self, scope: str) -> None:
        """Delete the checkpoint for a scope."""
        ...
