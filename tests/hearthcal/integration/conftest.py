"""Fixtures seeding a SQLite store with legacy and canonical event rows."""

from collections.abc import Awaitable
from typing import Callable

import pytest

from hearthcal.calendar.models import Household
from hearthcal.storage.sqlite_store import SQLiteEventStore


@pytest.fixture
def seed_legacy_rows(local_ms, utc_ms) -> Callable[[SQLiteEventStore], Awaitable[None]]:
    """Populate a store with one row per legacy shape plus one unusable row.

    Households: ``h1`` in America/New_York, ``h2`` in Europe/Berlin and ``h3``
    without a fallback zone.
    """

    async def _seed(store: SQLiteEventStore) -> None:
        await store.upsert_household(Household(id="h1", name="Parkers", tz="America/New_York"))
        await store.upsert_household(Household(id="h2", name="Bauers", tz="Europe/Berlin"))
        await store.upsert_household(Household(id="h3", name="Nomads"))

        start = local_ms(2024, 3, 10, 9)
        rows = [
            {
                "id": "legacy-seconds",
                "household_id": "h1",
                "title": "Dentist",
                "start_at": start // 1000,
                "end_at": (start + 3_600_000) // 1000,
                "tz": "America/New_York",
            },
            {
                "id": "legacy-iso",
                "household_id": "h1",
                "title": "School run",
                "start_at": "2024-03-08T09:00:00",
                "end_at": "2024-03-08T10:00:00",
                "tz": "US/Eastern",
                "rrule": "FREQ=DAILY;COUNT=5",
                "exdates": "20240310T130000Z",
            },
            {
                "id": "instant",
                "household_id": "h2",
                "title": "Football",
                "start_at": "2024-06-01T07:00:00Z",
                "tz": None,
            },
            {
                "id": "bad-tz",
                "household_id": "h1",
                "title": "Moon landing party",
                "start_at": start,
                "tz": "Nowhere/Land",
            },
            {
                "id": "canonical",
                "household_id": "h3",
                "title": "Standup",
                "start_at": local_ms(2024, 1, 2, 9),
                "end_at": local_ms(2024, 1, 2, 9, 15),
                "tz": "UTC",
                "start_at_utc": utc_ms(2024, 1, 2, 9),
                "end_at_utc": utc_ms(2024, 1, 2, 9, 15),
            },
        ]
        for row in rows:
            await store.insert_event(row)

    return _seed
