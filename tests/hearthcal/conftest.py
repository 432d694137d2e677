from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

import pytest

from hearthcal.calendar.datetime_utils import datetime_to_utc_ms, naive_to_local_ms
from hearthcal.calendar.occurrence_expander import OccurrenceExpander
from hearthcal.calendar.tz_resolver import TimezoneResolver
from hearthcal.storage.sqlite_store import SQLiteEventStore


@pytest.fixture
def resolver() -> TimezoneResolver:
    """Resolver on the interpreter's tz database."""
    return TimezoneResolver()


@pytest.fixture
def expander(resolver: TimezoneResolver) -> OccurrenceExpander:
    return OccurrenceExpander(resolver)


@pytest.fixture
def utc_ms() -> Callable[..., int]:
    """Build UTC epoch milliseconds from datetime components."""

    def _utc_ms(*parts: int) -> int:
        return datetime_to_utc_ms(datetime(*parts, tzinfo=UTC))

    return _utc_ms


@pytest.fixture
def local_ms() -> Callable[..., int]:
    """Build local-naive epoch milliseconds from datetime components."""

    def _local_ms(*parts: int) -> int:
        return naive_to_local_ms(datetime(*parts))

    return _local_ms


@pytest.fixture
def test_timezone() -> str:
    """Deterministic zone with DST transitions on 2024-03-10 and 2024-11-03."""
    return "America/New_York"


@pytest.fixture
async def sqlite_store(tmp_path: Path) -> AsyncIterator[SQLiteEventStore]:
    """Initialized SQLite store on a temporary file."""
    store = SQLiteEventStore(tmp_path / "hearthcal_test.db")
    await store.initialize()
    yield store
