"""Range queries over a household's events.

Single events are filtered directly; recurring events are expanded lazily and
all per-event streams are merged with ``heapq.merge`` so only as many
occurrences as the page needs are ever generated.
"""

from __future__ import annotations

import base64
import binascii
import heapq
import json
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from itertools import islice
from typing import TYPE_CHECKING, Any, Optional

from hearthcal.calendar.datetime_utils import naive_to_local_ms, serialize_utc_ms
from hearthcal.calendar.models import EventRow, Occurrence, QueryPage, SkippedEvent
from hearthcal.calendar.occurrence_expander import (
    OccurrenceExpander,
    OccurrenceSeries,
    occurrence_end_utc_ms,
)
from hearthcal.calendar.time_errors import RangeInvalidError, TimekeepingError
from hearthcal.calendar.tz_resolver import TimezoneResolver

if TYPE_CHECKING:
    from hearthcal.calendar.protocols import EventRepository

logger = logging.getLogger(__name__)

_DAY_MS = 86_400_000


@dataclass
class QueryConfig:
    """Configuration for range queries."""

    default_limit: int = 500
    max_limit: int = 10_000
    # Allowance for a stale start_at_utc cache when pre-filtering series
    prefilter_slack_ms: int = _DAY_MS

    @classmethod
    def from_settings(cls, settings: Any) -> QueryConfig:
        """Extract query configuration from a settings object."""
        return cls(
            default_limit=getattr(settings, "query_default_limit", 500),
            max_limit=getattr(settings, "query_max_limit", 10_000),
            prefilter_slack_ms=getattr(settings, "query_prefilter_slack_ms", _DAY_MS),
        )


def encode_cursor(start_utc_ms: int, event_id: str) -> str:
    """Encode a ``(start, event_id)`` sort key as an opaque cursor."""
    payload = json.dumps([start_utc_ms, event_id], separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[int, str]:
    """Decode a cursor produced by ``encode_cursor``.

    Raises:
        ValueError: If the cursor is not one this engine issued
    """
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        start, event_id = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError, TypeError) as e:
        raise ValueError(f"Invalid pagination cursor: {cursor!r}") from e
    if not isinstance(start, int) or not isinstance(event_id, str):
        raise ValueError(f"Invalid pagination cursor: {cursor!r}")
    return start, event_id


def _intersects(start_ms: int, end_ms: int, from_utc_ms: int, to_utc_ms: int) -> bool:
    return start_ms < to_utc_ms and (end_ms > from_utc_ms or start_ms >= from_utc_ms)


class QueryEngine:
    """Produces the ordered occurrences of a household inside a window.

    The engine is pure: it keeps no state between calls, so one instance may
    serve concurrent queries.

    Args:
        expander: Occurrence expander bound to the tz database in force
        config: Pagination limits and pre-filter slack
    """

    def __init__(
        self, expander: Optional[OccurrenceExpander] = None, config: Optional[QueryConfig] = None
    ) -> None:
        self.expander = expander or OccurrenceExpander()
        self.config = config or QueryConfig()

    @property
    def resolver(self) -> TimezoneResolver:
        return self.expander.resolver

    def _single_occurrence(
        self, row: EventRow, household_tz: Optional[str], from_utc_ms: int, to_utc_ms: int
    ) -> list[Occurrence]:
        zone = self.resolver.effective_zone(row.tz, household_tz)
        if row.start_at_utc is not None:
            start_ms = row.start_at_utc
        else:
            start_ms = self.resolver.local_ms_to_utc_ms(row.start_at, zone)

        if row.end_at_utc is not None:
            end_ms = row.end_at_utc
        elif row.end_at is not None:
            end_ms = max(self.resolver.local_ms_to_utc_ms(row.end_at, zone), start_ms)
        else:
            end_ms = start_ms

        if not _intersects(start_ms, end_ms, from_utc_ms, to_utc_ms):
            return []
        return [
            Occurrence(
                event_id=row.id,
                occurrence_start_utc=start_ms,
                occurrence_end_utc=end_ms,
                local_start_ms=row.start_at,
                tz=zone.name,
                title=row.title,
            )
        ]

    def _series_occurrences(
        self,
        row: EventRow,
        household_tz: Optional[str],
        from_utc_ms: int,
        to_utc_ms: int,
        resume_from_utc_ms: Optional[int] = None,
        truncated: Optional[dict[str, tuple[int, str]]] = None,
    ) -> Iterator[Occurrence]:
        series = self.expander.series_for_event(
            row.start_at, row.rrule or "", row.exdates, row.tz, household_tz
        )
        until_ms = series.rule.until_utc_ms
        duration_ms = row.duration_ms

        if until_ms is not None and until_ms < from_utc_ms - duration_ms:
            return iter(())
        if (
            row.start_at_utc is not None
            and row.start_at_utc > to_utc_ms + self.config.prefilter_slack_ms
        ):
            return iter(())

        # Expand from (from - duration) so occurrences in progress at `from` are kept
        expand_from = from_utc_ms - duration_ms
        if resume_from_utc_ms is not None:
            expand_from = max(expand_from, resume_from_utc_ms)
        return self._generate_series(
            row, series, duration_ms, expand_from, from_utc_ms, to_utc_ms, truncated
        )

    def _generate_series(
        self,
        row: EventRow,
        series: OccurrenceSeries,
        duration_ms: int,
        expand_from_utc_ms: int,
        from_utc_ms: int,
        to_utc_ms: int,
        truncated: Optional[dict[str, tuple[int, str]]] = None,
    ) -> Iterator[Occurrence]:
        cap = self.expander.config.max_occurrences_per_series
        produced = 0
        for instant in series.between(expand_from_utc_ms, to_utc_ms, capped=False):
            end_ms = occurrence_end_utc_ms(self.resolver, series.zone, instant, duration_ms)
            if not _intersects(instant.start_utc_ms, end_ms, from_utc_ms, to_utc_ms):
                continue
            if produced >= cap:
                logger.warning(
                    "Series %s reached %d occurrences in one page; page ends early", row.id, cap
                )
                if truncated is not None:
                    truncated[row.id] = (instant.start_utc_ms, row.id)
                return
            produced += 1
            yield Occurrence(
                event_id=row.id,
                occurrence_start_utc=instant.start_utc_ms,
                occurrence_end_utc=end_ms,
                series_id=row.id,
                local_start_ms=naive_to_local_ms(instant.local_start),
                tz=series.zone.name,
                title=row.title,
            )

    def iter_occurrences(
        self,
        rows: Iterable[EventRow],
        from_utc_ms: int,
        to_utc_ms: int,
        household_tz: Optional[str] = None,
        skipped: Optional[list[SkippedEvent]] = None,
        resume_from_utc_ms: Optional[int] = None,
        truncated: Optional[dict[str, tuple[int, str]]] = None,
    ) -> Iterator[Occurrence]:
        """Lazily merge the occurrences of ``rows`` in ``(start, event_id)`` order.

        Rows whose stored rule, zone or exclusions are invalid are appended to
        ``skipped`` (when given) and logged; they never fail the query.

        ``resume_from_utc_ms`` lets series expansion start at a cursor instead
        of the window start. A series that yields more than
        ``max_occurrences_per_series`` items stops, and the sort key of its
        first missing occurrence is recorded in ``truncated``.

        Raises:
            RangeInvalidError: If ``from_utc_ms >= to_utc_ms``
        """
        if from_utc_ms >= to_utc_ms:
            raise RangeInvalidError(
                from_utc_ms=serialize_utc_ms(from_utc_ms), to_utc_ms=serialize_utc_ms(to_utc_ms)
            )

        streams: list[Iterable[Occurrence]] = []
        for row in rows:
            try:
                if row.is_recurring:
                    streams.append(
                        self._series_occurrences(
                            row,
                            household_tz,
                            from_utc_ms,
                            to_utc_ms,
                            resume_from_utc_ms,
                            truncated,
                        )
                    )
                else:
                    streams.append(
                        self._single_occurrence(row, household_tz, from_utc_ms, to_utc_ms)
                    )
            except TimekeepingError as e:
                logger.warning(
                    "Skipping event %s in household %s: %s (%s)",
                    row.id,
                    row.household_id,
                    e.message,
                    e.code.value,
                )
                if skipped is not None:
                    skipped.append(
                        SkippedEvent(event_id=row.id, code=e.code.value, message=e.message)
                    )

        return heapq.merge(*streams, key=lambda occurrence: occurrence.sort_key)

    def list_range(
        self,
        household_id: str,
        from_utc_ms: int,
        to_utc_ms: int,
        rows: Sequence[EventRow],
        household_tz: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        offset: int = 0,
    ) -> QueryPage:
        """Return one page of occurrences intersecting ``[from, to)``.

        Args:
            household_id: Household the query is scoped to; rows of other
                households are ignored
            from_utc_ms: Inclusive window start (UTC ms)
            to_utc_ms: Exclusive window end (UTC ms)
            rows: The household's stored events
            household_tz: Household fallback zone
            limit: Page size (defaults to ``QueryConfig.default_limit``, capped
                at ``QueryConfig.max_limit``)
            cursor: Resume after the last item of a previous page
            offset: Number of items to skip after the cursor position

        Returns:
            QueryPage with ordered items, ``next_cursor`` when more remain, and
            the events that could not be expanded

        Raises:
            RangeInvalidError: If ``from_utc_ms >= to_utc_ms``
            ValueError: For a malformed cursor, non-positive limit or negative offset
        """
        page_size = self.config.default_limit if limit is None else limit
        if page_size <= 0:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")
        page_size = min(page_size, self.config.max_limit)
        after = decode_cursor(cursor) if cursor else None

        skipped: list[SkippedEvent] = []
        truncated: dict[str, tuple[int, str]] = {}
        scoped = [row for row in rows if row.household_id == household_id]
        merged = self.iter_occurrences(
            scoped,
            from_utc_ms,
            to_utc_ms,
            household_tz,
            skipped,
            resume_from_utc_ms=after[0] if after is not None else None,
            truncated=truncated,
        )
        if after is not None:
            merged = (occurrence for occurrence in merged if occurrence.sort_key > after)

        window = list(islice(merged, offset, offset + page_size + 1))
        has_more = len(window) > page_size
        items = window[:page_size]
        next_cursor = encode_cursor(*items[-1].sort_key) if has_more and items else None

        if truncated:
            # Past the first missing occurrence the merge is incomplete
            cut = min(truncated.values())
            items = [occurrence for occurrence in items if occurrence.sort_key < cut]
            has_more = True
            next_cursor = encode_cursor(*(items[-1].sort_key if items else (cut[0], "")))

        logger.debug(
            "Range query household=%s window=[%s, %s) returned %d item(s), has_more=%s, skipped=%d",
            household_id,
            serialize_utc_ms(from_utc_ms),
            serialize_utc_ms(to_utc_ms),
            len(items),
            has_more,
            len(skipped),
        )
        return QueryPage(
            items=items,
            next_cursor=next_cursor,
            has_more=has_more,
            skipped=skipped,
            truncated=sorted(truncated),
        )

    async def list_range_from_store(
        self,
        store: EventRepository,
        household_id: str,
        from_utc_ms: int,
        to_utc_ms: int,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        offset: int = 0,
    ) -> QueryPage:
        """Load a household's rows and fallback zone from ``store`` and query them."""
        if from_utc_ms >= to_utc_ms:
            raise RangeInvalidError(
                from_utc_ms=serialize_utc_ms(from_utc_ms), to_utc_ms=serialize_utc_ms(to_utc_ms)
            )
        rows = await store.list_events(household_id)
        household_tz = await store.get_household_tz(household_id)
        return self.list_range(
            household_id,
            from_utc_ms,
            to_utc_ms,
            rows,
            household_tz=household_tz,
            limit=limit,
            cursor=cursor,
            offset=offset,
        )
