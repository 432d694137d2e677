"""Occurrence expansion for recurring household events.

Cadence is generated on naive local wall-clock time with ``dateutil.rrule``;
every candidate is then converted to UTC on its own through the resolver, so a
weekly 09:00 meeting stays at 09:00 local across DST transitions while its UTC
instant moves.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from dateutil import rrule as du_rrule

from hearthcal.calendar.datetime_utils import local_ms_to_naive
from hearthcal.calendar.exdate_parser import EMPTY_EXDATES, ExdateSet, SeriesBounds, parse_exdates
from hearthcal.calendar.rrule_parser import Frequency, RecurrenceRule, Weekday, parse_rrule
from hearthcal.calendar.tz_resolver import (
    EffectiveZone,
    ResolutionKind,
    TimezoneResolver,
)

logger = logging.getLogger(__name__)

_DAY_MS = 86_400_000

_DU_WEEKDAYS = {
    Weekday.MO: du_rrule.MO,
    Weekday.TU: du_rrule.TU,
    Weekday.WE: du_rrule.WE,
    Weekday.TH: du_rrule.TH,
    Weekday.FR: du_rrule.FR,
    Weekday.SA: du_rrule.SA,
    Weekday.SU: du_rrule.SU,
}


@dataclass
class ExpanderConfig:
    """Configuration for occurrence expansion.

    Consolidates expander limits with explicit defaults.
    """

    max_occurrences_per_series: int = 5000
    enable_fast_forward: bool = True
    # Whole periods kept in hand before the window when fast-forwarding
    fast_forward_margin_periods: int = 2

    @classmethod
    def from_settings(cls, settings: Any) -> ExpanderConfig:
        """Extract expander configuration from a settings object.

        Args:
            settings: Configuration object with expander settings

        Returns:
            ExpanderConfig with values from settings or defaults
        """
        return cls(
            max_occurrences_per_series=getattr(settings, "max_occurrences_per_series", 5000),
            enable_fast_forward=getattr(settings, "enable_fast_forward", True),
            fast_forward_margin_periods=getattr(settings, "fast_forward_margin_periods", 2),
        )


@dataclass(frozen=True)
class OccurrenceInstant:
    """One generated occurrence of a series.

    Attributes:
        index: Zero-based position in the series (excluded occurrences still
            take a position)
        local_start: Naive wall-clock start in the series zone
        start_utc_ms: Absolute start instant
        kind: How the wall clock resolved (exact, DST gap or overlap)
    """

    index: int
    local_start: datetime
    start_utc_ms: int
    kind: ResolutionKind = ResolutionKind.EXACT


def occurrence_end_utc_ms(
    resolver: TimezoneResolver,
    zone: EffectiveZone,
    occurrence: OccurrenceInstant,
    duration_ms: int,
) -> int:
    """End instant of an occurrence.

    The end wall clock is the local start plus the event's wall-clock duration,
    resolved on its own, so an overnight event keeps its local end time across
    a DST change. Never earlier than the start.
    """
    if duration_ms <= 0:
        return occurrence.start_utc_ms
    local_end = occurrence.local_start + timedelta(milliseconds=duration_ms)
    end_ms = resolver.local_to_utc(local_end, zone).utc_ms
    return max(end_ms, occurrence.start_utc_ms)


class OccurrenceSeries:
    """A recurrence rule bound to an anchor, a zone and an exclusion set.

    Instances are immutable; ``between`` builds a fresh generator on every
    call, so a series can be queried repeatedly and always yields the same
    sequence.
    """

    def __init__(
        self,
        rule: RecurrenceRule,
        anchor_local: datetime,
        zone: EffectiveZone,
        resolver: TimezoneResolver,
        exdates: ExdateSet = EMPTY_EXDATES,
        config: Optional[ExpanderConfig] = None,
    ) -> None:
        if anchor_local.tzinfo is not None:
            raise ValueError("anchor_local must be a naive wall-clock datetime")
        self.rule = rule
        self.anchor_local = anchor_local.replace(microsecond=0)
        self.zone = zone
        self.resolver = resolver
        self.exdates = exdates
        self.config = config or ExpanderConfig()

    def __repr__(self) -> str:
        return (
            f"OccurrenceSeries(rule={self.rule.to_rrule_string()!r}, "
            f"anchor={self.anchor_local.isoformat()}, zone={self.zone.label})"
        )

    @property
    def _period(self) -> timedelta:
        days = 1 if self.rule.freq is Frequency.DAILY else 7
        return timedelta(days=days * self.rule.interval)

    def _occurrences_per_period(self) -> int:
        if self.rule.freq is Frequency.WEEKLY and self.rule.byday:
            return len(self.rule.byday)
        return 1

    def _build_rrule(self, dtstart: datetime, count: Optional[int]) -> du_rrule.rrule:
        freq = du_rrule.DAILY if self.rule.freq is Frequency.DAILY else du_rrule.WEEKLY
        kwargs: dict[str, Any] = {
            "dtstart": dtstart,
            "interval": self.rule.interval,
            "wkst": du_rrule.MO,
        }
        if count is not None:
            kwargs["count"] = count
        if self.rule.byday:
            kwargs["byweekday"] = tuple(_DU_WEEKDAYS[day] for day in self.rule.sorted_byday())
        return du_rrule.rrule(freq, **kwargs)

    def _fast_forward(self, from_utc_ms: Optional[int]) -> tuple[datetime, int]:
        """Pick a later dtstart aligned to the cadence, and how many positions it skips."""
        if from_utc_ms is None or not self.config.enable_fast_forward:
            return self.anchor_local, 0

        anchor_utc_ms = self.resolver.local_to_utc(self.anchor_local, self.zone).utc_ms
        # One day of slack covers any UTC offset difference
        distance_ms = from_utc_ms - _DAY_MS - anchor_utc_ms
        period_ms = int(self._period.total_seconds() * 1000)
        periods = distance_ms // period_ms - self.config.fast_forward_margin_periods
        if periods < 1:
            return self.anchor_local, 0

        if self.rule.freq is Frequency.WEEKLY and self.rule.byday:
            week_start = self.anchor_local - timedelta(days=self.anchor_local.weekday())
            dtstart = week_start + self._period * periods
            anchor_weekday = self.anchor_local.weekday()
            first_period = sum(1 for day in self.rule.byday if day.index >= anchor_weekday)
            skipped = first_period + (periods - 1) * self._occurrences_per_period()
        else:
            dtstart = self.anchor_local + self._period * periods
            skipped = periods
        return dtstart, skipped

    def _candidates(self, from_utc_ms: Optional[int] = None) -> Iterator[OccurrenceInstant]:
        """Yield every in-bound occurrence, excluded ones included."""
        count = self.rule.count
        dtstart, skipped = self._fast_forward(from_utc_ms)
        if count is not None:
            if skipped >= count:
                return
            count -= skipped
        until_ms = self.rule.until_utc_ms

        for position, local_start in enumerate(self._build_rrule(dtstart, count)):
            resolved = self.resolver.local_to_utc(local_start, self.zone)
            if until_ms is not None and resolved.utc_ms > until_ms:
                return
            yield OccurrenceInstant(
                index=skipped + position,
                local_start=local_start,
                start_utc_ms=resolved.utc_ms,
                kind=resolved.kind,
            )

    def between(
        self,
        from_utc_ms: int,
        to_utc_ms: int,
        include_excluded: bool = False,
        capped: bool = True,
    ) -> Iterator[OccurrenceInstant]:
        """Lazily yield occurrences with ``from <= start < to``.

        Args:
            from_utc_ms: Inclusive window start (UTC ms)
            to_utc_ms: Exclusive window end (UTC ms)
            include_excluded: Yield EXDATE members too (used for matching)
            capped: Stop after ``max_occurrences_per_series`` results; callers
                that bound the work themselves pass False

        Yields:
            OccurrenceInstant in ascending order
        """
        if from_utc_ms >= to_utc_ms:
            return
        cap = self.config.max_occurrences_per_series if capped else None
        yielded = 0
        for occurrence in self._candidates(from_utc_ms):
            if occurrence.start_utc_ms >= to_utc_ms:
                return
            if occurrence.start_utc_ms < from_utc_ms:
                continue
            if not include_excluded and occurrence.start_utc_ms in self.exdates:
                continue
            if cap is not None and yielded >= cap:
                logger.warning(
                    "Series %r truncated at %d occurrences in window", self, cap
                )
                return
            yielded += 1
            yield occurrence

    def first_occurrence(self) -> Optional[OccurrenceInstant]:
        """First generated occurrence, excluded or not; None for an empty series."""
        return next(self._candidates(), None)

    def last_occurrence(self) -> Optional[OccurrenceInstant]:
        """Last generated occurrence, or None when the series is unbounded or empty."""
        if self.rule.is_unbounded:
            return None
        last: Optional[OccurrenceInstant] = None
        for occurrence in self._candidates():
            last = occurrence
        return last

    def bounds(self) -> Optional[SeriesBounds]:
        """First/last instants of the series; None when it generates nothing."""
        first = self.first_occurrence()
        if first is None:
            return None
        last = self.last_occurrence()
        return SeriesBounds(
            first_utc_ms=first.start_utc_ms,
            last_utc_ms=last.start_utc_ms if last is not None else None,
        )

    def end_utc_ms(self, occurrence: OccurrenceInstant, duration_ms: int) -> int:
        """End instant of ``occurrence`` for an event lasting ``duration_ms``."""
        return occurrence_end_utc_ms(self.resolver, self.zone, occurrence, duration_ms)

    def all_occurrences(self, limit: Optional[int] = None) -> Iterator[OccurrenceInstant]:
        """Iterate a bounded series from the start, EXDATE members removed.

        Unbounded series require ``limit``.
        """
        if self.rule.is_unbounded and limit is None:
            raise ValueError("limit is required for unbounded series")
        produced = 0
        for occurrence in self._candidates():
            if limit is not None and produced >= limit:
                return
            if occurrence.start_utc_ms in self.exdates:
                continue
            produced += 1
            yield occurrence


class OccurrenceExpander:
    """Builds occurrence series for stored events.

    Args:
        resolver: Timezone resolver bound to a tz database version
        config: Expansion limits; defaults apply when omitted
    """

    def __init__(
        self, resolver: Optional[TimezoneResolver] = None, config: Optional[ExpanderConfig] = None
    ) -> None:
        self.resolver = resolver or TimezoneResolver()
        self.config = config or ExpanderConfig()

    def series(
        self,
        rule: RecurrenceRule,
        anchor_local: datetime,
        zone: EffectiveZone,
        exdates: ExdateSet = EMPTY_EXDATES,
    ) -> OccurrenceSeries:
        return OccurrenceSeries(rule, anchor_local, zone, self.resolver, exdates, self.config)

    def expand(
        self,
        rule: RecurrenceRule,
        anchor_local: datetime,
        zone: EffectiveZone,
        exdates: ExdateSet,
        from_utc_ms: int,
        to_utc_ms: int,
    ) -> Iterator[OccurrenceInstant]:
        """Occurrences of ``rule`` inside ``[from, to)``, EXDATE members removed."""
        return self.series(rule, anchor_local, zone, exdates).between(from_utc_ms, to_utc_ms)

    def series_for_event(
        self,
        start_at: int,
        rrule_text: str,
        exdates_text: Optional[str],
        event_tz: Optional[str],
        household_tz: Optional[str] = None,
    ) -> OccurrenceSeries:
        """Build a series from stored event fields.

        Raises:
            RRuleParseError: Malformed rule
            RRuleUnsupportedFieldError: Rule outside the supported grammar
            TimezoneUnknownError: Effective zone does not resolve
            ExdateInvalidFormatError: Malformed EXDATE entry
        """
        rule = parse_rrule(rrule_text)
        zone = self.resolver.effective_zone(event_tz, household_tz)
        exdates = parse_exdates(exdates_text)
        return self.series(rule, local_ms_to_naive(start_at), zone, exdates)

    def first_occurrence_window(
        self,
        start_at: int,
        end_at: Optional[int],
        rrule_text: Optional[str],
        event_tz: Optional[str],
        household_tz: Optional[str] = None,
    ) -> tuple[int, int]:
        """Compute ``(start_at_utc, end_at_utc)`` for the event's first occurrence.

        Single events resolve their anchor directly. Recurring events use the
        first generated occurrence (EXDATE membership ignored); a series that
        generates nothing falls back to the anchor.

        Raises:
            TimezoneUnknownError: Effective zone does not resolve
            RRuleParseError: Malformed rule
            RRuleUnsupportedFieldError: Rule outside the supported grammar
        """
        zone = self.resolver.effective_zone(event_tz, household_tz)
        duration_ms = max(end_at - start_at, 0) if end_at is not None else 0
        first = self.first_occurrence_instant(start_at, rrule_text, zone)
        return first.start_utc_ms, occurrence_end_utc_ms(self.resolver, zone, first, duration_ms)

    def first_occurrence_instant(
        self, start_at: int, rrule_text: Optional[str], zone: EffectiveZone
    ) -> OccurrenceInstant:
        """First occurrence of an event in an already-resolved zone."""
        anchor = local_ms_to_naive(start_at)
        first: Optional[OccurrenceInstant] = None
        if rrule_text and rrule_text.strip():
            first = self.series(parse_rrule(rrule_text), anchor, zone).first_occurrence()
        if first is None:
            resolved = self.resolver.local_to_utc(anchor, zone)
            first = OccurrenceInstant(0, anchor, resolved.utc_ms, resolved.kind)
        return first
