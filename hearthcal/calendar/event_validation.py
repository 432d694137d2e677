"""Write-time validation for events entering storage.

Everything that can be wrong with a stored event is rejected here, before the
row is persisted, so the query path never has to second-guess it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from hearthcal.calendar.datetime_utils import local_ms_to_naive
from hearthcal.calendar.exdate_parser import (
    find_unmatched_exdates,
    format_exdates,
    parse_exdates,
)
from hearthcal.calendar.models import EventRow
from hearthcal.calendar.occurrence_expander import OccurrenceExpander
from hearthcal.calendar.rrule_parser import parse_rrule
from hearthcal.calendar.time_errors import ExdateOutOfRangeError, RangeInvalidError
from hearthcal.core.timezone_utils import sanitize_tz

logger = logging.getLogger(__name__)


@dataclass
class EventValidationResult:
    """A validated event ready to persist, plus advisory findings.

    Attributes:
        event: Copy of the input with canonical tz/exdates and fresh UTC caches
        unmatched_exdates: In-range EXDATE instants that match no occurrence
    """

    event: EventRow
    unmatched_exdates: list[int] = field(default_factory=list)


def validate_event_for_write(
    event: EventRow,
    household_tz: Optional[str] = None,
    expander: Optional[OccurrenceExpander] = None,
) -> EventValidationResult:
    """Validate an event and compute its cached UTC instants.

    Args:
        event: Event as submitted by the authoring layer
        household_tz: Fallback zone of the owning household
        expander: Expander bound to the tz database in force

    Returns:
        EventValidationResult with the canonicalized event

    Raises:
        RangeInvalidError: ``end_at`` before ``start_at``
        TimezoneUnknownError: Effective zone does not resolve
        RRuleParseError: Malformed rule
        RRuleUnsupportedFieldError: Rule outside the supported grammar
        ExdateInvalidFormatError: EXDATE entry malformed or not UTC
        ExdateOutOfRangeError: EXDATE entry outside the series bound
    """
    expander = expander or OccurrenceExpander()
    resolver = expander.resolver

    if event.end_at is not None and event.end_at < event.start_at:
        raise RangeInvalidError(
            "Event end must not be before its start",
            event_id=event.id,
            start_at=event.start_at,
            end_at=event.end_at,
        )

    tz = sanitize_tz(event.tz)
    if tz is not None:
        tz = resolver.zone_for_name(tz).name
    zone = resolver.effective_zone(tz, household_tz)

    rrule_text = event.rrule.strip() if event.is_recurring and event.rrule else None
    canonical_exdates: Optional[str] = None
    unmatched: list[int] = []

    if rrule_text:
        rule = parse_rrule(rrule_text)
        series = expander.series(rule, local_ms_to_naive(event.start_at), zone)
        bounds = series.bounds()
        exdates = parse_exdates(event.exdates)
        if exdates:
            if bounds is None:
                raise ExdateOutOfRangeError(
                    exdates.canonical().split(",")[0],
                    "Series generates no occurrences, so nothing can be excluded",
                    event_id=event.id,
                )
            exdates = parse_exdates(event.exdates, bounds)
            last_excluded = max(exdates.instants)
            # Bounded by the last exclusion, so the per-series cap does not apply
            matched = (
                occurrence.start_utc_ms
                for occurrence in series.between(
                    bounds.first_utc_ms, last_excluded + 1, include_excluded=True, capped=False
                )
            )
            unmatched = find_unmatched_exdates(exdates, matched)
            canonical_exdates = exdates.canonical()
    elif event.exdates and event.exdates.strip():
        # Exclusions without a rule are meaningless but must still be well formed
        canonical_exdates = format_exdates(parse_exdates(event.exdates).instants) or None

    start_utc, end_utc = expander.first_occurrence_window(
        event.start_at, event.end_at, rrule_text, tz, household_tz
    )
    validated = event.model_copy(
        update={
            "tz": tz,
            "rrule": rrule_text,
            "exdates": canonical_exdates,
            "start_at_utc": start_utc,
            "end_at_utc": end_utc,
        }
    )
    if unmatched:
        logger.warning(
            "Event %s has %d exclusion(s) matching no occurrence", event.id, len(unmatched)
        )
    return EventValidationResult(event=validated, unmatched_exdates=unmatched)
