"""Recurrence grammar, EXDATE handling, timezone resolution and expansion."""

from .models import EventRow, Household, Occurrence, QueryPage, SkippedEvent
from .occurrence_expander import ExpanderConfig, OccurrenceExpander, OccurrenceSeries
from .rrule_parser import RecurrenceRule, parse_rrule
from .time_errors import TimeErrorCode, TimekeepingError
from .tz_resolver import EffectiveZone, TimezoneResolver

__all__ = [
    "EffectiveZone",
    "EventRow",
    "ExpanderConfig",
    "Household",
    "Occurrence",
    "OccurrenceExpander",
    "OccurrenceSeries",
    "QueryPage",
    "RecurrenceRule",
    "SkippedEvent",
    "TimeErrorCode",
    "TimekeepingError",
    "TimezoneResolver",
    "parse_rrule",
]
