"""Parser for the restricted RRULE grammar supported by hearthcal.

Only ``FREQ`` (``DAILY``/``WEEKLY``), ``INTERVAL``, ``COUNT``, ``UNTIL`` and
``BYDAY`` are accepted. Anything else is rejected with a named field so the
authoring UI can point at the offending part of the rule.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from hearthcal.calendar.datetime_utils import datetime_to_utc_ms, parse_basic_utc, utc_ms_to_datetime
from hearthcal.calendar.time_errors import RRuleParseError, RRuleUnsupportedFieldError

logger = logging.getLogger(__name__)

_POSITIVE_INT_RE = re.compile(r"^[1-9]\d*$")

RRULE_PREFIX = "RRULE:"


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class Weekday(str, Enum):
    """Two-letter RFC 5545 weekday codes, in Monday-first order."""

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def index(self) -> int:
        """Python weekday number (Monday == 0)."""
        return _WEEKDAY_ORDER.index(self)

    @classmethod
    def from_index(cls, index: int) -> Weekday:
        """Map a Python weekday number to its code."""
        return _WEEKDAY_ORDER[index % 7]


_WEEKDAY_ORDER: tuple[Weekday, ...] = tuple(Weekday)


@dataclass(frozen=True)
class CountBound:
    """Series ends after ``count`` generated occurrences."""

    count: int


@dataclass(frozen=True)
class UntilBound:
    """Series ends at ``until_utc_ms`` (inclusive, absolute instant)."""

    until_utc_ms: int

    @property
    def until(self) -> datetime:
        return utc_ms_to_datetime(self.until_utc_ms)


SeriesBound = Union[CountBound, UntilBound]


@dataclass(frozen=True)
class RecurrenceRule:
    """Immutable, validated recurrence rule."""

    freq: Frequency
    interval: int = 1
    bound: Optional[SeriesBound] = None
    byday: frozenset[Weekday] = field(default_factory=frozenset)

    @property
    def count(self) -> Optional[int]:
        return self.bound.count if isinstance(self.bound, CountBound) else None

    @property
    def until_utc_ms(self) -> Optional[int]:
        return self.bound.until_utc_ms if isinstance(self.bound, UntilBound) else None

    @property
    def is_unbounded(self) -> bool:
        return self.bound is None

    def sorted_byday(self) -> list[Weekday]:
        """BYDAY values in Monday-first order."""
        return sorted(self.byday, key=lambda day: day.index)

    def to_rrule_string(self) -> str:
        """Render the canonical text form (FREQ, INTERVAL, bound, BYDAY).

        Examples:
            >>> parse_rrule("byday=FR,MO;freq=weekly").to_rrule_string()
            'FREQ=WEEKLY;BYDAY=MO,FR'
        """
        parts = [f"FREQ={self.freq.value}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if isinstance(self.bound, CountBound):
            parts.append(f"COUNT={self.bound.count}")
        elif isinstance(self.bound, UntilBound):
            parts.append(f"UNTIL={self.bound.until.strftime('%Y%m%dT%H%M%SZ')}")
        if self.byday:
            parts.append("BYDAY=" + ",".join(day.value for day in self.sorted_byday()))
        return ";".join(parts)


def _split_pairs(text: str) -> dict[str, str]:
    body = text.strip()
    if body.upper().startswith(RRULE_PREFIX):
        body = body[len(RRULE_PREFIX):]

    pairs: dict[str, str] = {}
    for segment in body.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise RRuleParseError(f"Malformed recurrence segment: {segment!r}", segment=segment)
        key, value = segment.split("=", 1)
        key = key.strip().upper()
        if not key:
            raise RRuleParseError(f"Malformed recurrence segment: {segment!r}", segment=segment)
        if key in pairs:
            raise RRuleParseError(f"Duplicate recurrence key: {key}", field=key)
        pairs[key] = value.strip()
    return pairs


def _parse_positive_int(key: str, value: str) -> int:
    if not _POSITIVE_INT_RE.match(value):
        raise RRuleUnsupportedFieldError(key, f"{key} must be a positive integer, got {value!r}")
    return int(value)


def _parse_byday(value: str) -> frozenset[Weekday]:
    days: set[Weekday] = set()
    for token in value.split(","):
        token = token.strip().upper()
        if not token:
            continue
        try:
            days.add(Weekday(token))
        except ValueError:
            # Ordinal forms such as 1MO or -1FR land here too
            raise RRuleUnsupportedFieldError(
                "BYDAY", f"Unsupported BYDAY value: {token!r}"
            ) from None
    return frozenset(days)


def parse_rrule_until(value: str) -> int:
    """Parse an ``UNTIL`` value (``YYYYMMDDTHHMMSSZ``) to UTC milliseconds.

    Raises:
        RRuleUnsupportedFieldError: If the value is not in the compact UTC form
    """
    parsed = parse_basic_utc(value)
    if parsed is None:
        raise RRuleUnsupportedFieldError(
            "UNTIL", f"UNTIL must use YYYYMMDDTHHMMSSZ, got {value!r}"
        )
    return datetime_to_utc_ms(parsed)


def parse_rrule(text: Optional[str]) -> RecurrenceRule:
    """Parse a restricted RRULE string.

    Args:
        text: Semicolon-separated ``KEY=VALUE`` pairs; keys are case-insensitive
            and an ``RRULE:`` prefix is tolerated.

    Returns:
        Validated RecurrenceRule

    Raises:
        RRuleParseError: Structural problems (empty rule, missing ``=``,
            duplicate key, missing FREQ)
        RRuleUnsupportedFieldError: Unknown key or out-of-grammar value; the
            exception names the key

    Examples:
        >>> rule = parse_rrule("FREQ=WEEKLY;BYDAY=MO,WE,FR;COUNT=6")
        >>> rule.count
        6
    """
    if text is None or not text.strip():
        raise RRuleParseError("Recurrence rule is empty")

    pairs = _split_pairs(text)
    if not pairs:
        raise RRuleParseError("Recurrence rule is empty")

    for key in pairs:
        if key not in {"FREQ", "INTERVAL", "COUNT", "UNTIL", "BYDAY"}:
            raise RRuleUnsupportedFieldError(key)

    if "FREQ" not in pairs:
        raise RRuleParseError("Recurrence rule is missing FREQ", field="FREQ")

    try:
        freq = Frequency(pairs["FREQ"].upper())
    except ValueError:
        raise RRuleUnsupportedFieldError(
            "FREQ", f"Unsupported FREQ value: {pairs['FREQ']!r}"
        ) from None

    interval = _parse_positive_int("INTERVAL", pairs["INTERVAL"]) if "INTERVAL" in pairs else 1

    if "COUNT" in pairs and "UNTIL" in pairs:
        raise RRuleUnsupportedFieldError("UNTIL", "COUNT and UNTIL cannot be combined")

    bound: Optional[SeriesBound] = None
    if "COUNT" in pairs:
        bound = CountBound(_parse_positive_int("COUNT", pairs["COUNT"]))
    elif "UNTIL" in pairs:
        bound = UntilBound(parse_rrule_until(pairs["UNTIL"]))

    byday: frozenset[Weekday] = frozenset()
    if "BYDAY" in pairs:
        if freq is Frequency.DAILY:
            raise RRuleUnsupportedFieldError("BYDAY", "BYDAY is only supported with FREQ=WEEKLY")
        byday = _parse_byday(pairs["BYDAY"])

    rule = RecurrenceRule(freq=freq, interval=interval, bound=bound, byday=byday)
    logger.debug("Parsed recurrence rule %r -> %s", text, rule.to_rrule_string())
    return rule


def try_parse_rrule(text: Optional[str]) -> Optional[RecurrenceRule]:
    """Parse a rule, returning None for blank input instead of raising."""
    if text is None or not text.strip():
        return None
    return parse_rrule(text)
