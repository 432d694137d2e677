"""Legacy date encodings found in historical event rows.

Over several schema migrations ``start_at``/``end_at`` were stored as epoch
milliseconds, epoch seconds, naive ISO strings and ISO strings carrying an
offset. ``classify_encoding`` turns a raw column value into one explicit
variant so the backfill can decode each shape deliberately instead of
guessing inline.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from hearthcal.calendar.datetime_utils import (
    datetime_to_utc_ms,
    naive_to_local_ms,
    parse_basic_utc,
    parse_iso_any,
)
from hearthcal.calendar.tz_resolver import EffectiveZone, TimezoneResolver

logger = logging.getLogger(__name__)

# Without a reference instant, values below this magnitude are taken as seconds
# (1e10 s is year 2286; as milliseconds it is only 115 days from the epoch)
SECONDS_THRESHOLD = 10_000_000_000

_NUMERIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")


@dataclass(frozen=True)
class EpochMillis:
    """Local-naive epoch milliseconds (the canonical shape)."""

    value: int


@dataclass(frozen=True)
class EpochSeconds:
    """Local-naive epoch seconds written by early releases."""

    value: int

    @property
    def millis(self) -> int:
        return self.value * 1000


@dataclass(frozen=True)
class IsoLocal:
    """ISO string without offset: a wall-clock time in the event zone."""

    text: str
    naive: datetime


@dataclass(frozen=True)
class IsoInstant:
    """ISO string with ``Z`` or an offset: an absolute instant."""

    text: str
    instant: datetime


@dataclass(frozen=True)
class MissingValue:
    """NULL or blank column."""


DateEncoding = Union[EpochMillis, EpochSeconds, IsoLocal, IsoInstant, MissingValue]


def _classify_number(
    value: Union[int, float], reference_utc_ms: Optional[int] = None
) -> DateEncoding:
    number = int(value)
    if reference_utc_ms is not None:
        # The unit whose reading lands nearer the cached instant wins
        as_seconds = abs(number * 1000 - reference_utc_ms)
        as_millis = abs(number - reference_utc_ms)
        return EpochSeconds(number) if as_seconds < as_millis else EpochMillis(number)
    if abs(number) < SECONDS_THRESHOLD:
        return EpochSeconds(number)
    return EpochMillis(number)


def classify_encoding(raw: Any, reference_utc_ms: Optional[int] = None) -> DateEncoding:
    """Classify a raw stored date value.

    Numbers are ambiguous between seconds and milliseconds. When the row
    carries a cached UTC instant, pass it as ``reference_utc_ms`` and the unit
    is chosen by proximity to it; otherwise only small magnitudes are read as
    seconds.

    Args:
        raw: Column value as read from storage
        reference_utc_ms: Cached UTC instant stored alongside the value

    Returns:
        The matching DateEncoding variant

    Raises:
        ValueError: If the value matches no known encoding

    Examples:
        >>> classify_encoding(1710061200)
        EpochSeconds(value=1710061200)
        >>> classify_encoding("2024-03-10T09:00:00")
        IsoLocal(text='2024-03-10T09:00:00', naive=datetime.datetime(2024, 3, 10, 9, 0))
    """
    if raw is None:
        return MissingValue()
    if isinstance(raw, bool):
        raise ValueError(f"Unrecognized date value: {raw!r}")
    if isinstance(raw, (int, float)):
        return _classify_number(raw, reference_utc_ms)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ValueError(f"Unrecognized date value: {raw!r}")

    text = raw.strip()
    if not text:
        return MissingValue()
    if _NUMERIC_RE.match(text):
        return _classify_number(float(text) if "." in text else int(text), reference_utc_ms)

    parsed = parse_iso_any(text)
    if parsed is None:
        raise ValueError(f"Unrecognized date value: {raw!r}")
    if parsed.tzinfo is None:
        return IsoLocal(text=text, naive=parsed)
    return IsoInstant(text=text, instant=parsed)


def to_local_ms(
    encoding: DateEncoding, zone: EffectiveZone, resolver: TimezoneResolver
) -> Optional[int]:
    """Decode an encoding into local-naive milliseconds in ``zone``.

    Absolute instants are converted into the zone's wall clock; every other
    shape already denotes a wall-clock value.
    """
    if isinstance(encoding, MissingValue):
        return None
    if isinstance(encoding, EpochMillis):
        return encoding.value
    if isinstance(encoding, EpochSeconds):
        return encoding.millis
    if isinstance(encoding, IsoLocal):
        return naive_to_local_ms(encoding.naive)
    return resolver.utc_ms_to_local_ms(datetime_to_utc_ms(encoding.instant), zone)


def is_canonical(raw: Any, encoding: DateEncoding) -> bool:
    """True when ``raw`` is already stored in the canonical integer form."""
    return isinstance(encoding, EpochMillis) and isinstance(raw, int) and not isinstance(raw, bool)


def canonicalize_exdate_token(token: str) -> Optional[int]:
    """Decode one stored EXDATE token to UTC milliseconds.

    Accepts the canonical form plus the legacy compact form
    (``20240310T130000Z``) and explicit offsets. Tokens without any zone
    designator, date-only tokens and garbage return None.
    """
    text = token.strip()
    basic = parse_basic_utc(text)
    if basic is not None:
        return datetime_to_utc_ms(basic)
    if "T" not in text:
        return None
    parsed = parse_iso_any(text)
    if parsed is None or parsed.tzinfo is None:
        return None
    return datetime_to_utc_ms(parsed)
