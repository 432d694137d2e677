"""Epoch-millisecond and ISO-8601 helpers for hearthcal.

Two millisecond flavours flow through the engine and must never be mixed up:

- *local-naive ms*: a wall-clock date and time encoded as if it were UTC
  (``start_at``/``end_at``). It has no absolute meaning until combined with a
  timezone.
- *UTC ms*: an absolute instant (``start_at_utc``, EXDATE entries, query
  windows).
"""

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

_EPOCH_NAIVE = datetime(1970, 1, 1)
_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=UTC)

# RRULE UNTIL / legacy EXDATE basic format, e.g. 20240310T090000Z
_BASIC_UTC_RE = re.compile(r"^(\d{8})T(\d{6})Z$")


def local_ms_to_naive(local_ms: int) -> datetime:
    """Decode local-naive milliseconds into a naive wall-clock datetime."""
    return _EPOCH_NAIVE + timedelta(milliseconds=local_ms)


def naive_to_local_ms(naive: datetime) -> int:
    """Encode a naive wall-clock datetime as local-naive milliseconds."""
    if naive.tzinfo is not None:
        raise ValueError("naive_to_local_ms expects a naive datetime")
    delta = naive - _EPOCH_NAIVE
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def utc_ms_to_datetime(utc_ms: int) -> datetime:
    """Decode UTC milliseconds into an aware UTC datetime."""
    return _EPOCH_UTC + timedelta(milliseconds=utc_ms)


def datetime_to_utc_ms(dt: datetime) -> int:
    """Encode an aware datetime as UTC milliseconds.

    Raises:
        ValueError: If ``dt`` is naive
    """
    if dt.tzinfo is None:
        raise ValueError("datetime_to_utc_ms expects a timezone-aware datetime")
    delta = dt.astimezone(UTC) - _EPOCH_UTC
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def serialize_datetime_utc(dt: datetime) -> str:
    """Serialize a datetime to ISO 8601 UTC with a Z suffix and second precision.

    Naive datetimes are assumed to already be UTC.

    Examples:
        >>> serialize_datetime_utc(datetime(2024, 3, 10, 13, 0, tzinfo=UTC))
        '2024-03-10T13:00:00Z'
    """
    if dt is None:
        raise ValueError("Cannot serialize None datetime")

    dt_utc = dt.astimezone(UTC) if dt.tzinfo is not None else dt.replace(tzinfo=UTC)
    return dt_utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def serialize_utc_ms(utc_ms: int) -> str:
    """Serialize UTC milliseconds to ISO 8601 with a Z suffix."""
    return serialize_datetime_utc(utc_ms_to_datetime(utc_ms))


def serialize_local_ms(local_ms: int) -> str:
    """Serialize local-naive milliseconds as a naive ISO string (no offset)."""
    return local_ms_to_naive(local_ms).replace(microsecond=0).isoformat()


def parse_basic_utc(value: str) -> Optional[datetime]:
    """Parse the compact ``YYYYMMDDTHHMMSSZ`` form used by RRULE UNTIL.

    Returns:
        Aware UTC datetime, or None if ``value`` is not in the compact form
    """
    match = _BASIC_UTC_RE.match(value.strip())
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S").replace(
            tzinfo=UTC
        )
    except ValueError:
        return None


def parse_iso_utc_strict(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 instant that is explicitly UTC (``Z`` or ``+00:00``).

    Returns:
        Aware UTC datetime, or None when the string is malformed or carries a
        non-zero offset or no offset at all
    """
    token = value.strip()
    if "T" not in token:
        return None
    try:
        parsed = date_parser.isoparse(token)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return None
    offset = parsed.utcoffset()
    if offset is None or offset != timedelta(0):
        return None
    return parsed.astimezone(UTC)


def parse_iso_any(value: str) -> Optional[datetime]:
    """Leniently parse an ISO-8601 string, returning naive or aware datetimes.

    Used on the legacy-decoding path where both ``2024-03-01T09:00`` (wall clock)
    and ``2024-03-01T14:00:00+00:00`` (instant) shapes occur.
    """
    token = value.strip()
    if not token:
        return None
    basic = parse_basic_utc(token)
    if basic is not None:
        return basic
    try:
        return date_parser.isoparse(token)
    except (ValueError, OverflowError):
        logger.debug("Unparseable ISO value %r", token)
        return None
