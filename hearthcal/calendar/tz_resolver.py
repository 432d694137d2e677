"""Wall-clock to UTC resolution with explicit DST gap/overlap policy."""

from __future__ import annotations

import datetime
import logging
import zoneinfo
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from hearthcal.calendar.datetime_utils import (
    datetime_to_utc_ms,
    local_ms_to_naive,
    naive_to_local_ms,
    utc_ms_to_datetime,
)
from hearthcal.calendar.time_errors import TimezoneUnknownError
from hearthcal.core.timezone_utils import TimezoneDatabase, sanitize_tz, system_timezone_database

logger = logging.getLogger(__name__)


class ZoneSource(str, Enum):
    """Where the effective zone of an event came from."""

    EVENT = "event"
    HOUSEHOLD = "household"
    DEFAULT = "default"


class ResolutionKind(str, Enum):
    """How a wall-clock time mapped onto the UTC timeline."""

    EXACT = "exact"
    GAP = "gap"
    OVERLAP = "overlap"


@dataclass(frozen=True)
class EffectiveZone:
    """The zone an event's wall-clock values are interpreted in.

    Attributes:
        name: Canonical IANA name, or None for floating events
        tzinfo: Zone implementation from the injected database
        source: Whether the zone came from the event, the household or the
            UTC default
        floating: True when no zone was supplied anywhere
    """

    name: Optional[str]
    tzinfo: datetime.tzinfo
    source: ZoneSource
    floating: bool = False

    @property
    def label(self) -> str:
        return self.name or "floating"


@dataclass(frozen=True)
class ResolvedInstant:
    """Result of resolving a wall-clock time in a zone."""

    utc_ms: int
    kind: ResolutionKind = ResolutionKind.EXACT
    shift_ms: int = 0

    @property
    def is_adjusted(self) -> bool:
        """True when the wall clock did not exist and was shifted forward."""
        return self.kind is ResolutionKind.GAP


UTC_ZONE = EffectiveZone(name="UTC", tzinfo=datetime.UTC, source=ZoneSource.DEFAULT)
FLOATING_ZONE = EffectiveZone(
    name=None, tzinfo=datetime.UTC, source=ZoneSource.DEFAULT, floating=True
)


class TimezoneResolver:
    """Resolves effective zones and converts wall-clock times to UTC.

    DST policy:
    - Spring-forward gap: the non-existent wall clock is shifted forward by the
      length of the gap (02:30 in New York on 2024-03-10 becomes 03:30 EDT).
    - Fall-back overlap: the earlier of the two candidate instants is used.

    The resolver holds no mutable state; one instance can be shared across
    threads.
    """

    def __init__(self, database: Optional[TimezoneDatabase] = None) -> None:
        self.database = database or system_timezone_database()

    def __repr__(self) -> str:
        return f"TimezoneResolver(database={self.database!r})"

    def zone_for_name(self, name: str, source: ZoneSource = ZoneSource.EVENT) -> EffectiveZone:
        """Build an EffectiveZone for an explicit name.

        Raises:
            TimezoneUnknownError: If the name is not in the database
        """
        canonical = self.database.canonical_name(name)
        try:
            tzinfo = self.database.get(canonical)
        except zoneinfo.ZoneInfoNotFoundError:
            raise TimezoneUnknownError(
                name, source=source.value, database_version=self.database.version
            ) from None
        return EffectiveZone(name=canonical, tzinfo=tzinfo, source=source)

    def effective_zone(
        self, event_tz: Optional[str], household_tz: Optional[str] = None
    ) -> EffectiveZone:
        """Pick the zone for an event: event tz, then household tz, then UTC.

        Raises:
            TimezoneUnknownError: If the chosen name does not resolve
        """
        event_name = sanitize_tz(event_tz)
        if event_name:
            return self.zone_for_name(event_name, ZoneSource.EVENT)
        household_name = sanitize_tz(household_tz)
        if household_name:
            return self.zone_for_name(household_name, ZoneSource.HOUSEHOLD)
        return FLOATING_ZONE

    def local_to_utc(self, naive: datetime.datetime, zone: EffectiveZone) -> ResolvedInstant:
        """Resolve a naive wall-clock datetime to a UTC instant."""
        if naive.tzinfo is not None:
            raise ValueError("local_to_utc expects a naive wall-clock datetime")

        if zone.floating:
            return ResolvedInstant(utc_ms=naive_to_local_ms(naive))

        tz = zone.tzinfo
        offset_early = naive.replace(tzinfo=tz, fold=0).utcoffset() or datetime.timedelta(0)
        offset_late = naive.replace(tzinfo=tz, fold=1).utcoffset() or datetime.timedelta(0)
        local_ms = naive_to_local_ms(naive)

        if offset_early == offset_late:
            return ResolvedInstant(utc_ms=local_ms - _td_ms(offset_early))

        # Offsets differ: either a gap or an overlap. A valid wall clock
        # round-trips through at least one of the offsets.
        low, high = sorted((offset_early, offset_late))
        candidate_ms = local_ms - _td_ms(high)
        if self.utc_ms_to_local_ms(candidate_ms, zone) == local_ms:
            return ResolvedInstant(utc_ms=candidate_ms, kind=ResolutionKind.OVERLAP)

        shifted_ms = local_ms - _td_ms(low)
        shift = _td_ms(high - low)
        logger.debug(
            "Wall clock %s does not exist in %s; shifted forward %d ms",
            naive.isoformat(),
            zone.label,
            shift,
        )
        return ResolvedInstant(utc_ms=shifted_ms, kind=ResolutionKind.GAP, shift_ms=shift)

    def local_ms_to_utc_ms(self, local_ms: int, zone: EffectiveZone) -> int:
        """Resolve local-naive milliseconds to UTC milliseconds."""
        return self.local_to_utc(local_ms_to_naive(local_ms), zone).utc_ms

    def utc_ms_to_local_ms(self, utc_ms: int, zone: EffectiveZone) -> int:
        """Convert an absolute instant back into the zone's wall clock."""
        if zone.floating:
            return utc_ms
        aware = utc_ms_to_datetime(utc_ms).astimezone(zone.tzinfo)
        return naive_to_local_ms(aware.replace(tzinfo=None))

    def utc_offset_ms(self, utc_ms: int, zone: EffectiveZone) -> int:
        """Offset of the zone at an instant, in milliseconds."""
        if zone.floating:
            return 0
        aware = utc_ms_to_datetime(utc_ms).astimezone(zone.tzinfo)
        return datetime_to_utc_ms(aware.replace(tzinfo=datetime.UTC)) - utc_ms


def _td_ms(delta: datetime.timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000
