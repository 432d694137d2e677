"""Timezone database and clock utilities for hearthcal."""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo
from collections.abc import Mapping
from typing import ClassVar

logger = logging.getLogger(__name__)

SYSTEM_DATABASE_VERSION = "system"


class TimezoneAliases:
    """Alias tables for timezone names found in legacy household data."""

    # Obsolete/deprecated IANA names and common aliases mapped to canonical names
    TZ_ALIAS_MAP: ClassVar[dict[str, str]] = {
        # US aliases (obsolete)
        "US/Pacific": "America/Los_Angeles",
        "US/Mountain": "America/Denver",
        "US/Central": "America/Chicago",
        "US/Eastern": "America/New_York",
        "US/Alaska": "America/Anchorage",
        "US/Hawaii": "Pacific/Honolulu",
        "US/Arizona": "America/Phoenix",
        # UTC spellings
        "UTC": "UTC",
        "GMT": "UTC",
        "Etc/UTC": "UTC",
        "Etc/GMT": "UTC",
        "Etc/Universal": "UTC",
        "Universal": "UTC",
        "Zulu": "UTC",
        # Legacy names
        "PST8PDT": "America/Los_Angeles",
        "MST7MDT": "America/Denver",
        "CST6CDT": "America/Chicago",
        "EST5EDT": "America/New_York",
        # Deprecated IANA names
        "Asia/Rangoon": "Asia/Yangon",
        "America/Godthab": "America/Nuuk",
        "Europe/Kiev": "Europe/Kyiv",
        "Asia/Calcutta": "Asia/Kolkata",
        "Asia/Saigon": "Asia/Ho_Chi_Minh",
    }


def resolve_timezone_alias(tz_name: str) -> str:
    """Resolve an alias to its canonical IANA identifier.

    Examples:
        >>> resolve_timezone_alias("US/Eastern")
        'America/New_York'
        >>> resolve_timezone_alias("Europe/Paris")
        'Europe/Paris'
    """
    return TimezoneAliases.TZ_ALIAS_MAP.get(tz_name, tz_name)


def sanitize_tz(value: str | None) -> str | None:
    """Trim a stored tz value, mapping blank strings to None."""
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


class TimezoneDatabase:
    """Versioned, injectable view of the IANA timezone database.

    The engine never reaches for a process-wide zone registry; every resolver
    is handed a ``TimezoneDatabase``. That lets the drift detector compare
    "resolution under version A" with "resolution under version B" by building
    two databases side by side.

    Args:
        version: Free-form label for the tzdata release (e.g. ``"2024a"``)
        overrides: Optional mapping of zone name to tzinfo that shadows the
            system database. Names mapped to ``None`` are treated as removed.
        use_system: Whether names missing from ``overrides`` fall back to
            ``zoneinfo``.
    """

    def __init__(
        self,
        version: str = SYSTEM_DATABASE_VERSION,
        overrides: Mapping[str, datetime.tzinfo | None] | None = None,
        use_system: bool = True,
    ) -> None:
        self.version = version
        self._overrides: dict[str, datetime.tzinfo | None] = dict(overrides or {})
        self._use_system = use_system

    def __repr__(self) -> str:
        return f"TimezoneDatabase(version={self.version!r}, overrides={len(self._overrides)})"

    def canonical_name(self, name: str) -> str:
        """Return the canonical identifier for ``name`` (aliases resolved)."""
        return resolve_timezone_alias(name.strip())

    def get(self, name: str) -> datetime.tzinfo:
        """Look up a zone.

        Raises:
            zoneinfo.ZoneInfoNotFoundError: If the name is unknown in this version
        """
        canonical = self.canonical_name(name)
        if canonical in self._overrides:
            zone = self._overrides[canonical]
            if zone is None:
                raise zoneinfo.ZoneInfoNotFoundError(
                    f"{canonical} is not present in tz database {self.version}"
                )
            return zone
        if canonical == "UTC":
            return datetime.UTC
        if not self._use_system:
            raise zoneinfo.ZoneInfoNotFoundError(
                f"{canonical} is not present in tz database {self.version}"
            )
        try:
            return zoneinfo.ZoneInfo(canonical)
        except (ValueError, OSError, zoneinfo.ZoneInfoNotFoundError) as e:
            raise zoneinfo.ZoneInfoNotFoundError(str(e)) from e

    def is_known(self, name: str | None) -> bool:
        """Check whether ``name`` resolves in this database version."""
        if not name or not name.strip():
            return False
        try:
            self.get(name)
        except zoneinfo.ZoneInfoNotFoundError:
            return False
        return True

    def with_overrides(
        self, version: str, overrides: Mapping[str, datetime.tzinfo | None]
    ) -> TimezoneDatabase:
        """Derive a new database version layered on top of this one."""
        merged = dict(self._overrides)
        merged.update(overrides)
        return TimezoneDatabase(version=version, overrides=merged, use_system=self._use_system)


def system_timezone_database() -> TimezoneDatabase:
    """Build a database backed by the interpreter's ``zoneinfo`` data."""
    return TimezoneDatabase(version=SYSTEM_DATABASE_VERSION)


class TimeProvider:
    """Provides current time with test time override support."""

    ENV_VAR = "HEARTHCAL_TEST_TIME"

    def now_utc(self) -> datetime.datetime:
        """Return current UTC time with tzinfo.

        Can be overridden for testing via the HEARTHCAL_TEST_TIME environment
        variable (ISO 8601, e.g. "2024-03-10T08:00:00-05:00"). Naive values are
        taken as UTC.
        """
        test_time = os.environ.get(self.ENV_VAR)
        if test_time:
            try:
                from dateutil import parser as date_parser

                dt = date_parser.isoparse(test_time)
                if dt.tzinfo is not None:
                    return dt.astimezone(datetime.UTC)
                return dt.replace(tzinfo=datetime.UTC)
            except (ValueError, OverflowError) as e:
                logger.warning("Failed to parse %s=%r: %s", self.ENV_VAR, test_time, e)

        return datetime.datetime.now(datetime.UTC)


_time_provider = TimeProvider()


def now_utc() -> datetime.datetime:
    """Get current UTC time (convenience function)."""
    return _time_provider.now_utc()


def now_utc_ms() -> int:
    """Current UTC time as epoch milliseconds."""
    return int(now_utc().timestamp() * 1000)
