"""Core utilities shared across hearthcal (timezone database, clock)."""

from hearthcal.core.timezone_utils import (
    TimezoneDatabase,
    now_utc,
    now_utc_ms,
    resolve_timezone_alias,
    system_timezone_database,
)

__all__ = [
    "TimezoneDatabase",
    "now_utc",
    "now_utc_ms",
    "resolve_timezone_alias",
    "system_timezone_database",
]
