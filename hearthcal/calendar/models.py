"""Data models for household events and their occurrences."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hearthcal.calendar.datetime_utils import serialize_local_ms, serialize_utc_ms


class Household(BaseModel):
    """Owning scope for events; carries the fallback timezone."""

    id: str
    name: Optional[str] = None
    tz: Optional[str] = Field(default=None, description="Fallback IANA zone for events without tz")

    @field_validator("tz")
    @classmethod
    def _blank_tz_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class EventRow(BaseModel):
    """Canonical persisted event (series definition).

    Field names match the storage schema exactly. ``start_at``/``end_at`` are
    local-naive milliseconds; ``start_at_utc``/``end_at_utc`` are a cache of the
    first occurrence's absolute instants.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    household_id: str
    title: Optional[str] = None
    start_at: int = Field(..., description="Wall-clock anchor, local-naive epoch ms")
    end_at: Optional[int] = Field(default=None, description="Wall-clock end, local-naive epoch ms")
    tz: Optional[str] = Field(default=None, description="IANA zone name")
    rrule: Optional[str] = None
    exdates: Optional[str] = Field(default=None, description="Comma-separated UTC instants")
    start_at_utc: Optional[int] = None
    end_at_utc: Optional[int] = None
    reminder: Optional[int] = None

    @property
    def is_recurring(self) -> bool:
        """True when the row carries a non-blank recurrence rule."""
        return bool(self.rrule and self.rrule.strip())

    @property
    def duration_ms(self) -> int:
        """Wall-clock duration; zero for open-ended events."""
        if self.end_at is None:
            return 0
        return max(self.end_at - self.start_at, 0)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "EventRow":
        """Build from a storage row mapping, ignoring unknown columns."""
        known = {key: data.get(key) for key in cls.model_fields if key in data}
        return cls(**known)


class Occurrence(BaseModel):
    """One concrete, dated instance of an event returned by the query engine."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    occurrence_start_utc: int
    occurrence_end_utc: int
    series_id: Optional[str] = Field(
        default=None, description="Parent event id when produced by recurrence expansion"
    )
    local_start_ms: Optional[int] = None
    tz: Optional[str] = None
    title: Optional[str] = None

    @property
    def instance_id(self) -> str:
        """Stable identifier of this occurrence: ``"{event_id}::{start_ms}"``."""
        return f"{self.event_id}::{self.occurrence_start_utc}"

    @property
    def sort_key(self) -> tuple[int, str]:
        """Ordering key: start instant, then event id."""
        return (self.occurrence_start_utc, self.event_id)

    def as_tuple(self) -> tuple[str, int, int]:
        """Outbound ``(event_id, occurrence_start_utc, occurrence_end_utc)`` tuple."""
        return (self.event_id, self.occurrence_start_utc, self.occurrence_end_utc)

    def describe(self) -> str:
        """Human-readable one-liner used by the CLI."""
        local = serialize_local_ms(self.local_start_ms) if self.local_start_ms is not None else "-"
        return (
            f"{serialize_utc_ms(self.occurrence_start_utc)} -> "
            f"{serialize_utc_ms(self.occurrence_end_utc)} "
            f"[{self.event_id}] local={local} tz={self.tz or 'floating'}"
        )


class SkippedEvent(BaseModel):
    """An event the query engine could not expand, with the reason code."""

    event_id: str
    code: str
    message: str


class QueryPage(BaseModel):
    """One page of occurrences."""

    items: list[Occurrence] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    skipped: list[SkippedEvent] = Field(default_factory=list)
    # Series that reached the per-series cap; the page ends at the cut
    truncated: list[str] = Field(default_factory=list)
