"""Timekeeping error taxonomy for hearthcal.

Every failure that the presentation layer needs to explain to a user carries a
stable string code (``E_RRULE_UNSUPPORTED_FIELD``, ``E_TZ_UNKNOWN``, ...). The
codes are part of the external contract: the UI maps them to user copy, so they
must never be renamed.

Input-validation errors are raised on the event-authoring path and block
persistence of the offending event. ``E_TZ_DRIFT_DETECTED`` is advisory: it is
reported by the drift detector as a finding and never raised by the query path.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class TimeErrorCode(str, Enum):
    """Stable machine-readable timekeeping error codes."""

    EXDATE_INVALID_FORMAT = "E_EXDATE_INVALID_FORMAT"
    EXDATE_OUT_OF_RANGE = "E_EXDATE_OUT_OF_RANGE"
    RRULE_PARSE = "E_RRULE_PARSE"
    RRULE_UNSUPPORTED_FIELD = "E_RRULE_UNSUPPORTED_FIELD"
    TZ_UNKNOWN = "E_TZ_UNKNOWN"
    TZ_DRIFT_DETECTED = "E_TZ_DRIFT_DETECTED"
    RANGE_INVALID = "E_RANGE_INVALID"

    @property
    def developer_message(self) -> str:
        """Canonical developer-facing message for the code."""
        return _DEVELOPER_MESSAGES[self]

    @property
    def user_message(self) -> str:
        """User-facing copy shown by the presentation layer."""
        return _USER_MESSAGES[self]


_DEVELOPER_MESSAGES: dict[TimeErrorCode, str] = {
    TimeErrorCode.EXDATE_INVALID_FORMAT: (
        "Excluded dates must use ISO-8601 UTC format (YYYY-MM-DDTHH:MM:SSZ)."
    ),
    TimeErrorCode.EXDATE_OUT_OF_RANGE: "Excluded dates must fall within the recurrence window.",
    TimeErrorCode.RRULE_PARSE: "Recurrence rule could not be parsed. Please check the syntax.",
    TimeErrorCode.RRULE_UNSUPPORTED_FIELD: "Recurrence rule contains fields that are not supported.",
    TimeErrorCode.TZ_UNKNOWN: "Timezone identifier could not be resolved to a known location.",
    TimeErrorCode.TZ_DRIFT_DETECTED: (
        "Stored event timestamps drifted away from their timezone offsets."
    ),
    TimeErrorCode.RANGE_INVALID: "The requested time range is invalid. Start must be before end.",
}

_USER_MESSAGES: dict[TimeErrorCode, str] = {
    TimeErrorCode.EXDATE_INVALID_FORMAT: (
        "One or more excluded dates are invalid. Please check format (YYYY-MM-DD)."
    ),
    TimeErrorCode.EXDATE_OUT_OF_RANGE: (
        "One or more excluded dates fall outside the event's schedule. "
        "Please adjust or remove them."
    ),
    TimeErrorCode.RRULE_PARSE: "We couldn't read that repeat pattern. Please check the format.",
    TimeErrorCode.RRULE_UNSUPPORTED_FIELD: "This repeat pattern is not yet supported.",
    TimeErrorCode.TZ_UNKNOWN: (
        "This event has an unrecognised timezone. Please edit and select a valid timezone."
    ),
    TimeErrorCode.TZ_DRIFT_DETECTED: (
        "Some events no longer align with their saved timezone. "
        "Review the affected items before continuing."
    ),
    TimeErrorCode.RANGE_INVALID: "Calendar queries need the start to come before the end.",
}


def all_time_error_specs() -> list[tuple[TimeErrorCode, str]]:
    """Return every taxonomy entry paired with its user copy."""
    return [(code, code.user_message) for code in TimeErrorCode]


class TimekeepingError(Exception):
    """Base exception for all timekeeping errors.

    Carries a stable ``code`` plus a free-form ``context`` mapping (event id,
    offending token, field name, ...) that is surfaced to the caller verbatim.
    Subclasses pin ``code`` so ``except`` clauses can stay specific.
    """

    code: TimeErrorCode = TimeErrorCode.RRULE_PARSE

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.code.developer_message
        self.context: dict[str, str] = {k: str(v) for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def with_context(self, key: str, value: Any) -> TimekeepingError:
        """Attach an additional context entry and return self for chaining."""
        self.context[key] = str(value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the shape consumed by the IPC layer."""
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.code.user_message,
            "context": dict(self.context),
        }


class RRuleParseError(TimekeepingError):
    """Recurrence rule is structurally malformed.

    Raised when:
    - The rule is empty
    - A segment is not a KEY=VALUE pair
    - A key appears twice
    - The mandatory FREQ key is missing
    """

    code = TimeErrorCode.RRULE_PARSE


class RRuleUnsupportedFieldError(TimekeepingError):
    """Recurrence rule uses a key or value outside the supported grammar.

    The offending key is available as ``field`` and in ``context["field"]``.
    """

    code = TimeErrorCode.RRULE_UNSUPPORTED_FIELD

    def __init__(self, field: str, message: Optional[str] = None, **context: Any) -> None:
        self.field = field
        super().__init__(
            message or f"Unsupported recurrence field: {field}", field=field, **context
        )


class ExdateInvalidFormatError(TimekeepingError):
    """An excluded date is not an ISO-8601 UTC instant."""

    code = TimeErrorCode.EXDATE_INVALID_FORMAT

    def __init__(self, token: str, message: Optional[str] = None, **context: Any) -> None:
        self.token = token
        super().__init__(message or f"Invalid excluded date: {token!r}", token=token, **context)


class ExdateOutOfRangeError(TimekeepingError):
    """An excluded date falls outside the series' generated bound."""

    code = TimeErrorCode.EXDATE_OUT_OF_RANGE

    def __init__(self, token: str, message: Optional[str] = None, **context: Any) -> None:
        self.token = token
        super().__init__(
            message or f"Excluded date outside recurrence window: {token!r}",
            token=token,
            **context,
        )


class TimezoneUnknownError(TimekeepingError):
    """Timezone name cannot be resolved against the timezone database.

    Raised when:
    - The event or household tz is not an IANA identifier or known alias
    - The identifier was removed from the injected database version
    """

    code = TimeErrorCode.TZ_UNKNOWN

    def __init__(self, tz_name: str, message: Optional[str] = None, **context: Any) -> None:
        self.tz_name = tz_name
        super().__init__(message or f"Unknown timezone: {tz_name!r}", timezone=tz_name, **context)


class TimezoneDriftDetectedError(TimekeepingError):
    """Cached UTC instants no longer match recomputation.

    Only raised by callers that choose to treat a drift report as blocking
    (via ``DriftReport.raise_for_drift``); the detector itself returns
    findings.
    """

    code = TimeErrorCode.TZ_DRIFT_DETECTED


class RangeInvalidError(TimekeepingError):
    """Query window is empty or inverted."""

    code = TimeErrorCode.RANGE_INVALID
