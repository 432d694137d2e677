"""Unit tests for the timekeeping error taxonomy."""

import pytest

from hearthcal.calendar.time_errors import (
    ExdateInvalidFormatError,
    RangeInvalidError,
    RRuleUnsupportedFieldError,
    TimeErrorCode,
    TimekeepingError,
    TimezoneUnknownError,
    all_time_error_specs,
)

pytestmark = pytest.mark.unit


def test_codes_when_listed_then_stable_strings() -> None:
    assert {code.value for code in TimeErrorCode} == {
        "E_EXDATE_INVALID_FORMAT",
        "E_EXDATE_OUT_OF_RANGE",
        "E_RRULE_PARSE",
        "E_RRULE_UNSUPPORTED_FIELD",
        "E_TZ_UNKNOWN",
        "E_TZ_DRIFT_DETECTED",
        "E_RANGE_INVALID",
    }


def test_all_time_error_specs_when_called_then_every_code_has_copy() -> None:
    specs = all_time_error_specs()

    assert len(specs) == len(TimeErrorCode)
    assert all(message for _, message in specs)


def test_to_dict_when_context_given_then_serialized_with_user_copy() -> None:
    error = TimezoneUnknownError("Mars/Olympus", event_id="evt-1")

    payload = error.to_dict()

    assert payload["code"] == "E_TZ_UNKNOWN"
    assert payload["user_message"] == TimeErrorCode.TZ_UNKNOWN.user_message
    assert payload["context"] == {"timezone": "Mars/Olympus", "event_id": "evt-1"}
    assert "Mars/Olympus" in payload["message"]


def test_init_when_no_message_then_developer_message_used() -> None:
    error = RangeInvalidError(from_ms=10, to_ms=5, ignored=None)

    assert error.message == TimeErrorCode.RANGE_INVALID.developer_message
    assert error.context == {"from_ms": "10", "to_ms": "5"}


def test_with_context_when_chained_then_entry_added() -> None:
    error = ExdateInvalidFormatError("2024-13-01").with_context("event_id", "evt-9")

    assert error.context["event_id"] == "evt-9"
    assert error.context["token"] == "2024-13-01"


def test_subclass_when_caught_as_base_then_code_preserved() -> None:
    with pytest.raises(TimekeepingError) as exc_info:
        raise RRuleUnsupportedFieldError("BYSETPOS")

    assert exc_info.value.code is TimeErrorCode.RRULE_UNSUPPORTED_FIELD
    assert exc_info.value.field == "BYSETPOS"
