"""Unit tests for EXDATE parsing, inspection and matching."""

import pytest

from hearthcal.calendar.exdate_parser import (
    ExdateSet,
    SeriesBounds,
    find_unmatched_exdates,
    format_exdates,
    inspect_exdates,
    parse_exdate_token,
    parse_exdates,
    split_exdate_tokens,
)
from hearthcal.calendar.time_errors import ExdateInvalidFormatError, ExdateOutOfRangeError

pytestmark = pytest.mark.unit


def test_split_exdate_tokens_when_blank_entries_then_dropped() -> None:
    assert split_exdate_tokens(" a , ,b,") == ["a", "b"]
    assert split_exdate_tokens(None) == []
    assert split_exdate_tokens(["x", " ", "y "]) == ["x", "y"]


def test_parse_exdate_token_when_z_or_zero_offset_then_same_instant(utc_ms) -> None:
    expected = utc_ms(2024, 3, 10, 13)

    assert parse_exdate_token("2024-03-10T13:00:00Z") == expected
    assert parse_exdate_token("2024-03-10T13:00:00+00:00") == expected


@pytest.mark.parametrize(
    "token",
    ["2024-03-10", "2024-03-10T13:00:00", "2024-03-10T08:00:00-05:00", "yesterday", "20240310"],
)
def test_parse_exdate_token_when_not_explicit_utc_then_invalid_format(token: str) -> None:
    with pytest.raises(ExdateInvalidFormatError) as exc_info:
        parse_exdate_token(token)

    assert exc_info.value.token == token
    assert exc_info.value.context["token"] == token


def test_parse_exdates_when_duplicates_then_collapsed(utc_ms) -> None:
    exdates = parse_exdates("2024-01-03T09:00:00Z, 2024-01-03T09:00:00+00:00,2024-01-01T09:00:00Z")

    assert len(exdates) == 2
    assert list(exdates) == [utc_ms(2024, 1, 1, 9), utc_ms(2024, 1, 3, 9)]
    assert utc_ms(2024, 1, 3, 9) in exdates


def test_parse_exdates_when_outside_series_then_out_of_range(utc_ms) -> None:
    bounds = SeriesBounds(first_utc_ms=utc_ms(2024, 1, 1, 9), last_utc_ms=utc_ms(2024, 1, 12, 9))

    with pytest.raises(ExdateOutOfRangeError) as exc_info:
        parse_exdates("2024-01-03T09:00:00Z,2024-02-01T09:00:00Z", bounds)

    assert exc_info.value.token == "2024-02-01T09:00:00Z"
    assert exc_info.value.context["first"] == "2024-01-01T09:00:00Z"
    assert exc_info.value.context["last"] == "2024-01-12T09:00:00Z"


def test_parse_exdates_when_malformed_and_out_of_range_then_format_error_first(utc_ms) -> None:
    bounds = SeriesBounds(first_utc_ms=utc_ms(2024, 1, 1, 9))

    with pytest.raises(ExdateInvalidFormatError):
        parse_exdates("2023-01-01T09:00:00Z,garbage", bounds)


def test_series_bounds_when_unbounded_then_everything_after_first(utc_ms) -> None:
    bounds = SeriesBounds(first_utc_ms=utc_ms(2024, 1, 1))

    assert bounds.contains(utc_ms(2090, 1, 1))
    assert not bounds.contains(utc_ms(2023, 12, 31))


def test_format_exdates_when_unsorted_then_sorted_unique_z_form(utc_ms) -> None:
    text = format_exdates([utc_ms(2024, 1, 3, 9), utc_ms(2024, 1, 1, 9), utc_ms(2024, 1, 3, 9)])

    assert text == "2024-01-01T09:00:00Z,2024-01-03T09:00:00Z"
    assert ExdateSet(frozenset()).canonical() == ""


def test_inspect_exdates_when_mixed_tokens_then_classified(utc_ms) -> None:
    bounds = SeriesBounds(first_utc_ms=utc_ms(2024, 1, 1), last_utc_ms=utc_ms(2024, 12, 31))

    inspection = inspect_exdates(
        [
            "2024-02-01T09:00:00Z",
            "2024-02-01T09:00:00Z",
            "2024-02-01T04:00:00-05:00",
            "2025-06-01T09:00:00Z",
            "not-a-date",
        ],
        bounds,
    )

    assert inspection.valid == [utc_ms(2024, 2, 1, 9)]
    assert inspection.duplicates == 1
    assert inspection.non_utc == ["2024-02-01T04:00:00-05:00"]
    assert inspection.out_of_range == ["2025-06-01T09:00:00Z"]
    assert inspection.invalid_format == ["not-a-date"]
    assert not inspection.ok
    assert inspection.canonical == "2024-02-01T09:00:00Z"


def test_find_unmatched_exdates_when_one_matches_then_other_reported(utc_ms) -> None:
    exdates = parse_exdates("2024-01-03T09:00:00Z,2024-01-03T10:00:00Z")
    occurrences = [utc_ms(2024, 1, day, 9) for day in range(1, 6)]

    assert find_unmatched_exdates(exdates, occurrences) == [utc_ms(2024, 1, 3, 10)]
