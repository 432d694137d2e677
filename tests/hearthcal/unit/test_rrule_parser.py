"""Unit tests for hearthcal.calendar.rrule_parser."""

import pytest

from hearthcal.calendar.rrule_parser import (
    CountBound,
    Frequency,
    UntilBound,
    Weekday,
    parse_rrule,
    try_parse_rrule,
)
from hearthcal.calendar.time_errors import (
    RRuleParseError,
    RRuleUnsupportedFieldError,
    TimeErrorCode,
)

pytestmark = pytest.mark.unit


class TestParseRRule:
    """Accepted grammar."""

    def test_parse_when_weekly_byday_count_then_all_parts_set(self) -> None:
        rule = parse_rrule("FREQ=WEEKLY;BYDAY=MO,WE,FR;COUNT=6")

        assert rule.freq is Frequency.WEEKLY
        assert rule.interval == 1
        assert rule.bound == CountBound(6)
        assert rule.count == 6
        assert rule.byday == frozenset({Weekday.MO, Weekday.WE, Weekday.FR})

    def test_parse_when_keys_lowercase_and_prefixed_then_accepted(self) -> None:
        rule = parse_rrule("RRULE:freq=daily;interval=3")

        assert rule.freq is Frequency.DAILY
        assert rule.interval == 3
        assert rule.is_unbounded

    def test_parse_when_until_then_inclusive_bound_in_utc_ms(self, utc_ms) -> None:
        rule = parse_rrule("FREQ=DAILY;UNTIL=20240310T130000Z")

        assert rule.bound == UntilBound(utc_ms(2024, 3, 10, 13))
        assert rule.until_utc_ms == utc_ms(2024, 3, 10, 13)
        assert rule.count is None

    def test_parse_when_trailing_semicolon_then_ignored(self) -> None:
        assert parse_rrule("FREQ=DAILY;").freq is Frequency.DAILY

    def test_to_rrule_string_when_unordered_byday_then_monday_first(self) -> None:
        rule = parse_rrule("BYDAY=SU,FR,MO;FREQ=WEEKLY;INTERVAL=2;COUNT=4")

        assert rule.to_rrule_string() == "FREQ=WEEKLY;INTERVAL=2;COUNT=4;BYDAY=MO,FR,SU"

    def test_to_rrule_string_when_parsed_again_then_same_rule(self) -> None:
        rule = parse_rrule("FREQ=WEEKLY;UNTIL=20241231T235959Z;BYDAY=TU")

        assert parse_rrule(rule.to_rrule_string()) == rule

    def test_try_parse_when_blank_then_none(self) -> None:
        assert try_parse_rrule("   ") is None
        assert try_parse_rrule(None) is None


class TestParseRRuleRejections:
    """Everything outside the grammar names the offending field."""

    @pytest.mark.parametrize(
        ("text", "field"),
        [
            ("FREQ=MONTHLY", "FREQ"),
            ("FREQ=DAILY;BYMONTH=3", "BYMONTH"),
            ("FREQ=WEEKLY;BYSETPOS=1", "BYSETPOS"),
            ("FREQ=DAILY;INTERVAL=0", "INTERVAL"),
            ("FREQ=DAILY;COUNT=-2", "COUNT"),
            ("FREQ=DAILY;COUNT=3;UNTIL=20240101T000000Z", "UNTIL"),
            ("FREQ=DAILY;UNTIL=2024-01-01", "UNTIL"),
            ("FREQ=DAILY;BYDAY=MO", "BYDAY"),
            ("FREQ=WEEKLY;BYDAY=1MO", "BYDAY"),
            ("FREQ=WEEKLY;BYDAY=XX", "BYDAY"),
        ],
    )
    def test_parse_when_outside_grammar_then_unsupported_field(self, text: str, field: str) -> None:
        with pytest.raises(RRuleUnsupportedFieldError) as exc_info:
            parse_rrule(text)

        assert exc_info.value.field == field
        assert exc_info.value.context["field"] == field
        assert exc_info.value.code is TimeErrorCode.RRULE_UNSUPPORTED_FIELD

    @pytest.mark.parametrize(
        "text",
        ["", "   ", "FREQ", "INTERVAL=2", "FREQ=DAILY;FREQ=WEEKLY", "=DAILY", ";;"],
    )
    def test_parse_when_malformed_then_parse_error(self, text: str) -> None:
        with pytest.raises(RRuleParseError) as exc_info:
            parse_rrule(text)

        assert exc_info.value.code is TimeErrorCode.RRULE_PARSE
