"""Unit tests for hearthcal.domain.drift_detector."""

from datetime import timedelta, timezone

import pytest

from hearthcal.calendar.models import EventRow
from hearthcal.calendar.time_errors import TimezoneDriftDetectedError
from hearthcal.calendar.tz_resolver import TimezoneResolver
from hearthcal.core.timezone_utils import TimezoneDatabase
from hearthcal.domain.drift_detector import (
    DriftCategory,
    DriftDetector,
    DriftReport,
    format_human_summary,
)

pytestmark = pytest.mark.unit

HOUR_MS = 3_600_000


@pytest.fixture
def detector(resolver) -> DriftDetector:
    return DriftDetector(resolver)


def _timed_row(local_ms, utc_ms, **overrides) -> EventRow:
    data = {
        "id": "timed",
        "household_id": "h1",
        "start_at": local_ms(2024, 6, 1, 9),
        "end_at": local_ms(2024, 6, 1, 10),
        "tz": "America/New_York",
        "start_at_utc": utc_ms(2024, 6, 1, 13),
        "end_at_utc": utc_ms(2024, 6, 1, 14),
    }
    data.update(overrides)
    return EventRow(**data)


def _all_day_row(local_ms, utc_ms, **overrides) -> EventRow:
    data = {
        "id": "all-day",
        "household_id": "h2",
        "start_at": local_ms(2024, 3, 10),
        "end_at": local_ms(2024, 3, 11),
        "tz": "America/New_York",
        "start_at_utc": utc_ms(2024, 3, 10, 5),
        "end_at_utc": utc_ms(2024, 3, 11, 4),
    }
    data.update(overrides)
    return EventRow(**data)


class TestEvaluate:
    def test_evaluate_when_caches_match_then_no_finding(self, detector, local_ms, utc_ms) -> None:
        assert detector.evaluate(_timed_row(local_ms, utc_ms)) is None

    def test_evaluate_when_cache_off_by_an_hour_then_timed_mismatch(
        self, detector, local_ms, utc_ms
    ) -> None:
        row = _timed_row(local_ms, utc_ms, start_at_utc=utc_ms(2024, 6, 1, 14))

        finding = detector.evaluate(row)

        assert finding.category is DriftCategory.TIMED_MISMATCH
        assert finding.delta_ms == HOUR_MS
        assert finding.recomputed_start_utc == utc_ms(2024, 6, 1, 13)
        assert finding.tz == "America/New_York"

    def test_evaluate_when_delta_below_tolerance_then_ignored(self, local_ms, utc_ms, resolver) -> None:
        detector = DriftDetector(resolver, tolerance_ms=2 * HOUR_MS)
        row = _timed_row(local_ms, utc_ms, start_at_utc=utc_ms(2024, 6, 1, 14))

        assert detector.evaluate(row) is None

    def test_evaluate_when_no_cache_then_not_checked(self, detector, local_ms, utc_ms) -> None:
        row = _timed_row(local_ms, utc_ms, start_at_utc=None, end_at_utc=None)

        assert detector.evaluate(row) is None

    def test_evaluate_when_zone_unknown_then_unresolved(self, detector, local_ms, utc_ms) -> None:
        row = _timed_row(local_ms, utc_ms, tz="Pluto/Base")

        finding = detector.evaluate(row)

        assert finding.category is DriftCategory.TZ_UNRESOLVED
        assert finding.delta_ms == 0

    def test_evaluate_when_all_day_cache_correct_then_no_finding(
        self, detector, local_ms, utc_ms
    ) -> None:
        assert detector.evaluate(_all_day_row(local_ms, utc_ms)) is None

    def test_evaluate_when_all_day_cache_at_neighbouring_midnight_then_tolerated(
        self, detector, local_ms, utc_ms
    ) -> None:
        # 2024-03-11 04:00Z is midnight local on the 11th; one day late is allowed
        row = _all_day_row(
            local_ms, utc_ms, start_at_utc=utc_ms(2024, 3, 11, 4), end_at_utc=utc_ms(2024, 3, 12, 4)
        )

        assert detector.evaluate(row) is None

    def test_evaluate_when_all_day_cache_computed_as_utc_then_boundary_error(
        self, detector, local_ms, utc_ms
    ) -> None:
        row = _all_day_row(
            local_ms, utc_ms, start_at_utc=utc_ms(2024, 3, 10), end_at_utc=utc_ms(2024, 3, 11)
        )

        finding = detector.evaluate(row)

        assert finding.category is DriftCategory.ALLDAY_BOUNDARY_ERROR
        assert finding.delta_ms == 5 * HOUR_MS


class TestCheck:
    def test_check_when_mixed_rows_then_report_counts(self, detector, local_ms, utc_ms) -> None:
        rows = [
            _timed_row(local_ms, utc_ms),
            _timed_row(local_ms, utc_ms, id="drifted", start_at_utc=utc_ms(2024, 6, 1, 12)),
            _all_day_row(local_ms, utc_ms, start_at_utc=utc_ms(2024, 3, 10)),
            _timed_row(local_ms, utc_ms, id="uncached", start_at_utc=None),
        ]

        report = detector.check(rows)

        assert report.total_events == 3
        assert report.has_drift
        assert report.counts_by_category == {"allday_boundary_error": 1, "timed_mismatch": 1}
        assert report.counts_by_household == {"h1": 1, "h2": 1}
        assert report.to_dict()["drift_events"][0]["code"] == "E_TZ_DRIFT_DETECTED"

    def test_check_when_household_fallback_then_household_zone_used(
        self, detector, local_ms, utc_ms
    ) -> None:
        row = _timed_row(local_ms, utc_ms, tz=None, start_at_utc=utc_ms(2024, 6, 1, 7), end_at_utc=None, end_at=None)

        report = detector.check([row], {"h1": "Europe/Berlin"})

        assert not report.has_drift

    def test_raise_for_drift_when_findings_then_error(self, detector, local_ms, utc_ms) -> None:
        report = detector.check([_timed_row(local_ms, utc_ms, start_at_utc=0)])

        with pytest.raises(TimezoneDriftDetectedError) as exc_info:
            report.raise_for_drift()

        assert exc_info.value.context["affected"] == "1"

    def test_raise_for_drift_when_clean_then_nothing(self) -> None:
        DriftReport(total_events=5).raise_for_drift()


class TestCompareVersions:
    def test_compare_versions_when_zone_rules_change_then_version_shift(
        self, resolver, local_ms, utc_ms
    ) -> None:
        candidate = TimezoneResolver(
            TimezoneDatabase(
                version="2099a",
                overrides={"America/New_York": timezone(timedelta(hours=-5))},
            )
        )
        detector = DriftDetector(candidate)
        summer = _timed_row(local_ms, utc_ms)
        winter = _timed_row(
            local_ms, utc_ms, id="winter", start_at=local_ms(2024, 1, 10, 9), end_at=None
        )

        report = detector.compare_versions([summer, winter], resolver)

        assert report.database_version == "2099a"
        assert [f.event_id for f in report.findings] == ["timed"]
        finding = report.findings[0]
        assert finding.category is DriftCategory.TZ_VERSION_SHIFT
        assert finding.delta_ms == HOUR_MS
        assert finding.stored_start_utc == utc_ms(2024, 6, 1, 13)
        assert finding.recomputed_start_utc == utc_ms(2024, 6, 1, 14)

    def test_compare_versions_when_zone_removed_then_unresolved(
        self, resolver, local_ms, utc_ms
    ) -> None:
        candidate = TimezoneResolver(resolver.database.with_overrides("next", {"America/New_York": None}))

        report = DriftDetector(candidate).compare_versions([_timed_row(local_ms, utc_ms)], resolver)

        assert report.findings[0].category is DriftCategory.TZ_UNRESOLVED


def test_format_human_summary_when_drift_then_status_and_breakdown(
    detector, local_ms, utc_ms
) -> None:
    report = detector.check([_timed_row(local_ms, utc_ms, start_at_utc=0)])

    text = format_human_summary(report)

    assert "Drift detected" in text
    assert "timed_mismatch: 1" in text
    assert "h1: 1" in text


def test_format_human_summary_when_clean_then_ok() -> None:
    text = format_human_summary(DriftReport(total_events=2))

    assert "OK (no drift detected)" in text
    assert "(none)" in text
