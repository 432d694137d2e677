"""Detect cached UTC instants that no longer match their wall-clock source.

The source of truth for an event is ``start_at`` + ``tz`` + ``rrule``;
``start_at_utc``/``end_at_utc`` are caches. A tz database update (or a buggy
writer) can leave the caches pointing at the wrong instant. The detector
recomputes them and reports every discrepancy as an advisory finding. It never
rewrites rows.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from hearthcal.calendar.models import EventRow
from hearthcal.calendar.occurrence_expander import OccurrenceExpander
from hearthcal.calendar.time_errors import (
    TimeErrorCode,
    TimekeepingError,
    TimezoneDriftDetectedError,
    TimezoneUnknownError,
)
from hearthcal.calendar.tz_resolver import EffectiveZone, TimezoneResolver

if TYPE_CHECKING:
    from hearthcal.calendar.protocols import EventRepository

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000
_DAY_MS = 86_400_000


class DriftCategory(str, Enum):
    """Kind of discrepancy found for an event."""

    TIMED_MISMATCH = "timed_mismatch"
    ALLDAY_BOUNDARY_ERROR = "allday_boundary_error"
    TZ_UNRESOLVED = "tz_unresolved"
    TZ_VERSION_SHIFT = "tz_version_shift"


@dataclass(frozen=True)
class DriftFinding:
    """One event whose cached instants disagree with recomputation."""

    event_id: str
    household_id: str
    category: DriftCategory
    delta_ms: int
    stored_start_utc: Optional[int]
    recomputed_start_utc: Optional[int] = None
    stored_end_utc: Optional[int] = None
    recomputed_end_utc: Optional[int] = None
    tz: Optional[str] = None
    code: TimeErrorCode = TimeErrorCode.TZ_DRIFT_DETECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "event_id": self.event_id,
            "household_id": self.household_id,
            "category": self.category.value,
            "delta_ms": self.delta_ms,
            "stored_start_utc": self.stored_start_utc,
            "recomputed_start_utc": self.recomputed_start_utc,
            "stored_end_utc": self.stored_end_utc,
            "recomputed_end_utc": self.recomputed_end_utc,
            "tz": self.tz,
        }


@dataclass
class DriftReport:
    """Findings of one drift check."""

    total_events: int = 0
    findings: list[DriftFinding] = field(default_factory=list)
    database_version: str = ""

    @property
    def has_drift(self) -> bool:
        return bool(self.findings)

    @property
    def counts_by_category(self) -> dict[str, int]:
        return dict(sorted(Counter(f.category.value for f in self.findings).items()))

    @property
    def counts_by_household(self) -> dict[str, int]:
        return dict(sorted(Counter(f.household_id for f in self.findings).items()))

    def raise_for_drift(self) -> None:
        """Raise when any finding exists.

        Raises:
            TimezoneDriftDetectedError: Carrying the number of affected events
        """
        if self.findings:
            raise TimezoneDriftDetectedError(
                affected=len(self.findings), database_version=self.database_version
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "database_version": self.database_version,
            "drift_events": [finding.to_dict() for finding in self.findings],
            "counts_by_category": self.counts_by_category,
            "counts_by_household": self.counts_by_household,
        }


def _is_all_day(start_local: int, end_local: Optional[int]) -> bool:
    if end_local is None:
        return False
    if start_local % _DAY_MS or end_local % _DAY_MS:
        return False
    return end_local - start_local >= _DAY_MS


def _allow_all_day_shift(stored_local: int, cached_local: int) -> bool:
    # All-day caches may land on the neighbouring midnight but never off-midnight
    if cached_local % _DAY_MS:
        return False
    return abs(cached_local - stored_local) <= _DAY_MS


class DriftDetector:
    """Compares cached UTC instants against the current tz database.

    Args:
        resolver: Resolver bound to the tz database in force
        tolerance_ms: Deltas at or above this are reported (default one minute)
    """

    def __init__(
        self, resolver: Optional[TimezoneResolver] = None, tolerance_ms: int = MINUTE_MS
    ) -> None:
        self.resolver = resolver or TimezoneResolver()
        self.expander = OccurrenceExpander(self.resolver)
        self.tolerance_ms = tolerance_ms

    def _zone(self, row: EventRow, household_tz: Optional[str]) -> EffectiveZone:
        return self.resolver.effective_zone(row.tz, household_tz)

    def evaluate(self, row: EventRow, household_tz: Optional[str] = None) -> Optional[DriftFinding]:
        """Check one row; rows without a start cache are not checked."""
        if row.start_at_utc is None:
            return None

        try:
            zone = self._zone(row, household_tz)
        except TimezoneUnknownError:
            return DriftFinding(
                event_id=row.id,
                household_id=row.household_id,
                category=DriftCategory.TZ_UNRESOLVED,
                delta_ms=0,
                stored_start_utc=row.start_at_utc,
                stored_end_utc=row.end_at_utc,
                tz=row.tz,
            )

        all_day = _is_all_day(row.start_at, row.end_at) and not row.is_recurring
        if all_day:
            cached_start_local = self.resolver.utc_ms_to_local_ms(row.start_at_utc, zone)
            ok = _allow_all_day_shift(row.start_at, cached_start_local)
            if row.end_at is not None:
                if row.end_at_utc is None:
                    ok = False
                else:
                    cached_end_local = self.resolver.utc_ms_to_local_ms(row.end_at_utc, zone)
                    ok = ok and _allow_all_day_shift(row.end_at, cached_end_local)
            if ok:
                return None

        try:
            start_utc, end_utc = self.expander.first_occurrence_window(
                row.start_at, row.end_at, row.rrule, row.tz, household_tz
            )
        except TimekeepingError as e:
            logger.warning("Drift check could not recompute event %s: %s", row.id, e.message)
            return None
        recomputed_end = end_utc if row.end_at is not None else None

        delta = abs(row.start_at_utc - start_utc)
        if row.end_at_utc is not None and recomputed_end is not None:
            delta = max(delta, abs(row.end_at_utc - recomputed_end))
        if not all_day and delta < self.tolerance_ms:
            return None

        return DriftFinding(
            event_id=row.id,
            household_id=row.household_id,
            category=DriftCategory.ALLDAY_BOUNDARY_ERROR if all_day else DriftCategory.TIMED_MISMATCH,
            delta_ms=delta,
            stored_start_utc=row.start_at_utc,
            recomputed_start_utc=start_utc,
            stored_end_utc=row.end_at_utc,
            recomputed_end_utc=recomputed_end,
            tz=zone.name,
        )

    def check(
        self, rows: Iterable[EventRow], household_tzs: Optional[Mapping[str, Optional[str]]] = None
    ) -> DriftReport:
        """Check every row and collect findings.

        Args:
            rows: Stored events, any number of households
            household_tzs: Household id to fallback zone
        """
        household_tzs = household_tzs or {}
        report = DriftReport(database_version=self.resolver.database.version)
        for row in rows:
            if row.start_at_utc is None:
                continue
            report.total_events += 1
            finding = self.evaluate(row, household_tzs.get(row.household_id))
            if finding is not None:
                report.findings.append(finding)

        if report.findings:
            logger.warning(
                "Drift detected in %d of %d event(s) (tz database %s): %s",
                len(report.findings),
                report.total_events,
                report.database_version,
                report.counts_by_category,
            )
        else:
            logger.info("No drift across %d event(s)", report.total_events)
        return report

    def compare_versions(
        self,
        rows: Iterable[EventRow],
        baseline_resolver: TimezoneResolver,
        household_tzs: Optional[Mapping[str, Optional[str]]] = None,
    ) -> DriftReport:
        """Flag events whose first occurrence moves between two tz database versions.

        ``baseline_resolver`` represents the version the caches were computed
        with; this detector's resolver is the candidate version. Stored caches
        are not consulted.
        """
        household_tzs = household_tzs or {}
        baseline = OccurrenceExpander(baseline_resolver)
        report = DriftReport(database_version=self.resolver.database.version)
        for row in rows:
            report.total_events += 1
            household_tz = household_tzs.get(row.household_id)
            try:
                before = baseline.first_occurrence_window(
                    row.start_at, row.end_at, row.rrule, row.tz, household_tz
                )
                after = self.expander.first_occurrence_window(
                    row.start_at, row.end_at, row.rrule, row.tz, household_tz
                )
            except TimezoneUnknownError:
                report.findings.append(
                    DriftFinding(
                        event_id=row.id,
                        household_id=row.household_id,
                        category=DriftCategory.TZ_UNRESOLVED,
                        delta_ms=0,
                        stored_start_utc=row.start_at_utc,
                        tz=row.tz,
                    )
                )
                continue
            except TimekeepingError as e:
                logger.warning("Version comparison skipped event %s: %s", row.id, e.message)
                continue

            delta = max(abs(before[0] - after[0]), abs(before[1] - after[1]))
            if delta >= self.tolerance_ms:
                report.findings.append(
                    DriftFinding(
                        event_id=row.id,
                        household_id=row.household_id,
                        category=DriftCategory.TZ_VERSION_SHIFT,
                        delta_ms=delta,
                        stored_start_utc=before[0],
                        recomputed_start_utc=after[0],
                        stored_end_utc=before[1] if row.end_at is not None else None,
                        recomputed_end_utc=after[1] if row.end_at is not None else None,
                        tz=row.tz or household_tz,
                    )
                )
        logger.info(
            "Compared tz database %s against %s: %d event(s) shift",
            report.database_version,
            baseline_resolver.database.version,
            len(report.findings),
        )
        return report

    async def check_store(
        self, store: EventRepository, household_id: Optional[str] = None
    ) -> DriftReport:
        """Load rows from ``store`` (one household or all) and check them."""
        household_tzs = await store.list_household_tzs()
        targets = [household_id] if household_id else sorted(household_tzs)
        rows: list[EventRow] = []
        for target in targets:
            rows.extend(await store.list_events(target))
        return self.check(rows, household_tzs)


def format_human_summary(report: DriftReport) -> str:
    """Render a drift report as plain text for operators."""
    lines = [
        "Time Invariants Drift Report",
        "============================",
        f"Events checked: {report.total_events}",
        f"Drift events:   {len(report.findings)}",
    ]
    if report.findings:
        lines.append("Status:        Drift detected")
        lines.append(TimeErrorCode.TZ_DRIFT_DETECTED.user_message)
    else:
        lines.append("Status:        OK (no drift detected)")

    for title, counts in (
        ("By category:", report.counts_by_category),
        ("By household:", report.counts_by_household),
    ):
        lines.append("")
        lines.append(title)
        if not counts:
            lines.append("  (none)")
        for key, count in counts.items():
            lines.append(f"  {key}: {count}")
    return "\n".join(lines) + "\n"
