"""Backfill/migration normalizer for stored event rows.

Walks the events table in ``rowid`` order, decodes legacy date encodings,
canonicalizes timezone names and EXDATE lists, fills the cached UTC instants
of the first occurrence, verifies every rewritten row round-trips, and writes
each batch together with a checkpoint in one transaction. A second run over
already-canonical data changes nothing.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Awaitable
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from hearthcal.calendar.datetime_utils import datetime_to_utc_ms, naive_to_local_ms
from hearthcal.calendar.exdate_parser import format_exdates, split_exdate_tokens
from hearthcal.calendar.occurrence_expander import OccurrenceExpander, occurrence_end_utc_ms
from hearthcal.calendar.protocols import BackfillCheckpoint, EventRepository, RawEventRow, RowUpdate
from hearthcal.calendar.rrule_parser import parse_rrule
from hearthcal.calendar.time_errors import TimekeepingError, TimezoneUnknownError
from hearthcal.calendar.tz_resolver import EffectiveZone, ResolutionKind, TimezoneResolver
from hearthcal.core.timezone_utils import now_utc_ms, sanitize_tz
from hearthcal.domain.date_encodings import (
    IsoInstant,
    MissingValue,
    canonicalize_exdate_token,
    classify_encoding,
    is_canonical,
    to_local_ms,
)

logger = logging.getLogger(__name__)

MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 5_000
DEFAULT_CHUNK_SIZE = 500
MIN_PROGRESS_INTERVAL_MS = 250
MAX_PROGRESS_INTERVAL_MS = 60_000
DEFAULT_PROGRESS_INTERVAL_MS = 1_000
MAX_SKIP_EXAMPLES = 50
GLOBAL_SCOPE = "*"


class SkipReason(str, Enum):
    """Why a row was left untouched."""

    START_MISSING = "start_missing"
    DATE_UNPARSEABLE = "date_unparseable"
    END_BEFORE_START = "end_before_start"
    TZ_UNKNOWN = "tz_unknown"
    RRULE_INVALID = "rrule_invalid"
    EXDATE_INVALID = "exdate_invalid"
    ROUNDTRIP_MISMATCH = "roundtrip_mismatch"


class BackfillStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class BackfillOptions:
    """Options for one backfill run.

    Attributes:
        household_id: Restrict the run to one household; None runs globally
        default_tz: Fallback zone used instead of the household's
        chunk_size: Rows per batch/transaction (100-5000)
        progress_interval_ms: Minimum spacing of progress callbacks
            (250-60000; 0 selects the default)
        dry_run: Compute and report, write nothing
        resume: Continue after the stored checkpoint
        reset_checkpoint: Discard the stored checkpoint before starting
        refresh_caches: Recompute UTC caches even when present and the row is
            already canonical
        log_dir: When set, a JSON summary is written under ``log_dir/logs``
    """

    household_id: Optional[str] = None
    default_tz: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    progress_interval_ms: int = DEFAULT_PROGRESS_INTERVAL_MS
    dry_run: bool = False
    resume: bool = True
    reset_checkpoint: bool = False
    refresh_caches: bool = False
    log_dir: Optional[Path] = None

    @property
    def scope(self) -> str:
        return self.household_id or GLOBAL_SCOPE

    def validate(self) -> None:
        """Check option ranges.

        Raises:
            ValueError: If chunk size or progress interval is out of range
        """
        if not MIN_CHUNK_SIZE <= self.chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(
                f"Chunk size {self.chunk_size} is outside the supported range "
                f"({MIN_CHUNK_SIZE}-{MAX_CHUNK_SIZE})."
            )
        if self.progress_interval_ms == 0:
            self.progress_interval_ms = DEFAULT_PROGRESS_INTERVAL_MS
        if not MIN_PROGRESS_INTERVAL_MS <= self.progress_interval_ms <= MAX_PROGRESS_INTERVAL_MS:
            raise ValueError(
                f"Progress interval {self.progress_interval_ms}ms is outside the supported "
                f"range ({MIN_PROGRESS_INTERVAL_MS}-{MAX_PROGRESS_INTERVAL_MS}ms)."
            )

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> BackfillOptions:
        """Build options from a settings object, applying keyword overrides."""
        options = cls(
            chunk_size=getattr(settings, "backfill_chunk_size", DEFAULT_CHUNK_SIZE),
            progress_interval_ms=getattr(
                settings, "backfill_progress_interval_ms", DEFAULT_PROGRESS_INTERVAL_MS
            ),
            default_tz=getattr(settings, "default_timezone", None),
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


class BackfillControl:
    """Cooperative cancellation handle shared with a running backfill."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class BackfillProgress:
    scope: str
    scanned: int
    updated: int
    skipped: int
    remaining: int
    elapsed_ms: int
    chunk_size: int


@dataclass(frozen=True)
class SkipExample:
    event_id: str
    rowid: int
    reason: str
    detail: str


@dataclass
class BackfillSummary:
    """Outcome of a backfill run (counts cover this run only)."""

    scope: str
    scanned: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    elapsed_ms: int = 0
    status: BackfillStatus = BackfillStatus.COMPLETED
    dry_run: bool = False
    last_rowid: int = 0
    skip_examples: list[SkipExample] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


ProgressCallback = Callable[[BackfillProgress], Union[None, Awaitable[None]]]


@dataclass
class RowCanonicalization:
    """Result of canonicalizing one raw row.

    ``changes`` holds only columns whose canonical value differs from the
    stored one; an empty dict with no ``skip_reason`` means the row is already
    canonical.
    """

    event_id: str
    rowid: int = 0
    changes: dict[str, Any] = field(default_factory=dict)
    skip_reason: Optional[SkipReason] = None
    detail: str = ""
    legacy: bool = False

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    def skip(self, reason: SkipReason, detail: str) -> RowCanonicalization:
        self.skip_reason = reason
        self.detail = detail
        self.changes = {}
        return self


def _decode_date(
    raw: Any,
    zone: EffectiveZone,
    resolver: TimezoneResolver,
    column: str,
    reference_utc_ms: Optional[int] = None,
) -> tuple[Optional[int], bool]:
    """Return (local ms, was_legacy) for a raw column value."""
    encoding = classify_encoding(raw, reference_utc_ms)
    value = to_local_ms(encoding, zone, resolver)
    if isinstance(encoding, MissingValue):
        return None, raw is not None
    if isinstance(encoding, IsoInstant):
        # The canonical local value must denote the same instant
        if resolver.local_ms_to_utc_ms(value, zone) != _instant_ms(encoding):
            raise _RoundtripError(f"{column} {raw!r} is ambiguous in {zone.label}")
    return value, not is_canonical(raw, encoding)


def _instant_ms(encoding: IsoInstant) -> int:
    return datetime_to_utc_ms(encoding.instant)


def _cached_instant(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class _RoundtripError(ValueError):
    pass


def canonicalize_row(
    raw: RawEventRow,
    household_tz: Optional[str],
    resolver: TimezoneResolver,
    refresh_caches: bool = False,
    expander: Optional[OccurrenceExpander] = None,
) -> RowCanonicalization:
    """Compute the canonical form of one stored row without touching storage.

    Args:
        raw: Row as stored (``id``, ``start_at``, ``end_at``, ``tz``, ``rrule``,
            ``exdates``, ``start_at_utc``, ``end_at_utc`` and optionally
            ``rowid``)
        household_tz: Fallback zone for rows without ``tz``
        resolver: Resolver bound to the tz database in force
        refresh_caches: Recompute UTC caches for canonical rows too
        expander: Expander to use; built from ``resolver`` when omitted

    Returns:
        RowCanonicalization with the column changes or the skip reason
    """
    expander = expander or OccurrenceExpander(resolver)
    result = RowCanonicalization(event_id=str(raw.get("id")), rowid=int(raw.get("rowid") or 0))

    stored_tz = raw.get("tz")
    tz = sanitize_tz(stored_tz)
    if tz is not None:
        if not resolver.database.is_known(tz):
            return result.skip(SkipReason.TZ_UNKNOWN, f"unknown timezone {tz!r}")
        tz = resolver.database.canonical_name(tz)
    if stored_tz is not None and tz != stored_tz:
        result.changes["tz"] = tz

    try:
        zone = resolver.effective_zone(tz, household_tz)
    except TimezoneUnknownError as e:
        return result.skip(SkipReason.TZ_UNKNOWN, e.message)

    start_reference = _cached_instant(raw.get("start_at_utc"))
    end_reference = _cached_instant(raw.get("end_at_utc"))
    if end_reference is None:
        end_reference = start_reference
    try:
        start_local, start_legacy = _decode_date(
            raw.get("start_at"), zone, resolver, "start_at", start_reference
        )
        end_local, end_legacy = _decode_date(
            raw.get("end_at"), zone, resolver, "end_at", end_reference
        )
    except _RoundtripError as e:
        return result.skip(SkipReason.ROUNDTRIP_MISMATCH, str(e))
    except ValueError as e:
        return result.skip(SkipReason.DATE_UNPARSEABLE, str(e))
    if start_local is None:
        return result.skip(SkipReason.START_MISSING, "start_at is missing")
    if end_local is not None and end_local < start_local:
        return result.skip(SkipReason.END_BEFORE_START, "end_at is before start_at")
    if start_legacy:
        result.changes["start_at"] = start_local
    if end_legacy:
        result.changes["end_at"] = end_local

    rrule_text = raw.get("rrule")
    if isinstance(rrule_text, str) and rrule_text.strip():
        try:
            parse_rrule(rrule_text)
        except TimekeepingError as e:
            return result.skip(SkipReason.RRULE_INVALID, e.message)
    else:
        rrule_text = None

    exdates_legacy = False
    stored_exdates = raw.get("exdates")
    if stored_exdates is not None:
        instants: list[int] = []
        for token in split_exdate_tokens(str(stored_exdates)):
            instant = canonicalize_exdate_token(token)
            if instant is None:
                return result.skip(SkipReason.EXDATE_INVALID, f"invalid exclusion {token!r}")
            instants.append(instant)
        canonical_exdates = format_exdates(instants) or None
        if canonical_exdates != stored_exdates:
            result.changes["exdates"] = canonical_exdates
            exdates_legacy = True

    result.legacy = start_legacy or end_legacy or exdates_legacy

    stored_start_utc = raw.get("start_at_utc")
    stored_end_utc = raw.get("end_at_utc")
    caches_missing = not isinstance(stored_start_utc, int) or (
        end_local is not None and not isinstance(stored_end_utc, int)
    )
    if caches_missing or result.legacy or refresh_caches:
        try:
            first = expander.first_occurrence_instant(start_local, rrule_text, zone)
        except TimekeepingError as e:
            return result.skip(SkipReason.RRULE_INVALID, e.message)
        duration_ms = end_local - start_local if end_local is not None else 0
        start_utc = first.start_utc_ms
        end_utc = (
            occurrence_end_utc_ms(resolver, zone, first, duration_ms)
            if end_local is not None
            else None
        )
        if first.kind is not ResolutionKind.GAP and resolver.utc_ms_to_local_ms(
            start_utc, zone
        ) != naive_to_local_ms(first.local_start):
            return result.skip(
                SkipReason.ROUNDTRIP_MISMATCH, "start_at_utc does not convert back to start_at"
            )
        if start_utc != stored_start_utc:
            result.changes["start_at_utc"] = start_utc
        if end_utc != stored_end_utc:
            result.changes["end_at_utc"] = end_utc

    return result


def roundtrip_verify(
    row: RawEventRow,
    household_tz: Optional[str],
    resolver: TimezoneResolver,
    expander: Optional[OccurrenceExpander] = None,
    first_pass: Optional[RowCanonicalization] = None,
) -> Optional[str]:
    """Check that a row's canonical form is stable and its caches agree.

    Canonicalizes the row (unless ``first_pass`` is supplied), applies the
    changes, and canonicalizes the result a second time; the second pass must
    produce no changes.

    Returns:
        None when the row verifies, otherwise a description of the failure
    """
    expander = expander or OccurrenceExpander(resolver)
    if first_pass is None:
        first_pass = canonicalize_row(row, household_tz, resolver, expander=expander)
    if first_pass.skipped:
        return f"{first_pass.skip_reason.value}: {first_pass.detail}"
    rewritten = {**row, **first_pass.changes}
    second_pass = canonicalize_row(rewritten, household_tz, resolver, expander=expander)
    if second_pass.skipped:
        return f"{second_pass.skip_reason.value}: {second_pass.detail}"
    if second_pass.changes:
        return f"canonical form not stable: {sorted(second_pass.changes)}"
    return None


async def _emit(callback: Optional[ProgressCallback], progress: BackfillProgress) -> None:
    if callback is None:
        return
    outcome = callback(progress)
    if inspect.isawaitable(outcome):
        await outcome


def write_summary_log(log_dir: Path, summary: BackfillSummary) -> Optional[Path]:
    """Write the JSON summary under ``log_dir/logs``; failures are logged."""
    target_dir = Path(log_dir) / "logs"
    scope = "all" if summary.scope == GLOBAL_SCOPE else summary.scope
    path = target_dir / f"events_tz_backfill_{scope}_{now_utc_ms()}.json"
    payload = {"dry_run": summary.dry_run, "summary": summary.to_dict()}
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    except OSError as e:
        logger.warning("Failed to write backfill summary log %s: %s", path, e)
        return None
    return path


async def run_backfill(
    store: EventRepository,
    options: Optional[BackfillOptions] = None,
    resolver: Optional[TimezoneResolver] = None,
    control: Optional[BackfillControl] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> BackfillSummary:
    """Normalize stored rows in batches.

    Args:
        store: Event storage
        options: Run options; defaults apply when omitted
        resolver: Resolver bound to the tz database in force
        control: Cancellation handle checked between batches
        progress_callback: Sync or async callable receiving BackfillProgress

    Returns:
        BackfillSummary for this run

    Raises:
        ValueError: If options are out of range
        TimezoneUnknownError: If ``default_tz`` does not resolve
    """
    options = options or BackfillOptions()
    options.validate()
    resolver = resolver or TimezoneResolver()
    expander = OccurrenceExpander(resolver)
    scope = options.scope

    if options.default_tz:
        resolver.zone_for_name(options.default_tz)

    if options.reset_checkpoint:
        if options.dry_run:
            logger.info("Dry run: leaving checkpoint for scope %s in place", scope)
        else:
            await store.reset_checkpoint(scope)

    checkpoint = await store.load_checkpoint(scope) if options.resume else None
    if checkpoint is None:
        checkpoint = BackfillCheckpoint(scope=scope)
    total = await store.count_rows(options.household_id)
    checkpoint.total = max(checkpoint.total, total)

    summary = BackfillSummary(
        scope=scope, total=total, dry_run=options.dry_run, last_rowid=checkpoint.last_rowid
    )
    started = time.monotonic()
    last_emit = started
    after_rowid = checkpoint.last_rowid

    logger.info(
        "Backfill started: scope=%s chunk_size=%d dry_run=%s resume_after=%d total=%d",
        scope,
        options.chunk_size,
        options.dry_run,
        after_rowid,
        total,
    )

    while True:
        if control is not None and control.cancelled:
            summary.status = BackfillStatus.CANCELLED
            logger.info("Backfill cancelled: scope=%s after rowid %d", scope, after_rowid)
            break

        rows = await store.fetch_rows_after(after_rowid, options.chunk_size, options.household_id)
        if not rows:
            break

        updates: list[RowUpdate] = []
        batch_skipped = 0
        for raw in rows:
            household_tz = options.default_tz or raw.get("household_tz")
            result = canonicalize_row(
                raw, household_tz, resolver, options.refresh_caches, expander=expander
            )
            if result.changes:
                failure = roundtrip_verify(
                    raw, household_tz, resolver, expander=expander, first_pass=result
                )
                if failure is not None:
                    result.skip(SkipReason.ROUNDTRIP_MISMATCH, failure)
            summary.scanned += 1
            if result.skipped:
                summary.skipped += 1
                batch_skipped += 1
                logger.warning(
                    "Backfill skipped event %s (rowid %d): %s: %s",
                    result.event_id,
                    result.rowid,
                    result.skip_reason.value,
                    result.detail,
                )
                if len(summary.skip_examples) < MAX_SKIP_EXAMPLES:
                    summary.skip_examples.append(
                        SkipExample(
                            event_id=result.event_id,
                            rowid=result.rowid,
                            reason=result.skip_reason.value,
                            detail=result.detail,
                        )
                    )
            elif result.changes:
                summary.updated += 1
                updates.append(RowUpdate(event_id=result.event_id, changes=result.changes))

        after_rowid = int(rows[-1]["rowid"])
        summary.last_rowid = after_rowid
        checkpoint.last_rowid = after_rowid
        checkpoint.processed += len(rows)
        checkpoint.updated += len(updates)
        checkpoint.skipped += batch_skipped
        checkpoint.updated_at = now_utc_ms()

        if not options.dry_run:
            await store.apply_batch(updates, checkpoint)

        now = time.monotonic()
        if (now - last_emit) * 1000 >= options.progress_interval_ms:
            last_emit = now
            await _emit(progress_callback, _progress(summary, checkpoint, options, started))
        await asyncio.sleep(0)

    summary.elapsed_ms = int((time.monotonic() - started) * 1000)
    await _emit(progress_callback, _progress(summary, checkpoint, options, started))

    logger.info(
        "Backfill %s: scope=%s scanned=%d updated=%d skipped=%d elapsed_ms=%d dry_run=%s",
        summary.status.value,
        scope,
        summary.scanned,
        summary.updated,
        summary.skipped,
        summary.elapsed_ms,
        options.dry_run,
    )
    if options.log_dir is not None:
        write_summary_log(options.log_dir, summary)
    return summary


def _progress(
    summary: BackfillSummary,
    checkpoint: BackfillCheckpoint,
    options: BackfillOptions,
    started: float,
) -> BackfillProgress:
    return BackfillProgress(
        scope=summary.scope,
        scanned=summary.scanned,
        updated=summary.updated,
        skipped=summary.skipped,
        remaining=max(checkpoint.total - checkpoint.processed, 0),
        elapsed_ms=int((time.monotonic() - started) * 1000),
        chunk_size=options.chunk_size,
    )


@dataclass(frozen=True)
class VerificationFailure:
    event_id: str
    rowid: int
    detail: str


async def verify_store(
    store: EventRepository,
    resolver: Optional[TimezoneResolver] = None,
    household_id: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    default_tz: Optional[str] = None,
) -> tuple[int, list[VerificationFailure]]:
    """Round-trip verify every stored row without writing anything.

    Returns:
        (rows checked, failures) where a failure is any row that is skipped,
        not yet canonical, or whose canonical form is unstable
    """
    resolver = resolver or TimezoneResolver()
    expander = OccurrenceExpander(resolver)
    checked = 0
    failures: list[VerificationFailure] = []
    after_rowid = 0
    while True:
        rows = await store.fetch_rows_after(after_rowid, chunk_size, household_id)
        if not rows:
            break
        for raw in rows:
            checked += 1
            household_tz = default_tz or raw.get("household_tz")
            first_pass = canonicalize_row(raw, household_tz, resolver, expander=expander)
            detail = roundtrip_verify(
                raw, household_tz, resolver, expander=expander, first_pass=first_pass
            )
            if detail is None and first_pass.changes:
                detail = f"not canonical: {sorted(first_pass.changes)}"
            if detail is not None:
                failures.append(
                    VerificationFailure(
                        event_id=first_pass.event_id, rowid=first_pass.rowid, detail=detail
                    )
                )
        after_rowid = int(rows[-1]["rowid"])

    logger.info("Round-trip verified %d row(s): %d failure(s)", checked, len(failures))
    return checked, failures
