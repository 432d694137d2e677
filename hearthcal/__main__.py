"""Command-line entry for hearthcal.

Operational commands for the timekeeping engine: normalize stored rows,
check cached instants for drift, list occurrences in a window, verify
round-trips and print the error taxonomy.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC
from pathlib import Path
from typing import Any, Optional

from hearthcal import _init_logging
from hearthcal.calendar.datetime_utils import datetime_to_utc_ms, parse_iso_any
from hearthcal.calendar.occurrence_expander import ExpanderConfig, OccurrenceExpander
from hearthcal.calendar.time_errors import TimekeepingError, all_time_error_specs
from hearthcal.calendar.tz_resolver import TimezoneResolver
from hearthcal.config_loader import Config, load_config
from hearthcal.core.timezone_utils import TimezoneDatabase
from hearthcal.domain.backfill import BackfillOptions, BackfillProgress, run_backfill, verify_store
from hearthcal.domain.drift_detector import DriftDetector, format_human_summary
from hearthcal.domain.query_engine import QueryConfig, QueryEngine
from hearthcal.hearth_logging import configure_hearthcal_logging, operation_scope
from hearthcal.storage.sqlite_store import SQLiteEventStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_ERROR = 2


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the hearthcal CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="hearthcal",
        description="hearthcal - recurring-event timekeeping engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hearthcal backfill --dry-run                  # Report what would change
  hearthcal backfill --household h1             # Normalize one household
  hearthcal drift-check --fail-on-drift         # Exit 1 when drift exists
  hearthcal query h1 --from 2024-03-01T00:00:00Z --to 2024-04-01T00:00:00Z
        """,
    )
    parser.add_argument("--config", metavar="PATH", help="YAML/JSON config file")
    parser.add_argument("--env-file", metavar="PATH", help=".env file seeding HEARTHCAL_* variables")
    parser.add_argument("--database", metavar="PATH", help="SQLite database (overrides config)")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    backfill = sub.add_parser("backfill", help="Normalize stored event rows")
    backfill.add_argument("--household", metavar="ID", help="Limit the run to one household")
    backfill.add_argument("--default-tz", metavar="ZONE", help="Fallback zone overriding households")
    backfill.add_argument("--chunk-size", type=int, metavar="N", help="Rows per batch (100-5000)")
    backfill.add_argument("--dry-run", action="store_true", help="Compute changes, write nothing")
    backfill.add_argument("--no-resume", action="store_true", help="Ignore the stored checkpoint")
    backfill.add_argument("--reset-checkpoint", action="store_true", help="Delete the checkpoint first")
    backfill.add_argument("--refresh-caches", action="store_true", help="Recompute every UTC cache")
    backfill.add_argument("--log-dir", metavar="DIR", help="Write a JSON summary under DIR/logs")

    drift = sub.add_parser("drift-check", help="Report cached instants that drifted")
    drift.add_argument("--household", metavar="ID", help="Limit the check to one household")
    drift.add_argument("--tolerance-ms", type=int, metavar="MS", help="Minimum reported delta")
    drift.add_argument("--fail-on-drift", action="store_true", help="Exit 1 when drift is found")

    query = sub.add_parser("query", help="List occurrences of a household in a window")
    query.add_argument("household", help="Household id")
    query.add_argument("--from", dest="from_", required=True, metavar="ISO", help="Window start")
    query.add_argument("--to", required=True, metavar="ISO", help="Window end (exclusive)")
    query.add_argument("--limit", type=int, metavar="N", help="Page size")
    query.add_argument("--cursor", metavar="CURSOR", help="Continue after a previous page")
    query.add_argument("--offset", type=int, default=0, metavar="N", help="Items to skip")

    verify = sub.add_parser("roundtrip-verify", help="Verify stored rows are canonical and stable")
    verify.add_argument("--household", metavar="ID", help="Limit the check to one household")

    sub.add_parser("errors", help="Print the timekeeping error taxonomy")
    return parser


def _parse_instant(value: str) -> int:
    parsed = parse_iso_any(value)
    if parsed is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        logger.warning("Timestamp %s has no offset; treating it as UTC", value)
        parsed = parsed.replace(tzinfo=UTC)
    return datetime_to_utc_ms(parsed)


def _emit(payload: Any, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(text, end="" if text.endswith("\n") else "\n")


def _print_progress(progress: BackfillProgress) -> None:
    logger.info(
        "Backfill progress: scanned=%d updated=%d skipped=%d remaining=%d",
        progress.scanned,
        progress.updated,
        progress.skipped,
        progress.remaining,
    )


async def _run_backfill(
    args: argparse.Namespace, config: Config, store: SQLiteEventStore, resolver: TimezoneResolver
) -> int:
    options = BackfillOptions.from_settings(
        config,
        household_id=args.household,
        default_tz=args.default_tz,
        chunk_size=args.chunk_size,
        dry_run=args.dry_run,
        reset_checkpoint=args.reset_checkpoint,
        refresh_caches=args.refresh_caches,
        log_dir=Path(args.log_dir) if args.log_dir else (
            Path(config.backfill_log_dir) if config.backfill_log_dir else None
        ),
    )
    if args.no_resume:
        options.resume = False
    with operation_scope("backfill"):
        summary = await run_backfill(store, options, resolver, progress_callback=_print_progress)
    text = (
        f"Backfill {summary.status.value}: scanned={summary.scanned} updated={summary.updated} "
        f"skipped={summary.skipped} total={summary.total} dry_run={summary.dry_run}"
    )
    _emit(summary.to_dict(), args.json, text)
    return EXIT_OK


async def _run_drift_check(
    args: argparse.Namespace, config: Config, store: SQLiteEventStore, resolver: TimezoneResolver
) -> int:
    tolerance = args.tolerance_ms if args.tolerance_ms is not None else config.drift_tolerance_ms
    detector = DriftDetector(resolver, tolerance_ms=tolerance)
    with operation_scope("drift"):
        report = await detector.check_store(store, args.household)
    _emit(report.to_dict(), args.json, format_human_summary(report))
    if report.has_drift and args.fail_on_drift:
        return EXIT_FINDINGS
    return EXIT_OK


async def _run_query(
    args: argparse.Namespace, config: Config, store: SQLiteEventStore, resolver: TimezoneResolver
) -> int:
    expander = OccurrenceExpander(resolver, ExpanderConfig.from_settings(config))
    engine = QueryEngine(expander, QueryConfig.from_settings(config))
    page = await engine.list_range_from_store(
        store,
        args.household,
        _parse_instant(args.from_),
        _parse_instant(args.to),
        limit=args.limit,
        cursor=args.cursor,
        offset=args.offset,
    )
    lines = [occurrence.describe() for occurrence in page.items]
    for skipped in page.skipped:
        lines.append(f"skipped {skipped.event_id}: {skipped.code} {skipped.message}")
    for event_id in page.truncated:
        lines.append(f"truncated {event_id}: page ends early, continue with the next cursor")
    if page.next_cursor:
        lines.append(f"next cursor: {page.next_cursor}")
    _emit(page.model_dump(), args.json, "\n".join(lines) or "(no occurrences)")
    return EXIT_OK


async def _run_verify(
    args: argparse.Namespace, config: Config, store: SQLiteEventStore, resolver: TimezoneResolver
) -> int:
    with operation_scope("verify"):
        checked, failures = await verify_store(
            store,
            resolver,
            household_id=args.household,
            chunk_size=config.backfill_chunk_size,
            default_tz=config.default_timezone,
        )
    payload = {
        "checked": checked,
        "failures": [
            {"event_id": f.event_id, "rowid": f.rowid, "detail": f.detail} for f in failures
        ],
    }
    lines = [f"Rows checked: {checked}", f"Failures:     {len(failures)}"]
    lines.extend(f"  {f.event_id} (rowid {f.rowid}): {f.detail}" for f in failures)
    _emit(payload, args.json, "\n".join(lines))
    return EXIT_FINDINGS if failures else EXIT_OK


def _print_errors(as_json: bool) -> int:
    specs = all_time_error_specs()
    payload = [
        {"code": code.value, "developer_message": code.developer_message, "user_message": copy}
        for code, copy in specs
    ]
    text = "\n".join(f"{code.value}: {code.developer_message}\n  user: {copy}" for code, copy in specs)
    _emit(payload, as_json, text)
    return EXIT_OK


_COMMANDS = {
    "backfill": _run_backfill,
    "drift-check": _run_drift_check,
    "query": _run_query,
    "roundtrip-verify": _run_verify,
}


def run(argv: Optional[list[str]] = None) -> int:
    """Parse ``argv`` and run one command, returning the exit code."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    if args.command == "errors":
        return _print_errors(args.json)

    config = load_config(args.config, env_file=args.env_file)
    _init_logging(config.log_level)
    configure_hearthcal_logging(debug_mode=args.debug or config.log_level == "DEBUG")

    resolver = TimezoneResolver(TimezoneDatabase(version=config.tz_database_version))
    store = SQLiteEventStore(args.database or config.database_path)
    try:
        return asyncio.run(_COMMANDS[args.command](args, config, store, resolver))
    except TimekeepingError as e:
        logger.error("%s failed: %s (%s)", args.command, e.message, e.code.value)
        _emit(e.to_dict(), args.json, f"error: {e.code.value}: {e.message}")
        return EXIT_ERROR
    except ValueError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR


def main() -> None:
    """Run the hearthcal CLI."""
    sys.exit(run())


if __name__ == "__main__":
    main()
