"""Integration tests for the backfill normalizer against SQLite."""

from pathlib import Path

import pytest

from hearthcal.calendar.models import EventRow
from hearthcal.domain.backfill import (
    BackfillControl,
    BackfillOptions,
    BackfillStatus,
    run_backfill,
    verify_store,
)
from hearthcal.storage.sqlite_store import SQLiteEventStore

pytestmark = pytest.mark.integration


class _CancelAfterFirstBatchStore(SQLiteEventStore):
    """Store that cancels the run once the first batch has committed."""

    def __init__(self, database_path: Path, control: BackfillControl) -> None:
        super().__init__(database_path)
        self.control = control
        self.batches = 0

    async def apply_batch(self, updates, checkpoint) -> None:
        await super().apply_batch(updates, checkpoint)
        self.batches += 1
        self.control.cancel()


class TestBackfillRun:
    async def test_run_backfill_when_legacy_rows_then_rewritten_canonically(
        self, sqlite_store, seed_legacy_rows, resolver, local_ms, utc_ms
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        summary = await run_backfill(sqlite_store, BackfillOptions(), resolver)

        assert summary.status is BackfillStatus.COMPLETED
        assert (summary.scanned, summary.updated, summary.skipped) == (5, 3, 1)
        assert [example.event_id for example in summary.skip_examples] == ["bad-tz"]
        assert summary.skip_examples[0].reason == "tz_unknown"

        series = await sqlite_store.get_raw_event("legacy-iso")
        assert series["start_at"] == local_ms(2024, 3, 8, 9)
        assert series["end_at"] == local_ms(2024, 3, 8, 10)
        assert series["tz"] == "America/New_York"
        assert series["exdates"] == "2024-03-10T13:00:00Z"
        assert series["start_at_utc"] == utc_ms(2024, 3, 8, 14)
        assert series["end_at_utc"] == utc_ms(2024, 3, 8, 15)

        instant = await sqlite_store.get_raw_event("instant")
        assert instant["start_at"] == local_ms(2024, 6, 1, 9)
        assert instant["tz"] is None
        assert instant["start_at_utc"] == utc_ms(2024, 6, 1, 7)

        untouched = await sqlite_store.get_raw_event("bad-tz")
        assert untouched["start_at_utc"] is None

    async def test_run_backfill_when_run_twice_then_second_run_is_identical(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        await run_backfill(sqlite_store, BackfillOptions(), resolver)
        after_first = await sqlite_store.dump_events()
        second = await run_backfill(sqlite_store, BackfillOptions(resume=False), resolver)
        after_second = await sqlite_store.dump_events()

        assert second.scanned == 5
        assert second.updated == 0
        assert second.skipped == 1
        assert after_second == after_first

    async def test_run_backfill_when_dry_run_then_nothing_written(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)
        before = await sqlite_store.dump_events()

        summary = await run_backfill(sqlite_store, BackfillOptions(dry_run=True), resolver)

        assert summary.dry_run
        assert summary.updated == 3
        assert await sqlite_store.dump_events() == before
        assert await sqlite_store.load_checkpoint("*") is None

    async def test_run_backfill_when_household_scoped_then_other_households_untouched(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)
        h1_before = await sqlite_store.get_raw_event("legacy-iso")

        summary = await run_backfill(sqlite_store, BackfillOptions(household_id="h2"), resolver)

        assert (summary.scope, summary.scanned, summary.updated) == ("h2", 1, 1)
        assert await sqlite_store.get_raw_event("legacy-iso") == h1_before
        checkpoint = await sqlite_store.load_checkpoint("h2")
        assert checkpoint.processed == 1
        assert await sqlite_store.load_checkpoint("*") is None

    async def test_run_backfill_when_completed_then_checkpoint_records_progress(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        summary = await run_backfill(sqlite_store, BackfillOptions(), resolver)
        checkpoint = await sqlite_store.load_checkpoint("*")

        assert checkpoint.last_rowid == summary.last_rowid == 5
        assert (checkpoint.processed, checkpoint.updated, checkpoint.skipped) == (5, 3, 1)
        assert checkpoint.total == 5
        assert checkpoint.updated_at > 0

    async def test_run_backfill_when_default_tz_given_then_overrides_household(
        self, sqlite_store, seed_legacy_rows, resolver, local_ms, utc_ms
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        await run_backfill(
            sqlite_store, BackfillOptions(household_id="h2", default_tz="Europe/London"), resolver
        )

        instant = await sqlite_store.get_raw_event("instant")
        assert instant["start_at"] == local_ms(2024, 6, 1, 8)
        assert instant["start_at_utc"] == utc_ms(2024, 6, 1, 7)

    async def test_run_backfill_when_progress_callback_then_final_progress_reported(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)
        reports = []

        async def _collect(progress) -> None:
            reports.append(progress)

        await run_backfill(sqlite_store, BackfillOptions(), resolver, progress_callback=_collect)

        assert reports[-1].scanned == 5
        assert reports[-1].remaining == 0

    async def test_run_backfill_when_log_dir_then_summary_file_written(
        self, sqlite_store, seed_legacy_rows, resolver, tmp_path
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        await run_backfill(sqlite_store, BackfillOptions(log_dir=tmp_path), resolver)

        written = list((tmp_path / "logs").glob("events_tz_backfill_all_*.json"))
        assert len(written) == 1


class TestBackfillResume:
    async def test_run_backfill_when_cancelled_then_rerun_resumes_from_checkpoint(
        self, tmp_path, resolver, local_ms
    ) -> None:
        control = BackfillControl()
        store = _CancelAfterFirstBatchStore(tmp_path / "resume.db", control)
        start = local_ms(2024, 5, 1, 9) // 1000
        for index in range(150):
            await store.insert_event(
                {
                    "id": f"evt-{index:03d}",
                    "household_id": "h1",
                    "start_at": start + index * 3600,
                    "tz": "Europe/Paris",
                }
            )

        first = await run_backfill(store, BackfillOptions(chunk_size=100), resolver, control=control)

        assert first.status is BackfillStatus.CANCELLED
        assert (first.scanned, first.updated, store.batches) == (100, 100, 1)
        checkpoint = await store.load_checkpoint("*")
        assert checkpoint.last_rowid == 100

        resumed_store = SQLiteEventStore(tmp_path / "resume.db")
        second = await run_backfill(resumed_store, BackfillOptions(chunk_size=100), resolver)

        assert second.status is BackfillStatus.COMPLETED
        assert (second.scanned, second.updated) == (50, 50)
        checkpoint = await resumed_store.load_checkpoint("*")
        assert (checkpoint.processed, checkpoint.last_rowid) == (150, 150)
        checked, failures = await verify_store(resumed_store, resolver)
        assert (checked, failures) == (150, [])

    async def test_run_backfill_when_reset_checkpoint_then_starts_over(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)
        await run_backfill(sqlite_store, BackfillOptions(), resolver)

        summary = await run_backfill(sqlite_store, BackfillOptions(reset_checkpoint=True), resolver)

        assert summary.scanned == 5
        assert summary.updated == 0


class TestVerifyStore:
    async def test_verify_store_when_legacy_rows_then_reported_until_backfilled(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)

        checked, failures = await verify_store(sqlite_store, resolver)

        assert checked == 5
        details = {failure.event_id: failure.detail for failure in failures}
        assert set(details) == {"legacy-seconds", "legacy-iso", "instant", "bad-tz"}
        assert details["legacy-iso"].startswith("not canonical")
        assert details["bad-tz"].startswith("tz_unknown")

        await run_backfill(sqlite_store, BackfillOptions(), resolver)
        _, failures = await verify_store(sqlite_store, resolver)

        assert [failure.event_id for failure in failures] == ["bad-tz"]

    async def test_list_events_when_backfilled_then_rows_validate(
        self, sqlite_store, seed_legacy_rows, resolver
    ) -> None:
        await seed_legacy_rows(sqlite_store)
        before = [event.id for event in await sqlite_store.list_events("h1")]
        assert "legacy-iso" not in before

        await run_backfill(sqlite_store, BackfillOptions(), resolver)
        events = await sqlite_store.list_events("h1")

        assert [event.id for event in events] == ["legacy-seconds", "legacy-iso", "bad-tz"]
        assert all(isinstance(event, EventRow) for event in events)
