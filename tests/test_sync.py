"""Tests for the sync orchestrator against in-memory storage and a fake upstream."""
import asyncio
from datetime import date, datetime, timedelta

import pytest
import pytz

from cursor_sync.dates import day_key, expected_chunk_count, parse_day
from cursor_sync.exceptions import ServerError, StorageError
from cursor_sync.store import TEAM_SUBJECT

from tests.conftest import make_record


def _days_in(start, end):
    first, last = parse_day(day_key(start)), parse_day(day_key(end))
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def _streak_records(email="alice@example.com", lines=100):
    return [make_record(email, day, accepted_lines_added=lines)
            for day in ("2025-07-10", "2025-07-11", "2025-07-12")]


# =============================================================================
# INCREMENTAL SYNC
# =============================================================================

class TestIncrementalSync:

    async def test_processes_window_and_records_success(self, ctx, fake_client):
        fake_client.records = _streak_records()

        result = await ctx.orchestrator.run_incremental_sync()

        assert result.success is True
        assert result.processed == 3
        assert result.new_achievements.individual == ["first-steps"]

        stats = await ctx.stats.get_user_stats("alice@example.com")
        assert stats.total_lines_added == 300
        assert (stats.current_streak, stats.max_consecutive_days) == (3, 3)

        metadata = await ctx.state.read_metadata()
        assert metadata.sync_status == "idle"
        assert metadata.last_sync_date == "2025-07-14"
        assert metadata.error_message is None
        assert metadata.last_sync_result.processed == 3
        assert await ctx.state.is_locked() is False

    async def test_default_window_is_seven_days(self, ctx, fake_client, clock):
        await ctx.orchestrator.run_incremental_sync()
        [(start, end)] = fake_client.calls
        assert end == clock()
        assert start == clock() - timedelta(days=7)

    async def test_next_window_starts_at_last_sync_date(self, ctx, fake_client, clock):
        await ctx.orchestrator.run_incremental_sync()
        clock.advance(days=1)
        await ctx.orchestrator.run_incremental_sync()
        start, _ = fake_client.calls[-1]
        assert day_key(start) == "2025-07-14"
        assert start.hour == 0

    async def test_empty_window_still_advances_last_sync_date(self, ctx):
        result = await ctx.orchestrator.run_incremental_sync()

        assert result.success is True
        assert result.processed == 0
        assert await ctx.snapshots.count() == 0
        assert await ctx.stats.list_user_stats() == []
        metadata = await ctx.state.read_metadata()
        assert metadata.last_sync_date == "2025-07-14"
        assert metadata.sync_status == "idle"

    async def test_long_gap_is_fetched_in_chunks(self, ctx, fake_client, clock):
        await ctx.state.write_metadata(last_sync_date="2025-05-01")

        result = await ctx.orchestrator.run_incremental_sync()

        assert result.success is True
        assert len(fake_client.calls) == expected_chunk_count(date(2025, 5, 1), clock())
        for start, end in fake_client.calls:
            assert end - start <= timedelta(days=30)

    async def test_team_stats_and_achievements(self, ctx, fake_client):
        fake_client.records = (
            _streak_records("alice@example.com", lines=300)
            + _streak_records("bob@example.com", lines=100)
        )

        result = await ctx.orchestrator.run_incremental_sync()

        assert "team-first-blood" in result.new_achievements.team
        assert "full-squad" in result.new_achievements.team
        assert "adoption-complete" in result.new_achievements.team
        team = await ctx.stats.get_team_stats()
        assert team.total_members == 2
        assert team.total_team_lines == 1_200
        assert team.members_with_first_steps == 2


# =============================================================================
# IDEMPOTENCE AND MONOTONICITY
# =============================================================================

class TestReplays:

    async def _replay(self, ctx):
        await ctx.state.write_metadata(last_sync_date=None)
        return await ctx.orchestrator.run_incremental_sync()

    async def test_replaying_a_window_changes_nothing(self, ctx, fake_client):
        fake_client.records = _streak_records()
        await ctx.orchestrator.run_incremental_sync()
        before = await ctx.stats.get_user_stats("alice@example.com")
        snapshots_before = await ctx.snapshots.count()

        result = await self._replay(ctx)

        assert result.success is True
        assert result.new_achievements.individual == []
        assert result.new_achievements.team == []
        assert await ctx.snapshots.count() == snapshots_before
        after = await ctx.stats.get_user_stats("alice@example.com")
        assert after.model_dump(exclude={"updated_at"}) == before.model_dump(exclude={"updated_at"})

    async def test_corrected_upstream_values_replace_stored_ones(self, ctx, fake_client):
        fake_client.records = _streak_records(lines=100)
        await ctx.orchestrator.run_incremental_sync()

        fake_client.records[-1] = make_record("alice@example.com", "2025-07-12", accepted_lines_added=250)
        await self._replay(ctx)

        snapshots = await ctx.snapshots.list_snapshots("alice@example.com")
        assert [s.lines_added for s in snapshots] == [100, 100, 250]
        assert (await ctx.stats.get_user_stats("alice@example.com")).total_lines_added == 450

    async def test_unlocks_survive_lower_recomputed_stats(self, ctx, fake_client):
        fake_client.records = _streak_records()
        await ctx.orchestrator.run_incremental_sync()

        fake_client.records = [
            make_record("alice@example.com", day, active=False)
            for day in ("2025-07-10", "2025-07-11", "2025-07-12")
        ]
        result = await self._replay(ctx)

        assert result.new_achievements.individual == []
        assert (await ctx.stats.get_user_stats("alice@example.com")).total_active_days == 0
        assert "first-steps" in await ctx.achievements.unlocked_ids("alice@example.com")


# =============================================================================
# ADMISSION AND LOCKING
# =============================================================================

class TestAdmission:

    async def test_run_skipped_while_lock_held(self, ctx, fake_client):
        await ctx.state.acquire_lock()

        result = await ctx.orchestrator.run_incremental_sync()

        assert result.skipped is True
        assert result.reason == "Failed to acquire sync lock"
        assert fake_client.calls == []
        # The holder's lock is untouched
        assert await ctx.state.is_locked() is True

    async def test_concurrent_triggers_run_once(self, ctx, fake_client):
        fake_client.gate = asyncio.Event()
        first = asyncio.create_task(ctx.orchestrator.run_incremental_sync())
        while not fake_client.calls:
            await asyncio.sleep(0.01)

        second = await ctx.orchestrator.run_incremental_sync()
        fake_client.gate.set()
        first = await first

        assert first.success is True
        assert second.skipped is True
        assert second.blocked_by == "lock"
        assert len(fake_client.calls) == 1

    async def test_scheduled_sync_reports_running_sync(self, ctx):
        await ctx.state.acquire_lock()
        result = await ctx.orchestrator.run_scheduled_sync()
        assert result.skipped is True
        assert result.reason == "A sync is already in progress"
        assert result.blocked_by == "lock"

    async def test_scheduled_sync_is_rate_limited(self, ctx, fake_client, clock):
        first = await ctx.orchestrator.run_scheduled_sync()
        assert first.success is True

        second = await ctx.orchestrator.run_scheduled_sync()
        assert second.skipped is True
        assert second.reason == "Rate limited. Try again in 3000s"
        assert second.blocked_by == "rate-limit"
        assert len(fake_client.calls) == 1

        clock.advance(minutes=50)
        assert (await ctx.orchestrator.run_scheduled_sync()).success is True

    async def test_manual_refresh_uses_shorter_interval(self, ctx, clock):
        await ctx.orchestrator.run_manual_refresh()
        clock.advance(minutes=5)
        assert (await ctx.orchestrator.run_manual_refresh()).success is True

    async def test_failure_is_recorded_and_lock_released(self, ctx, fake_client):
        fake_client.error = ServerError("API request failed: 503 unavailable", 503)

        result = await ctx.orchestrator.run_incremental_sync()

        assert result.success is False
        assert "503" in result.error
        metadata = await ctx.state.read_metadata()
        assert metadata.sync_status == "error"
        assert "503" in metadata.error_message
        assert await ctx.state.is_locked() is False

    async def test_success_after_failure_clears_error(self, ctx, fake_client):
        fake_client.error = ServerError("API request failed: 500 boom", 500)
        await ctx.orchestrator.run_incremental_sync()

        fake_client.error = None
        await ctx.orchestrator.run_incremental_sync()

        metadata = await ctx.state.read_metadata()
        assert metadata.sync_status == "idle"
        assert metadata.error_message is None

    async def test_error_stays_visible_while_next_run_is_in_flight(self, ctx, fake_client):
        fake_client.error = ServerError("API request failed: 503 unavailable", 503)
        await ctx.orchestrator.run_incremental_sync()

        fake_client.error = None
        fake_client.gate = asyncio.Event()
        second = asyncio.create_task(ctx.orchestrator.run_incremental_sync())
        while len(fake_client.calls) < 2:
            await asyncio.sleep(0.01)

        in_flight = await ctx.state.read_metadata()
        assert in_flight.sync_status == "running"
        assert in_flight.error_message == "API request failed: 503 unavailable"

        fake_client.gate.set()
        assert (await second).success is True
        assert (await ctx.state.read_metadata()).error_message is None

    async def test_overlong_run_leaves_successor_lock_alone(self, ctx, fake_client, clock):
        fake_client.gate = asyncio.Event()
        first = asyncio.create_task(ctx.orchestrator.run_incremental_sync())
        while not fake_client.calls:
            await asyncio.sleep(0.01)

        clock.advance(minutes=11)
        successor = await ctx.state.acquire_lock()
        assert successor is not None

        fake_client.gate.set()
        assert (await first).success is True
        assert await ctx.state.is_locked() is True


# =============================================================================
# FULL BACKFILL
# =============================================================================

class TestFullBackfill:

    async def test_refused_when_data_exists_without_upstream_calls(self, ctx, fake_client):
        await ctx.snapshots.upsert_snapshot(make_record("alice@example.com", "2025-07-01"))

        result = await ctx.orchestrator.run_full_backfill()

        assert result.success is False
        assert result.precondition_failed is True
        assert result.error.startswith("Backfill already completed")
        assert fake_client.calls == []
        assert await ctx.state.is_locked() is False

    async def test_storage_failure_while_checking_precondition_is_recorded(
        self, ctx, fake_client, monkeypatch
    ):
        async def locked_database():
            raise StorageError("SnapshotStore operation failed: database is locked")

        monkeypatch.setattr(ctx.snapshots, "has_any", locked_database)

        result = await ctx.orchestrator.run_full_backfill()

        assert result.success is False
        assert result.precondition_failed is False
        assert "database is locked" in result.error
        assert fake_client.calls == []
        metadata = await ctx.state.read_metadata()
        assert metadata.sync_status == "error"
        assert "database is locked" in metadata.error_message
        assert await ctx.state.is_locked() is False

    async def test_single_thirty_day_window(self, ctx, fake_client, clock):
        fake_client.records = [
            make_record("alice@example.com", "2025-06-20"),
            make_record("alice@example.com", "2025-07-14"),
        ]

        result = await ctx.orchestrator.run_full_backfill()

        assert result.success is True
        assert result.processed == 2
        [(start, end)] = fake_client.calls
        assert end - start == timedelta(days=30)
        metadata = await ctx.state.read_metadata()
        assert metadata.oldest_data_date == "2025-06-20"
        assert metadata.data_collection_start_date == "2025-07-15"


# =============================================================================
# HISTORICAL BACKFILL
# =============================================================================

class TestHistoricalBackfill:

    @pytest.fixture
    def later_clock(self, clock):
        clock.now = pytz.UTC.localize(datetime(2025, 9, 20, 6, 0, 0))
        return clock

    async def test_chunks_cover_inception_to_today(self, ctx, fake_client, later_clock, sleeps):
        ctx.settings.chunk_delay_seconds = 3.0
        inception = date(2025, 6, 16)

        result = await ctx.orchestrator.run_historical_backfill()

        assert result.success is True
        count = expected_chunk_count(inception, later_clock())
        assert count == 4
        assert len(fake_client.calls) == count
        assert sleeps == [3.0] * (count - 1)

        covered = [d for start, end in fake_client.calls for d in _days_in(start, end)]
        assert len(covered) == len(set(covered))
        assert min(covered) == inception
        assert max(covered) == later_clock().date()
        assert len(covered) == (later_clock().date() - inception).days + 1

        assert result.data_from == "2025-06-16"
        assert result.data_to == "2025-09-20"

    async def test_recomputes_every_user_and_records_range(self, ctx, fake_client, later_clock):
        fake_client.records = [
            make_record("alice@example.com", "2025-06-16", accepted_lines_added=10),
            make_record("bob@example.com", "2025-09-19", accepted_lines_added=20),
        ]

        result = await ctx.orchestrator.run_historical_backfill()

        assert result.processed == 2
        assert {u.email for u in await ctx.stats.list_user_stats()} == {
            "alice@example.com", "bob@example.com",
        }
        metadata = await ctx.state.read_metadata()
        assert metadata.data_collection_start_date == "2025-06-16"
        assert metadata.oldest_data_date == "2025-06-16"
        assert metadata.backfill_resume_before is None
        assert (await ctx.stats.get_team_stats()).total_team_lines == 30

    async def test_resumes_below_last_completed_chunk(self, ctx, fake_client, later_clock):
        fake_client.records = [
            make_record("alice@example.com", "2025-06-16", accepted_lines_added=10),
            make_record("bob@example.com", "2025-09-19", accepted_lines_added=20),
        ]
        fake_client.error = ServerError("API request failed: 502 bad gateway", 502)
        fake_client.fail_on_call = 3

        failed = await ctx.orchestrator.run_historical_backfill()

        assert failed.success is False
        metadata = await ctx.state.read_metadata()
        assert metadata.sync_status == "error"
        completed_start = fake_client.calls[1][0]
        assert metadata.backfill_resume_before == day_key(completed_start)
        assert await ctx.snapshots.list_emails() == ["bob@example.com"]
        assert await ctx.state.is_locked() is False

        fake_client.error = None
        fake_client.calls.clear()
        resumed = await ctx.orchestrator.run_historical_backfill()

        assert resumed.success is True
        assert len(fake_client.calls) == 2
        assert all(day_key(end) < metadata.backfill_resume_before for _, end in fake_client.calls)
        assert {u.email for u in await ctx.stats.list_user_stats()} == {
            "alice@example.com", "bob@example.com",
        }
        assert (await ctx.state.read_metadata()).backfill_resume_before is None

    async def test_team_achievements_credit_all_members(self, ctx, fake_client, later_clock):
        fake_client.records = [
            make_record("alice@example.com", "2025-07-01", accepted_lines_added=600),
            make_record("bob@example.com", "2025-07-01", accepted_lines_added=600),
        ]

        await ctx.orchestrator.run_historical_backfill()

        unlocks = {u.achievement_id: u for u in await ctx.achievements.list_unlocks(TEAM_SUBJECT)}
        assert "team-first-blood" in unlocks
        assert "alice@example.com" in unlocks["team-first-blood"].contributing_members
