"""Sync orchestration: lock, fetch window, snapshot, recompute, award, record.

Every entry point returns a SyncResult. Failures inside a run are recorded in
the sync metadata (status ``error`` with the message) and reported through the
result; they never propagate to the caller. The lock is released on every path.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from cursor_sync.achievements import (
    INDIVIDUAL_ACHIEVEMENTS,
    TEAM_ACHIEVEMENTS,
    Achievement,
    AchievementEngine,
)
from cursor_sync.config import Settings
from cursor_sync.dates import (
    day_chunks,
    day_key,
    parse_day,
    start_of_day,
    utc_now,
    yesterday,
)
from cursor_sync.exceptions import CursorSyncError, PreconditionError
from cursor_sync.models import (
    DailyUsageRecord,
    LastSyncResult,
    NewAchievements,
    SyncLock,
    SyncResult,
)
from cursor_sync.stats import StatsRecalculator
from cursor_sync.store import TEAM_SUBJECT

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Coordinates incremental, full and historical syncs.

    Args:
        client_factory: Returns a fresh usage client (async context manager)
        snapshots: SnapshotStore
        stats: StatsStore
        achievements: AchievementStore
        state: SyncStateStore holding the lock and metadata
        settings: Window sizes, intervals and the inception date
        clock: Returns the current aware datetime
        sleep: Awaitable delay used between historical chunks
    """

    def __init__(
        self,
        client_factory: Callable,
        snapshots,
        stats,
        achievements,
        state,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        individual_rules: Sequence[Achievement] = INDIVIDUAL_ACHIEVEMENTS,
        team_rules: Sequence[Achievement] = TEAM_ACHIEVEMENTS,
    ):
        self._client_factory = client_factory
        self._snapshots = snapshots
        self._stats = stats
        self._achievements = achievements
        self._state = state
        self._settings = settings or Settings()
        self._clock = clock
        self._sleep = sleep
        self._individual_rules = individual_rules
        self._team_rules = team_rules
        self._recalculator = StatsRecalculator(snapshots, stats, achievements, clock=clock)
        self._engine = AchievementEngine(achievements, clock=clock)

    # Entry points

    async def run_scheduled_sync(self) -> SyncResult:
        """Cron path: skip quietly when a run is in flight or one ran recently."""
        return await self._admitted_incremental(self._settings.min_sync_interval)

    async def run_manual_refresh(self) -> SyncResult:
        """User-triggered incremental sync with the shorter refresh interval."""
        return await self._admitted_incremental(self._settings.refresh_interval)

    async def run_incremental_sync(self) -> SyncResult:
        return await self._locked("Incremental sync", self._incremental)

    async def run_full_backfill(self) -> SyncResult:
        return await self._locked(
            "Full backfill", self._full_backfill, precondition=self.ensure_no_data
        )

    async def run_historical_backfill(self) -> SyncResult:
        return await self._locked("Historical backfill", self._historical_backfill)

    async def ensure_no_data(self) -> None:
        """Precondition of the full backfill: the snapshot table must be empty."""
        if await self._snapshots.has_any():
            raise PreconditionError(
                "Backfill already completed. Use /api/achievements/refresh for updates."
            )

    # Run scaffolding

    async def _admitted_incremental(self, min_interval: timedelta) -> SyncResult:
        try:
            check = await self._state.can_run_sync(min_interval)
        except CursorSyncError as e:
            logger.error(f"Failed to check if sync can run: {e}")
            return SyncResult.failure(f"Failed to check sync status: {e}")

        if not check.can_run:
            logger.info(f"Cannot run sync: {check.reason}")
            return SyncResult.skip(check.reason, blocked_by=check.blocked_by)

        return await self.run_incremental_sync()

    async def _locked(
        self,
        label: str,
        body: Callable[[], Awaitable[SyncResult]],
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> SyncResult:
        try:
            lock = await self._state.acquire_lock()
        except CursorSyncError as e:
            logger.error(f"{label}: failed to acquire sync lock: {e}")
            return SyncResult.failure(f"Failed to acquire sync lock: {e}")

        if lock is None:
            return SyncResult.skip("Failed to acquire sync lock", blocked_by="lock")

        logger.info(f"{label}: lock acquired")
        try:
            if precondition is not None:
                try:
                    await precondition()
                except PreconditionError as e:
                    logger.warning(f"{label} rejected: {e}")
                    return SyncResult.failure(str(e), precondition_failed=True)
                except Exception as e:
                    return await self._record_failure(label, e)
            return await self._run(label, body)
        finally:
            await self._release_lock(label, lock)

    async def _run(self, label: str, body: Callable[[], Awaitable[SyncResult]]) -> SyncResult:
        try:
            # The previous error stays visible until a run succeeds
            await self._state.write_metadata(sync_status="running")
            result = await body()
        except Exception as e:
            return await self._record_failure(label, e)

        logger.info(
            f"{label} succeeded: {result.processed} records, "
            f"{len(result.new_achievements.individual)} individual and "
            f"{len(result.new_achievements.team)} team achievements"
        )
        return result

    async def _record_failure(self, label: str, error: Exception) -> SyncResult:
        message = str(error) or type(error).__name__
        logger.error(f"{label} failed: {message}", exc_info=error)
        try:
            await self._state.write_metadata(sync_status="error", error_message=message)
        except CursorSyncError as update_error:
            logger.error(f"Failed to record sync error: {update_error}")
        return SyncResult.failure(message)

    async def _release_lock(self, label: str, lock: SyncLock) -> None:
        try:
            await self._state.release_lock(lock)
        except CursorSyncError as e:
            # The TTL frees it eventually
            logger.error(f"{label}: failed to release sync lock: {e}")
        else:
            logger.info(f"{label}: lock released")

    async def _finish(self, processed: int, new: NewAchievements, **metadata) -> SyncResult:
        now = self._clock()
        await self._state.write_metadata(
            sync_status="idle",
            last_sync_at=now,
            last_sync_date=yesterday(now),
            error_message=None,
            last_sync_result=LastSyncResult(processed=processed, new_achievements=new),
            **metadata,
        )
        return SyncResult(success=True, processed=processed, new_achievements=new)

    # Sync bodies

    async def _incremental(self) -> SyncResult:
        now = self._clock()
        metadata = await self._state.read_metadata()
        if metadata.last_sync_date:
            start = start_of_day(parse_day(metadata.last_sync_date))
        else:
            start = now - timedelta(days=self._settings.incremental_default_days)

        async with self._client_factory() as client:
            records = await self._fetch_range(client, start, now)

        if not records:
            logger.info("No new usage data")
            return await self._finish(0, NewAchievements())

        new = await self._process_records(records)
        return await self._finish(len(records), new)

    async def _full_backfill(self) -> SyncResult:
        now = self._clock()
        start = now - timedelta(days=self._settings.max_window_days)

        async with self._client_factory() as client:
            records = await client.get_daily_usage_data(start, now)

        new = await self._process_records(records) if records else NewAchievements()
        metadata = await self._state.read_metadata()
        return await self._finish(
            len(records),
            new,
            data_collection_start_date=metadata.data_collection_start_date or day_key(now),
            oldest_data_date=await self._snapshots.oldest_date(),
        )

    async def _historical_backfill(self) -> SyncResult:
        now = self._clock()
        inception = self._settings.inception_date
        chunks = day_chunks(inception, now, self._settings.max_window_days)

        metadata = await self._state.read_metadata()
        resume_before = metadata.backfill_resume_before
        if resume_before:
            pending = [c for c in chunks if day_key(c[0]) < resume_before]
            logger.info(
                f"Resuming historical backfill below {resume_before}: "
                f"{len(pending)} of {len(chunks)} chunks left"
            )
        else:
            pending = chunks
            logger.info(f"Historical backfill from {inception}: {len(chunks)} chunks")

        processed = 0
        emails: Set[str] = set()
        async with self._client_factory() as client:
            for index, (start, end) in enumerate(pending):
                if index > 0 and self._settings.chunk_delay_seconds > 0:
                    await self._sleep(self._settings.chunk_delay_seconds)

                records = await client.get_daily_usage_data(start, end)
                logger.info(
                    f"Chunk {index + 1}/{len(pending)} "
                    f"({day_key(start)} to {day_key(end)}): {len(records)} records"
                )
                await self._snapshots.upsert_snapshots(records)
                processed += len(records)
                emails.update(r.email for r in records)
                await self._state.write_metadata(backfill_resume_before=day_key(start))

        if resume_before:
            # Users seen only by the interrupted run still need their stats rebuilt
            emails.update(await self._snapshots.list_emails())

        new = await self._refresh(sorted(emails))
        result = await self._finish(
            processed,
            new,
            data_collection_start_date=day_key(inception),
            oldest_data_date=await self._snapshots.oldest_date(),
            backfill_resume_before=None,
        )
        result.data_from = day_key(inception)
        result.data_to = day_key(now)
        return result

    # Pipeline

    async def _fetch_range(self, client, start: datetime, end: datetime) -> List[DailyUsageRecord]:
        """Fetch ``[start, end]``, splitting into day-aligned chunks past the API ceiling."""
        if end - start <= timedelta(days=self._settings.max_window_days):
            return await client.get_daily_usage_data(start, end)

        chunks = day_chunks(start.date(), end, self._settings.max_window_days)
        logger.info(f"Window {day_key(start)} to {day_key(end)} needs {len(chunks)} requests")
        records: List[DailyUsageRecord] = []
        for index, (chunk_start, chunk_end) in enumerate(chunks):
            if index > 0 and self._settings.chunk_delay_seconds > 0:
                await self._sleep(self._settings.chunk_delay_seconds)
            records.extend(await client.get_daily_usage_data(chunk_start, chunk_end))
        return records

    async def _process_records(self, records: Iterable[DailyUsageRecord]) -> NewAchievements:
        """Snapshot, recompute and award user by user, then once for the team."""
        by_user: Dict[str, List[DailyUsageRecord]] = OrderedDict()
        for record in records:
            by_user.setdefault(record.email, []).append(record)

        new = NewAchievements()
        for email, user_records in by_user.items():
            await self._snapshots.upsert_snapshots(user_records)
            new.individual.extend(await self._refresh_user(email))

        new.team.extend(await self._refresh_team())
        return new

    async def _refresh(self, emails: Iterable[str]) -> NewAchievements:
        new = NewAchievements()
        for email in emails:
            new.individual.extend(await self._refresh_user(email))
        new.team.extend(await self._refresh_team())
        return new

    async def _refresh_user(self, email: str) -> List[str]:
        stats = await self._recalculator.recalculate_user_stats(email)
        existing = await self._achievements.unlocked_ids(email)
        return await self._engine.check_and_award(email, stats, existing, self._individual_rules)

    async def _refresh_team(self) -> List[str]:
        team = await self._recalculator.recalculate_team_stats()
        existing = await self._achievements.unlocked_ids(TEAM_SUBJECT)
        contributors = [u.email for u in await self._stats.list_user_stats()]
        return await self._engine.check_and_award(
            TEAM_SUBJECT, team, existing, self._team_rules, contributors=contributors
        )
