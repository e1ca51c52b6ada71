"""Wiring of settings, storage, state and the orchestrator into one context."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from cursor_sync.aggregator import aggregate_user_metrics
from cursor_sync.client import CursorAdminClient
from cursor_sync.config import Settings
from cursor_sync.database import create_engine, create_session_factory, init_db
from cursor_sync.dates import utc_now
from cursor_sync.exceptions import ValidationError
from cursor_sync.kv import KeyValueStore, SqlKeyValueStore
from cursor_sync.models import LeaderboardEntry
from cursor_sync.retry import RetryConfig
from cursor_sync.state import SyncStateStore
from cursor_sync.store import (
    AchievementStore,
    SnapshotStore,
    SqlMetadataProjection,
    StatsStore,
    reset_all,
)
from cursor_sync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

MAX_LEADERBOARD_DAYS = 30


@dataclass
class SyncContext:
    """Everything a front end (HTTP or CLI) needs to drive the sync engine."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    snapshots: SnapshotStore
    stats: StatsStore
    achievements: AchievementStore
    state: SyncStateStore
    orchestrator: SyncOrchestrator
    client_factory: Callable
    clock: Callable = utc_now

    async def close(self) -> None:
        await self.engine.dispose()


def default_client_factory(settings: Settings) -> Callable[[], CursorAdminClient]:
    """Factory building a fresh API client per run.

    Raises ValidationError on first use when no API key is configured.
    """
    def factory() -> CursorAdminClient:
        return CursorAdminClient(
            settings.api_key,
            base_url=settings.base_url,
            retry_config=RetryConfig(max_attempts=settings.retry_attempts),
            timeout=settings.request_timeout,
        )
    return factory


async def build_context(
    settings: Settings,
    client_factory: Optional[Callable] = None,
    kv: Optional[KeyValueStore] = None,
    engine: Optional[AsyncEngine] = None,
    clock=utc_now,
    sleep=None,
) -> SyncContext:
    """Create tables if needed and assemble the stores and the orchestrator."""
    engine = engine or create_engine(settings.database_url)
    await init_db(engine)
    session_factory = create_session_factory(engine)

    snapshots = SnapshotStore(session_factory)
    stats = StatsStore(session_factory)
    achievements = AchievementStore(session_factory)
    state = SyncStateStore(
        kv or SqlKeyValueStore(session_factory, clock=clock),
        projection=SqlMetadataProjection(session_factory),
        lock_duration=settings.lock_duration,
        clock=clock,
    )
    client_factory = client_factory or default_client_factory(settings)

    orchestrator_kwargs = {"settings": settings, "clock": clock}
    if sleep is not None:
        orchestrator_kwargs["sleep"] = sleep
    orchestrator = SyncOrchestrator(
        client_factory, snapshots, stats, achievements, state, **orchestrator_kwargs
    )

    return SyncContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        snapshots=snapshots,
        stats=stats,
        achievements=achievements,
        state=state,
        orchestrator=orchestrator,
        client_factory=client_factory,
        clock=clock,
    )


async def reset_data(ctx: SyncContext) -> None:
    """Wipe every synced row, the sync metadata and any stale lock."""
    await reset_all(ctx.session_factory)
    await ctx.state.clear_metadata()
    await ctx.state.release_lock()


async def fetch_leaderboard(ctx: SyncContext, days: int = 7) -> List[LeaderboardEntry]:
    """Fetch the last ``days`` days from the API and rank users by activity."""
    if not 1 <= days <= MAX_LEADERBOARD_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_LEADERBOARD_DAYS}, got {days}")

    end = ctx.clock()
    start = end - timedelta(days=days)

    async with ctx.client_factory() as client:
        members = await client.get_team_members()
        records = await client.get_daily_usage_data(start, end)

    logger.info(f"Leaderboard over {days} days: {len(records)} records, {len(members)} members")
    return aggregate_user_metrics(records, members)
