"""Shared fixtures for cursor-sync tests.

Provides:
- In-memory SQLite engine (aiosqlite) with all tables created
- A controllable clock
- A fake usage client serving canned daily records
- A fully wired SyncContext on top of those
"""
from datetime import datetime, timedelta

import pytest
import pytz
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from cursor_sync.config import Settings
from cursor_sync.database import create_session_factory, init_db
from cursor_sync.dates import day_key, parse_day, start_of_day, to_epoch_ms
from cursor_sync.kv import MemoryKeyValueStore
from cursor_sync.models import DailyUsageRecord, TeamMember
from cursor_sync.service import build_context


class FakeClock:
    """Callable returning a settable aware UTC datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeUsageClient:
    """Stands in for CursorAdminClient; filters canned records by calendar day."""

    def __init__(self, records=(), members=()):
        self.records = list(records)
        self.members = list(members)
        self.calls = []
        self.fail_on_call = None
        self.error = None
        self.gate = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def get_team_members(self):
        return self.members

    async def get_daily_usage_data(self, start_date, end_date):
        self.calls.append((start_date, end_date))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None and (self.fail_on_call is None or len(self.calls) == self.fail_on_call):
            raise self.error
        first, last = day_key(start_date), day_key(end_date)
        return [r for r in self.records if first <= r.day <= last]


def make_record(email: str, day: str, active: bool = True, **counters) -> DailyUsageRecord:
    """Build a usage record for ``day`` using snake_case counter names."""
    return DailyUsageRecord(
        email=email,
        date=to_epoch_ms(start_of_day(parse_day(day))),
        is_active=active,
        **counters,
    )


@pytest.fixture
def clock():
    return FakeClock(pytz.UTC.localize(datetime(2025, 7, 15, 12, 0, 0)))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_key="test-key",
        database_url="sqlite+aiosqlite://",
        chunk_delay_seconds=0,
        inception_date="2025-06-16",
    )


@pytest.fixture
async def engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def fake_client():
    return FakeUsageClient(members=[
        TeamMember(name="Alice Example", email="alice@example.com", role="member"),
        TeamMember(name="Bob Example", email="bob@example.com", role="member"),
    ])


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
async def ctx(settings, engine, clock, fake_client, sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    return await build_context(
        settings,
        client_factory=lambda: fake_client,
        kv=MemoryKeyValueStore(clock=clock),
        engine=engine,
        clock=clock,
        sleep=record_sleep,
    )
