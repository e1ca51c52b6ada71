"""Async SQLAlchemy setup and table definitions."""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence, Type

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


class DailySnapshotRow(Base):
    __tablename__ = "daily_snapshots"
    __table_args__ = (
        UniqueConstraint("user_email", "date", name="daily_snapshots_unique_idx"),
        Index("daily_snapshots_date_idx", "date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_email: Mapped[str] = mapped_column(String(320), index=True)
    date: Mapped[str] = mapped_column(String(10))  # YYYY-MM-DD
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    lines_added: Mapped[int] = mapped_column(Integer, default=0)
    agent_requests: Mapped[int] = mapped_column(Integer, default=0)
    chat_requests: Mapped[int] = mapped_column(Integer, default=0)
    composer_requests: Mapped[int] = mapped_column(Integer, default=0)
    tab_accepts: Mapped[int] = mapped_column(Integer, default=0)
    total_tabs_shown: Mapped[int] = mapped_column(Integer, default=0)
    total_accepts: Mapped[int] = mapped_column(Integer, default=0)
    total_applies: Mapped[int] = mapped_column(Integer, default=0)
    bugbot_usages: Mapped[int] = mapped_column(Integer, default=0)
    most_used_model: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class UserStatsRow(Base):
    __tablename__ = "user_stats"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    total_active_days: Mapped[int] = mapped_column(Integer, default=0)
    max_consecutive_days: Mapped[int] = mapped_column(Integer, default=0)
    current_streak: Mapped[int] = mapped_column(Integer, default=0)
    total_lines_added: Mapped[int] = mapped_column(Integer, default=0)
    total_agent_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_chat_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_composer_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_tab_accepts: Mapped[int] = mapped_column(Integer, default=0)
    total_bugbot_usages: Mapped[int] = mapped_column(Integer, default=0)
    total_accepts: Mapped[int] = mapped_column(Integer, default=0)
    total_applies: Mapped[int] = mapped_column(Integer, default=0)
    best_single_day_lines: Mapped[int] = mapped_column(Integer, default=0)
    best_single_day_agent: Mapped[int] = mapped_column(Integer, default=0)
    total_acceptance_rate: Mapped[float] = mapped_column(Float, default=0.0)
    all_rounder_days: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TeamStatsRow(Base):
    __tablename__ = "team_stats"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default="team")
    total_members: Mapped[int] = mapped_column(Integer, default=0)
    total_team_lines: Mapped[int] = mapped_column(Integer, default=0)
    total_team_agent_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_team_chat_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_team_composer_requests: Mapped[int] = mapped_column(Integer, default=0)
    total_team_tab_accepts: Mapped[int] = mapped_column(Integer, default=0)
    total_team_active_days: Mapped[int] = mapped_column(Integer, default=0)
    members_with_streaks: Mapped[int] = mapped_column(Integer, default=0)
    best_team_day_lines: Mapped[int] = mapped_column(Integer, default=0)
    best_team_day_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    max_active_members_in_day: Mapped[int] = mapped_column(Integer, default=0)
    members_with_first_steps: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AchievementUnlockRow(Base):
    """Append-only unlock record. ``subject`` is a user email or ``"team"``."""

    __tablename__ = "achievement_unlocks"
    __table_args__ = (
        UniqueConstraint("subject", "achievement_id", name="achievement_unlocks_unique_idx"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    subject: Mapped[str] = mapped_column(String(320), index=True)
    achievement_id: Mapped[str] = mapped_column(String(64))
    achieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    contributing_members: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list


class SyncMetadataRow(Base):
    """Relational projection of the key-value sync metadata."""

    __tablename__ = "sync_metadata"

    id: Mapped[str] = mapped_column(String(16), primary_key=True, default="sync")
    sync_status: Mapped[str] = mapped_column(String(16), default="idle")
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data_collection_start_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    oldest_data_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)


class KeyValueRow(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # epoch ms


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Call once at startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect!r}")


def upsert_statement(
    session: AsyncSession,
    model: Type[Base],
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Optional[Iterable[str]] = None,
):
    """``INSERT ... ON CONFLICT DO UPDATE`` replacing ``update_columns``.

    With ``update_columns=()`` the statement becomes ``ON CONFLICT DO NOTHING``.
    """
    stmt = _insert_for(session)(model).values(**values)
    if update_columns is None:
        update_columns = [c for c in values if c not in conflict_columns and c != "id"]
    update_columns = list(update_columns)
    if not update_columns:
        return stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    return stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
    )
