"""Relational persistence: snapshots, derived stats and achievement unlocks."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Set

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cursor_sync.database import (
    AchievementUnlockRow,
    DailySnapshotRow,
    KeyValueRow,
    SyncMetadataRow,
    TeamStatsRow,
    UserStatsRow,
    upsert_statement,
)
from cursor_sync.exceptions import StorageError
from cursor_sync.models import (
    DailySnapshot,
    DailyUsageRecord,
    SyncMetadata,
    TeamStats,
    UserStats,
)

logger = logging.getLogger(__name__)

TEAM_SUBJECT = "team"


class SqlStore:
    """Shared session handling; every database failure surfaces as StorageError."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            raise StorageError(f"{type(self).__name__} operation failed: {e}") from e


class SnapshotStore(SqlStore):
    """One row per (user, calendar day); writes replace, never accumulate."""

    _CONFLICT = ("user_email", "date")

    async def upsert_snapshot(self, record: DailyUsageRecord) -> None:
        """Insert or overwrite the snapshot for one record.

        Raises:
            StorageError: If the write fails
        """
        await self.upsert_snapshots([record])

    async def upsert_snapshots(self, records: Iterable[DailyUsageRecord]) -> int:
        """Insert or overwrite the snapshot of each record in one transaction.

        Counters are replaced, never summed, so replaying a window is harmless.

        Args:
            records: Usage records; several may share a user or a day

        Returns:
            Number of rows written

        Raises:
            StorageError: If the transaction fails; nothing is written
        """
        snapshots = [DailySnapshot.from_record(r) for r in records]
        if not snapshots:
            return 0

        async with self._transaction() as session:
            for snapshot in snapshots:
                await session.execute(
                    upsert_statement(session, DailySnapshotRow, snapshot.model_dump(), self._CONFLICT)
                )
        return len(snapshots)

    async def list_snapshots(self, email: Optional[str] = None) -> List[DailySnapshot]:
        """Snapshots ordered by date, then user.

        Args:
            email: Restrict to one user; None returns the whole team's history

        Returns:
            List of DailySnapshot models

        Raises:
            StorageError: If the read fails
        """
        stmt = select(DailySnapshotRow).order_by(DailySnapshotRow.date, DailySnapshotRow.user_email)
        if email is not None:
            stmt = stmt.where(DailySnapshotRow.user_email == email)
        async with self._transaction() as session:
            rows = (await session.scalars(stmt)).all()
        return [DailySnapshot.model_validate(row) for row in rows]

    async def list_emails(self) -> List[str]:
        """Every user with at least one snapshot, sorted."""
        stmt = select(DailySnapshotRow.user_email).distinct().order_by(DailySnapshotRow.user_email)
        async with self._transaction() as session:
            return list((await session.scalars(stmt)).all())

    async def has_any(self) -> bool:
        """True once any snapshot exists. The full backfill refuses to run then."""
        async with self._transaction() as session:
            row = (await session.execute(select(DailySnapshotRow.id).limit(1))).first()
        return row is not None

    async def count(self) -> int:
        async with self._transaction() as session:
            return await session.scalar(select(func.count()).select_from(DailySnapshotRow))

    async def oldest_date(self) -> Optional[str]:
        """Earliest snapshot day as ``YYYY-MM-DD``, or None when empty."""
        async with self._transaction() as session:
            return await session.scalar(select(func.min(DailySnapshotRow.date)))


class StatsStore(SqlStore):
    """Upserts of recomputed UserStats and the TeamStats singleton."""

    async def save_user_stats(self, stats: UserStats) -> None:
        """Replace the stats row for ``stats.email``.

        Args:
            stats: A full recomputation; every column is overwritten

        Raises:
            StorageError: If the write fails
        """
        async with self._transaction() as session:
            await session.execute(
                upsert_statement(session, UserStatsRow, stats.model_dump(), ("email",))
            )

    async def save_team_stats(self, stats: TeamStats) -> None:
        """Replace the single team stats row."""
        async with self._transaction() as session:
            await session.execute(
                upsert_statement(session, TeamStatsRow, stats.model_dump(), ("id",))
            )

    async def get_user_stats(self, email: str) -> Optional[UserStats]:
        """Stored stats for ``email``, or None if never computed."""
        async with self._transaction() as session:
            row = await session.get(UserStatsRow, email)
            return UserStats.model_validate(row) if row else None

    async def list_user_stats(self) -> List[UserStats]:
        async with self._transaction() as session:
            rows = (await session.scalars(select(UserStatsRow).order_by(UserStatsRow.email))).all()
        return [UserStats.model_validate(row) for row in rows]

    async def get_team_stats(self) -> Optional[TeamStats]:
        async with self._transaction() as session:
            row = await session.get(TeamStatsRow, TEAM_SUBJECT)
            return TeamStats.model_validate(row) if row else None


class AchievementStore(SqlStore):
    """Append-only unlock records for users and the team."""

    async def unlocked_ids(self, subject: str) -> Set[str]:
        """Achievement ids already recorded for a user email or ``TEAM_SUBJECT``."""
        stmt = select(AchievementUnlockRow.achievement_id).where(AchievementUnlockRow.subject == subject)
        async with self._transaction() as session:
            return set((await session.scalars(stmt)).all())

    async def record_unlock(
        self,
        subject: str,
        achievement_id: str,
        achieved_at: datetime,
        contributors: Optional[List[str]] = None,
    ) -> bool:
        """Insert the unlock unless it already exists.

        Args:
            subject: User email, or ``TEAM_SUBJECT`` for team achievements
            achievement_id: Rule id
            achieved_at: Time of the sync that detected it
            contributors: Member emails credited for a team unlock

        Returns:
            True if this call created the record, False if it was already there
        """
        values = {
            "subject": subject,
            "achievement_id": achievement_id,
            "achieved_at": achieved_at,
            "contributing_members": json.dumps(contributors) if contributors is not None else None,
        }
        async with self._transaction() as session:
            result = await session.execute(
                upsert_statement(
                    session, AchievementUnlockRow, values, ("subject", "achievement_id"), update_columns=()
                )
            )
        inserted = result.rowcount == 1
        if not inserted:
            logger.debug(f"Unlock {achievement_id} for {subject} already recorded by another writer")
        return inserted

    async def count_unlocks(self, achievement_id: str) -> int:
        """Number of users (not the team) holding ``achievement_id``."""
        stmt = (
            select(func.count())
            .select_from(AchievementUnlockRow)
            .where(AchievementUnlockRow.achievement_id == achievement_id)
            .where(AchievementUnlockRow.subject != TEAM_SUBJECT)
        )
        async with self._transaction() as session:
            return await session.scalar(stmt)

    async def list_unlocks(self, subject: str) -> List[AchievementUnlockRow]:
        stmt = (
            select(AchievementUnlockRow)
            .where(AchievementUnlockRow.subject == subject)
            .order_by(AchievementUnlockRow.achieved_at, AchievementUnlockRow.achievement_id)
        )
        async with self._transaction() as session:
            return list((await session.scalars(stmt)).all())


class SqlMetadataProjection(SqlStore):
    """Mirrors the authoritative key-value metadata into ``sync_metadata``."""

    _FIELDS = (
        "sync_status",
        "last_sync_at",
        "last_sync_date",
        "error_message",
        "data_collection_start_date",
        "oldest_data_date",
    )

    async def project(self, metadata: SyncMetadata) -> None:
        values = {"id": "sync", **{name: getattr(metadata, name) for name in self._FIELDS}}
        async with self._transaction() as session:
            await session.execute(upsert_statement(session, SyncMetadataRow, values, ("id",)))

    async def read(self) -> Optional[SyncMetadata]:
        async with self._transaction() as session:
            row = await session.get(SyncMetadataRow, "sync")
            if row is None:
                return None
            return SyncMetadata(**{name: getattr(row, name) for name in self._FIELDS})


async def reset_all(session_factory: async_sessionmaker, include_kv: bool = False) -> None:
    """Delete every snapshot, stats, unlock and metadata row.

    Destructive; intended for development or a clean re-backfill.
    """
    tables = [DailySnapshotRow, UserStatsRow, TeamStatsRow, AchievementUnlockRow, SyncMetadataRow]
    if include_kv:
        tables.append(KeyValueRow)
    try:
        async with session_factory() as session:
            async with session.begin():
                for table in tables:
                    await session.execute(delete(table))
    except SQLAlchemyError as e:
        raise StorageError(f"Data reset failed: {e}") from e
    logger.warning("All synced data deleted")
