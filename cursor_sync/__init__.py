"""Cursor team usage sync engine: snapshots, stats and achievements."""

from cursor_sync.achievements import (
    ALL_ACHIEVEMENTS,
    INDIVIDUAL_ACHIEVEMENTS,
    TEAM_ACHIEVEMENTS,
    Achievement,
    AchievementEngine,
)
from cursor_sync.aggregator import aggregate_user_metrics
from cursor_sync.client import CursorAdminClient
from cursor_sync.config import Settings
from cursor_sync.exceptions import (
    AuthError,
    CursorSyncError,
    NetworkError,
    PreconditionError,
    RateLimitError,
    RemoteFetchError,
    RequestTimeoutError,
    RetryExhaustedError,
    ServerError,
    StorageError,
    ValidationError,
)
from cursor_sync.kv import KeyValueStore, MemoryKeyValueStore, SqlKeyValueStore
from cursor_sync.models import (
    DailySnapshot,
    DailyUsageRecord,
    LeaderboardEntry,
    SyncMetadata,
    SyncResult,
    TeamMember,
    TeamStats,
    UserStats,
)
from cursor_sync.retry import RetryConfig
from cursor_sync.state import SyncStateStore
from cursor_sync.stats import StatsRecalculator
from cursor_sync.store import AchievementStore, SnapshotStore, StatsStore
from cursor_sync.sync import SyncOrchestrator

__version__ = "0.1.0"
__all__ = [
    "Achievement",
    "AchievementEngine",
    "ALL_ACHIEVEMENTS",
    "INDIVIDUAL_ACHIEVEMENTS",
    "TEAM_ACHIEVEMENTS",
    "aggregate_user_metrics",
    "CursorAdminClient",
    "Settings",
    "CursorSyncError",
    "RemoteFetchError",
    "AuthError",
    "RateLimitError",
    "ServerError",
    "RetryExhaustedError",
    "NetworkError",
    "RequestTimeoutError",
    "ValidationError",
    "PreconditionError",
    "StorageError",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqlKeyValueStore",
    "DailySnapshot",
    "DailyUsageRecord",
    "LeaderboardEntry",
    "SyncMetadata",
    "SyncResult",
    "TeamMember",
    "TeamStats",
    "UserStats",
    "RetryConfig",
    "SyncStateStore",
    "StatsRecalculator",
    "AchievementStore",
    "SnapshotStore",
    "StatsStore",
    "SyncOrchestrator",
]
