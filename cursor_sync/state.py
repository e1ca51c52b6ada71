"""Distributed sync lock and sync metadata, backed by a key-value store.

The key-value store is the single authority for sync state. An optional
projection receives a copy of every metadata write for readers that only have
relational access.
"""

import json
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from cursor_sync.dates import ensure_utc, to_epoch_ms, utc_now
from cursor_sync.kv import KeyValueStore
from cursor_sync.models import CanRunSync, SyncLock, SyncMetadata

logger = logging.getLogger(__name__)

KV_KEY_METADATA = "sync:metadata"
KV_KEY_LOCK = "sync:lock"
LOCK_DURATION = timedelta(minutes=10)
MIN_SYNC_INTERVAL = timedelta(minutes=50)


class SyncStateStore:
    """Lock acquisition, metadata merge-patching and run admission checks."""

    def __init__(
        self,
        kv: KeyValueStore,
        projection=None,
        lock_duration: timedelta = LOCK_DURATION,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._kv = kv
        self._projection = projection
        self._lock_duration = lock_duration
        self._clock = clock

    # Lock

    async def acquire_lock(self) -> Optional[SyncLock]:
        """Create the lock entry if no live one exists.

        Returns:
            The SyncLock now held by the caller, or None if another run holds it
        """
        now = self._clock()
        lock = SyncLock(
            acquired_at=to_epoch_ms(now),
            expires_at=to_epoch_ms(now + self._lock_duration),
        )
        acquired = await self._kv.put_if_absent(
            KV_KEY_LOCK,
            lock.model_dump_json(by_alias=True),
            ttl=self._lock_duration.total_seconds(),
        )
        if not acquired:
            logger.info("Sync lock is already held")
            return None
        return lock

    async def release_lock(self, lock: Optional[SyncLock] = None) -> bool:
        """Delete the lock entry. Safe to call when it is not held.

        Args:
            lock: The holder's SyncLock. The entry is only deleted while it
                still belongs to that holder; None deletes it unconditionally.

        Returns:
            True if an entry was deleted
        """
        if lock is None:
            await self._kv.delete(KV_KEY_LOCK)
            return True

        released = await self._kv.delete_if_equals(KV_KEY_LOCK, lock.model_dump_json(by_alias=True))
        if not released:
            logger.warning(f"Sync lock {lock.token} expired and was not released; another run may hold it")
        return released

    async def is_locked(self) -> bool:
        return await self._kv.get(KV_KEY_LOCK) is not None

    # Metadata

    async def read_metadata(self) -> SyncMetadata:
        raw = await self._kv.get(KV_KEY_METADATA)
        if raw is None:
            return SyncMetadata()
        return SyncMetadata.model_validate(json.loads(raw))

    async def write_metadata(self, **changes: Any) -> SyncMetadata:
        """Merge ``changes`` into the stored metadata.

        Fields not named keep their value; a field passed as None is cleared.
        """
        unknown = set(changes) - set(SyncMetadata.model_fields)
        if unknown:
            raise TypeError(f"Unknown sync metadata fields: {', '.join(sorted(unknown))}")

        current = await self.read_metadata()
        updated = SyncMetadata.model_validate({**current.model_dump(), **changes})
        await self._kv.put(KV_KEY_METADATA, updated.model_dump_json(by_alias=True))

        if self._projection is not None:
            await self._projection.project(updated)
        return updated

    async def clear_metadata(self) -> None:
        await self._kv.delete(KV_KEY_METADATA)
        if self._projection is not None:
            await self._projection.project(SyncMetadata())

    # Admission

    async def can_run_sync(self, min_interval: timedelta = MIN_SYNC_INTERVAL) -> CanRunSync:
        if await self.is_locked():
            return CanRunSync(can_run=False, reason="A sync is already in progress", blocked_by="lock")

        metadata = await self.read_metadata()
        if metadata.last_sync_at is not None:
            elapsed = self._clock() - ensure_utc(metadata.last_sync_at)
            if elapsed < min_interval:
                wait_seconds = math.ceil((min_interval - elapsed).total_seconds())
                return CanRunSync(
                    can_run=False,
                    reason=f"Rate limited. Try again in {wait_seconds}s",
                    blocked_by="rate-limit",
                )

        return CanRunSync(can_run=True)

    async def get_status(self) -> Dict[str, Any]:
        metadata = await self.read_metadata()
        status = metadata.model_dump(mode="json", by_alias=True)
        status["isLocked"] = await self.is_locked()
        return status
