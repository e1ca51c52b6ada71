"""Key-value stores with TTL and atomic create-if-absent."""

import abc
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from cursor_sync.database import KeyValueRow, upsert_statement
from cursor_sync.dates import to_epoch_ms, utc_now
from cursor_sync.exceptions import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(abc.ABC):
    """String values under string keys, with optional expiry in seconds."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    def _expiry(self, ttl: Optional[float]) -> Optional[int]:
        return None if ttl is None else self._now_ms() + int(ttl * 1000)

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the live value for ``key``.

        Returns:
            The stored string, or None if missing or expired

        Raises:
            StorageError: If the backing store fails
        """

    @abc.abstractmethod
    async def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        """Set ``key`` unconditionally, replacing any previous value and expiry.

        Args:
            key: Entry name
            value: String payload, usually JSON
            ttl: Seconds until the entry expires; None keeps it forever

        Raises:
            StorageError: If the backing store fails
        """

    @abc.abstractmethod
    async def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        """Atomically set ``key`` only if it has no live value.

        An expired entry counts as absent and is replaced.

        Returns:
            True if this call created the entry
        """

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error."""

    @abc.abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically remove ``key`` only while it holds ``value``. True if removed."""


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store. Atomic within one event loop."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock)
        self._data: Dict[str, Tuple[str, Optional[int]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now_ms():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    async def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._lock:
            if self._live(key) != value:
                return False
            del self._data[key]
            return True


class SqlKeyValueStore(KeyValueStore):
    """Durable store on the ``kv_entries`` table, shared by every process using the database."""

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock)
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._session_factory() as session:
                row = await session.get(KeyValueRow, key)
        except SQLAlchemyError as e:
            raise StorageError(f"Key-value read of {key!r} failed: {e}") from e
        if row is None:
            return None
        if row.expires_at is not None and row.expires_at <= self._now_ms():
            return None
        return row.value

    async def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        values = {"key": key, "value": value, "expires_at": self._expiry(ttl)}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(upsert_statement(session, KeyValueRow, values, ("key",)))
        except SQLAlchemyError as e:
            raise StorageError(f"Key-value write of {key!r} failed: {e}") from e

    async def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        now_ms = self._now_ms()
        values = {"key": key, "value": value, "expires_at": self._expiry(ttl)}
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # An expired holder no longer counts as present
                    await session.execute(
                        delete(KeyValueRow)
                        .where(KeyValueRow.key == key)
                        .where(KeyValueRow.expires_at.is_not(None))
                        .where(KeyValueRow.expires_at <= now_ms)
                    )
                    result = await session.execute(
                        upsert_statement(session, KeyValueRow, values, ("key",), update_columns=())
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"Key-value create of {key!r} failed: {e}") from e
        return result.rowcount == 1

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(KeyValueRow).where(KeyValueRow.key == key))
        except SQLAlchemyError as e:
            raise StorageError(f"Key-value delete of {key!r} failed: {e}") from e


    async def delete_if_equals(self, key: str, value: str) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(KeyValueRow)
                        .where(KeyValueRow.key == key)
                        .where(KeyValueRow.value == value)
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"Key-value conditional delete of {key!r} failed: {e}") from e
        return result.rowcount == 1
