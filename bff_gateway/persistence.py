import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, Generic, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import LockError

from .config import GatewaySettings
from .logging_util import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class LockNotAcquired(Exception):
    """A named lock could not be taken within its timeout."""


class PersistenceProvider(ABC, Generic[T]):
    def __init__(self, model_class: Type[T]):
        self.model_class = model_class

    @abstractmethod
    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        """Store the model instance with an optional TTL. Replaces any previous value in one write."""

    @abstractmethod
    async def get(self, key: str) -> Optional[T]:
        """Retrieve and validate the model instance."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the key from storage."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[T]:
        """Atomically read and remove the value; at most one caller gets it."""

    @abstractmethod
    async def touch(self, key: str, ttl_in_sec: int) -> None:
        """Extend the TTL of an existing key; no-op when the key is absent."""

    @abstractmethod
    def lock(self, key: str, timeout: float) -> contextlib.AbstractAsyncContextManager:
        """Mutual exclusion on `key`, held at most `timeout` seconds."""


class InMemoryProvider(PersistenceProvider[T]):
    def __init__(self, model_class: Type[T]):
        super().__init__(model_class)
        self._data: Dict[str, Tuple[Optional[float], str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders and waiters per lock key
        self._lock_users: Dict[str, int] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return raw

    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl_in_sec if ttl_in_sec else None
        self._data[key] = (expires_at, value.model_dump_json())

    async def get(self, key: str) -> Optional[T]:
        raw = self._live(key)
        return self.model_class.model_validate_json(raw) if raw else None

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def pop(self, key: str) -> Optional[T]:
        raw = self._live(key)
        self._data.pop(key, None)
        return self.model_class.model_validate_json(raw) if raw else None

    async def touch(self, key: str, ttl_in_sec: int) -> None:
        raw = self._live(key)
        if raw is not None:
            self._data[key] = (time.monotonic() + ttl_in_sec, raw)

    @contextlib.asynccontextmanager
    async def lock(self, key: str, timeout: float) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise LockNotAcquired(key)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def cleanup_expired(self) -> int:
        """Removes expired items and returns the count of deleted items."""
        now = time.monotonic()
        expired = [
            key for key, (expires_at, _) in self._data.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            logger.debug(f"Cleaning up expired key: {key}")
            del self._data[key]
        return len(expired)


class RedisProvider(PersistenceProvider[T]):
    def __init__(self, model_class: Type[T], client: Redis, prefix: str):
        super().__init__(model_class)
        self.client = client
        self.prefix = prefix

    def _get_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def set(self, key: str, value: T, ttl_in_sec: Optional[int] = None) -> None:
        await self.client.set(self._get_key(key), value.model_dump_json(), ex=ttl_in_sec)

    async def get(self, key: str) -> Optional[T]:
        raw = await self.client.get(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    async def delete(self, key: str) -> None:
        await self.client.delete(self._get_key(key))

    async def pop(self, key: str) -> Optional[T]:
        raw = await self.client.getdel(self._get_key(key))
        return self.model_class.model_validate_json(raw) if raw else None

    async def touch(self, key: str, ttl_in_sec: int) -> None:
        await self.client.expire(self._get_key(key), ttl_in_sec)

    @contextlib.asynccontextmanager
    async def lock(self, key: str, timeout: float) -> AsyncIterator[None]:
        lock = self.client.lock(
            self._get_key(f"lock:{key}"),
            timeout=timeout,
            blocking_timeout=timeout,
        )
        if not await lock.acquire():
            raise LockNotAcquired(key)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired while held; another holder may already own it.
                logger.warning(f"Lock {key} expired before release")


class PersistenceFactory:
    @staticmethod
    def create(
        model_class: Type[T],
        scope: str,
        settings: GatewaySettings,
        redis_client: Optional[Redis] = None,
    ) -> PersistenceProvider[T]:
        if settings.storage_backend == "redis":
            if redis_client is None:
                raise ValueError("redis storage backend requires a Redis client")
            return RedisProvider(model_class=model_class, client=redis_client, prefix=f"bff:{scope}")
        return InMemoryProvider(model_class=model_class)


async def ttl_cleanup_task(provider: InMemoryProvider, interval_seconds: int = 60):
    logger.debug(f"Starting TTL cleanup task for {provider.model_class.__name__} store")
    try:
        while True:
            removed = provider.cleanup_expired()
            if removed:
                logger.debug(f"TTL cleanup removed {removed} expired entries")
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.debug("TTL cleanup task cancelled.")
