"""Best-effort read cache in front of the instance store.

The cache only serves status reads. Scheduling always loads from the store,
so a miss, an outage or a stale entry can cost latency but never change
which step runs next.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .config import ProcflowConfig, load_config
from .state import InstanceState

logger = logging.getLogger(__name__)


class InstanceCache(Protocol):
    async def get(self, instance_id: str) -> Optional[InstanceState]:
        """Return a cached state or ``None`` on a miss."""

    async def set(self, state: InstanceState) -> None:
        """Cache ``state`` under its instance id."""

    async def invalidate(self, instance_id: str) -> None:
        """Drop any cached state for ``instance_id``."""

    async def disconnect(self) -> None:
        """Release the connection to the backing service, if any."""


class NullCache(InstanceCache):
    """Cache that never holds anything."""

    async def get(self, instance_id: str) -> Optional[InstanceState]:
        return None

    async def set(self, state: InstanceState) -> None:
        pass

    async def invalidate(self, instance_id: str) -> None:
        pass

    async def disconnect(self) -> None:
        pass


class InMemoryInstanceCache(InstanceCache):
    """Process-local cache with a per-entry time to live."""

    def __init__(self, ttl: float = 30.0) -> None:
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, str]] = {}

    async def get(self, instance_id: str) -> Optional[InstanceState]:
        entry = self._entries.get(instance_id)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at < time.monotonic():
            del self._entries[instance_id]
            return None
        return InstanceState.from_json(payload)

    async def set(self, state: InstanceState) -> None:
        self._entries[state.instance_id] = (time.monotonic() + self.ttl, state.to_json())

    async def invalidate(self, instance_id: str) -> None:
        self._entries.pop(instance_id, None)

    async def disconnect(self) -> None:
        self._entries.clear()


class RedisInstanceCache(InstanceCache):
    """Redis-backed cache shared between processes."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        ttl: float = 30.0,
        prefix: str = "procflow:instance",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisInstanceCache")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.ttl = ttl
        self.prefix = prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, instance_id: str) -> str:
        return f"{self.prefix}:{instance_id}"

    async def get(self, instance_id: str) -> Optional[InstanceState]:
        try:
            if not self._redis:
                await self.connect()
            payload = await self._redis.get(self._key(instance_id))
        except redis.RedisError as e:
            logger.warning(f"Cache read for {instance_id} failed: {e}")
            return None
        if payload is None:
            return None
        try:
            return InstanceState.from_json(payload)
        except ValueError as e:
            logger.warning(f"Discarding undecodable cache entry for {instance_id}: {e}")
            await self.invalidate(instance_id)
            return None

    async def set(self, state: InstanceState) -> None:
        try:
            if not self._redis:
                await self.connect()
            await self._redis.set(
                self._key(state.instance_id), state.to_json(), px=int(self.ttl * 1000)
            )
        except redis.RedisError as e:
            logger.warning(f"Cache write for {state.instance_id} failed: {e}")

    async def invalidate(self, instance_id: str) -> None:
        try:
            if not self._redis:
                await self.connect()
            await self._redis.delete(self._key(instance_id))
        except redis.RedisError as e:
            logger.warning(f"Cache invalidation for {instance_id} failed: {e}")


def get_cache(
    backend: Optional[str] = None, config: Optional[ProcflowConfig] = None
) -> InstanceCache:
    """Factory function to get the configured cache."""

    config = config or load_config()
    backend = (backend or config.cache.backend).lower()

    if backend == "none":
        return NullCache()
    elif backend == "memory":
        return InMemoryInstanceCache(ttl=config.cache.ttl)
    elif backend == "redis":
        redis_conf = config.cache.redis
        return RedisInstanceCache(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            ttl=config.cache.ttl,
        )
    else:
        raise ValueError(f"Unsupported cache backend: {backend}")


__all__ = [
    "InstanceCache",
    "NullCache",
    "InMemoryInstanceCache",
    "RedisInstanceCache",
    "get_cache",
]
