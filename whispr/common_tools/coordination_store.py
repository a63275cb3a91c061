"""
Coordination store implementations for the batching trigger.

The trigger only needs atomic counters and TTL-bounded conditional flags, so
the interface is deliberately small. ``RedisCoordinationStore`` is used in
production; ``InMemoryCoordinationStore`` backs tests and single-process runs.
"""

import time
from typing import Dict, Optional

import redis.asyncio as aioredis

from .logging import setup_logging


class CoordinationStore:
    """Base class for coordination storage."""

    async def incr(self, key: str) -> int:
        """Atomically increment ``key`` and return the new value."""
        raise NotImplementedError("Subclasses must implement incr")

    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        """
        Set a key if it doesn't exist.

        Returns:
            True if the key was set, False if it already existed
        """
        raise NotImplementedError("Subclasses must implement set_if_absent")

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError("Subclasses must implement delete")

    async def get_int(self, key: str) -> int:
        raise NotImplementedError("Subclasses must implement get_int")

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds, or None if the key is absent."""
        raise NotImplementedError("Subclasses must implement ttl")


class RedisCoordinationStore(CoordinationStore):
    """Redis-based coordination store; every write is a single atomic command."""

    def __init__(self, client: aioredis.Redis):
        self.redis = client
        self.logger = setup_logging("coordination_store")

    async def incr(self, key: str) -> int:
        return int(await self.redis.incr(key))

    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        result = await self.redis.set(key, int(time.time()), nx=True, ex=ttl_seconds)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.redis.delete(*keys))

    async def get_int(self, key: str) -> int:
        value = await self.redis.get(key)
        return int(value) if value is not None else 0

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.redis.ttl(key)
        # -2: missing key, -1: no expiry
        if remaining == -2:
            return None
        return int(remaining)


class InMemoryCoordinationStore(CoordinationStore):
    """In-memory coordination store for testing."""

    def __init__(self):
        self._values: Dict[str, int] = {}
        self._expiry_times: Dict[str, float] = {}

    def _cleanup_expired_keys(self):
        current_time = time.time()
        expired_keys = [key for key, expiry in self._expiry_times.items() if expiry <= current_time]
        for key in expired_keys:
            self._values.pop(key, None)
            self._expiry_times.pop(key, None)

    async def incr(self, key: str) -> int:
        self._cleanup_expired_keys()
        self._values[key] = self._values.get(key, 0) + 1
        return self._values[key]

    async def set_if_absent(self, key: str, ttl_seconds: int) -> bool:
        self._cleanup_expired_keys()
        if key in self._values:
            return False
        self._values[key] = int(time.time())
        self._expiry_times[key] = time.time() + ttl_seconds
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
            self._expiry_times.pop(key, None)
        return removed

    async def get_int(self, key: str) -> int:
        self._cleanup_expired_keys()
        return self._values.get(key, 0)

    async def ttl(self, key: str) -> Optional[int]:
        self._cleanup_expired_keys()
        if key not in self._values:
            return None
        if key not in self._expiry_times:
            return -1
        return max(int(self._expiry_times[key] - time.time()), 0)

    def clear(self):
        """Clear all keys (useful for testing)."""
        self._values.clear()
        self._expiry_times.clear()
