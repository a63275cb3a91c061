"""
Redis connection helpers and key layout for whispr.

All stores share one ``redis.asyncio`` client created from ``RedisConfig``
and namespace their keys through ``RedisKeys``.
"""

import time
from typing import Any, Dict, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .logging import setup_logging
from ..config.settings import RedisConfig

logger = setup_logging("redis_tools")


def create_async_redis(config: RedisConfig) -> aioredis.Redis:
    """Create a decoded-response async client; the connection is opened lazily."""
    return aioredis.from_url(
        config.url,
        db=config.database,
        password=config.password,
        decode_responses=True,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_connect_timeout,
        health_check_interval=config.health_check_interval,
    )


class RedisKeys:
    """Key layout, prefixed with the configured namespace."""

    def __init__(self, prefix: str = "whispr"):
        self.prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    # Trigger coordination
    def pending_count(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "count")

    def schedule_marker(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "scheduled")

    # Metadata store
    def metadata_record(self, tenant_id: str, record_id: str) -> str:
        return self._key("tenant", tenant_id, "record", record_id)

    def tenant_pending(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "pending")

    def tenant_metadata(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "metadata")

    # Documents
    def whisper(self, whisper_id: str) -> str:
        return self._key("whisper", whisper_id)

    def tenant_whispers(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "whispers")

    def session(self, session_id: str) -> str:
        return self._key("session", session_id)

    def tenant_sessions(self, tenant_id: str) -> str:
        return self._key("tenant", tenant_id, "sessions")

    # Job queue
    @property
    def jobs_waiting(self) -> str:
        return self._key("jobs", "waiting")

    @property
    def jobs_active(self) -> str:
        return self._key("jobs", "active")

    @property
    def jobs_dead(self) -> str:
        return self._key("jobs", "dead")

    def job_data(self, dedupe_key: str) -> str:
        return self._key("jobs", "data", dedupe_key)


async def check_redis_connectivity(client: aioredis.Redis) -> Tuple[bool, str, Dict[str, Any]]:
    """
    Health check for the shared Redis client.

    Returns:
        Tuple of (is_healthy, message, details)
    """
    try:
        start_time = time.time()
        await client.ping()
        ping_time = (time.time() - start_time) * 1000
        return (
            True,
            f"Redis connection successful (ping: {ping_time:.2f}ms)",
            {"ping_time_ms": ping_time}
        )
    except (RedisError, OSError) as e:
        logger.warning(f"Redis health check failed: {e}")
        return (
            False,
            f"Redis connection failed: {str(e)}",
            {"error_type": type(e).__name__}
        )
