"""Whisper document storage."""

from typing import Dict, List, Optional

import redis.asyncio as aioredis

from .models import Whisper, WhisperStatus
from .redis_tools import RedisKeys


class WhisperStore:
    """Base class for whisper storage."""

    async def save(self, whisper: Whisper) -> None:
        """Insert or replace a whisper."""
        raise NotImplementedError("Subclasses must implement save")

    async def get(self, whisper_id: str) -> Optional[Whisper]:
        raise NotImplementedError("Subclasses must implement get")

    async def list_for_tenant(self, tenant_id: str, limit: int = 50,
                              status: Optional[WhisperStatus] = None) -> List[Whisper]:
        """Newest first."""
        raise NotImplementedError("Subclasses must implement list_for_tenant")


class RedisWhisperStore(WhisperStore):

    def __init__(self, client: aioredis.Redis, keys: Optional[RedisKeys] = None):
        self.redis = client
        self.keys = keys or RedisKeys()

    async def save(self, whisper: Whisper) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.keys.whisper(whisper.id), whisper.to_json())
            pipe.zadd(self.keys.tenant_whispers(whisper.tenant_id),
                      {whisper.id: whisper.created_at.timestamp()})
            await pipe.execute()

    async def get(self, whisper_id: str) -> Optional[Whisper]:
        data = await self.redis.get(self.keys.whisper(whisper_id))
        return Whisper.from_json(data) if data else None

    async def list_for_tenant(self, tenant_id: str, limit: int = 50,
                              status: Optional[WhisperStatus] = None) -> List[Whisper]:
        ids = await self.redis.zrevrange(self.keys.tenant_whispers(tenant_id), 0, -1)
        whispers = []
        for whisper_id in ids:
            whisper = await self.get(whisper_id)
            if whisper is None or (status is not None and whisper.status != status):
                continue
            whispers.append(whisper)
            if len(whispers) >= limit:
                break
        return whispers


class InMemoryWhisperStore(WhisperStore):

    def __init__(self):
        self._whispers: Dict[str, Whisper] = {}

    async def save(self, whisper: Whisper) -> None:
        self._whispers[whisper.id] = whisper.model_copy(deep=True)

    async def get(self, whisper_id: str) -> Optional[Whisper]:
        whisper = self._whispers.get(whisper_id)
        return whisper.model_copy(deep=True) if whisper else None

    async def list_for_tenant(self, tenant_id: str, limit: int = 50,
                              status: Optional[WhisperStatus] = None) -> List[Whisper]:
        whispers = [
            w for w in self._whispers.values()
            if w.tenant_id == tenant_id and (status is None or w.status == status)
        ]
        whispers.sort(key=lambda w: w.created_at, reverse=True)
        return [w.model_copy(deep=True) for w in whispers[:limit]]
