"""
Append-only metadata record storage.

Records are written once and only their ``processing_status`` ever changes.
Record ids are unique per tenant; two tenants may use the same id. Status
updates are conditional per record so that a record moves from ``pending``
to ``processed`` exactly once, however many runs try to mark it.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from .logging import setup_logging
from .models import MetadataRecord, ProcessingStatus
from .redis_tools import RedisKeys


class MetadataStore:
    """Base class for metadata record storage."""

    async def append(self, record: MetadataRecord) -> bool:
        """
        Durably store a new record and index it as pending.

        Returns:
            True if the record was stored, False if the tenant already had a
            record with the same id (the call is then a no-op)
        """
        raise NotImplementedError("Subclasses must implement append")

    async def get(self, tenant_id: str, record_id: str) -> Optional[MetadataRecord]:
        raise NotImplementedError("Subclasses must implement get")

    async def fetch_pending(self, tenant_id: str, limit: int = 10000) -> List[MetadataRecord]:
        """Pending records for a tenant, oldest first."""
        raise NotImplementedError("Subclasses must implement fetch_pending")

    async def count_pending(self, tenant_id: str) -> int:
        raise NotImplementedError("Subclasses must implement count_pending")

    async def mark_status(self, tenant_id: str, record_ids: Iterable[str],
                          status: ProcessingStatus) -> int:
        """
        Move the given pending records to ``status``.

        Returns:
            Number of records that actually transitioned; ids that are unknown
            or no longer pending are ignored
        """
        raise NotImplementedError("Subclasses must implement mark_status")

    async def mark_processed(self, tenant_id: str, record_ids: Iterable[str]) -> int:
        return await self.mark_status(tenant_id, record_ids, ProcessingStatus.PROCESSED)

    async def mark_skipped(self, tenant_id: str, record_ids: Iterable[str]) -> int:
        return await self.mark_status(tenant_id, record_ids, ProcessingStatus.SKIPPED)


class RedisMetadataStore(MetadataStore):
    """Redis-backed metadata store: JSON documents plus per-tenant sorted-set indexes."""

    def __init__(self, client: aioredis.Redis, keys: Optional[RedisKeys] = None):
        self.redis = client
        self.keys = keys or RedisKeys()
        self.logger = setup_logging("metadata_store")

    async def append(self, record: MetadataRecord) -> bool:
        key = self.keys.metadata_record(record.tenant_id, record.id)
        if not await self.redis.set(key, record.to_json(), nx=True):
            self.logger.info(f"Metadata record {record.id} already stored for tenant {record.tenant_id}, "
                             f"ignoring duplicate")
            return False

        score = record.timestamp.timestamp()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.keys.tenant_metadata(record.tenant_id), {record.id: score})
            if record.processing_status == ProcessingStatus.PENDING:
                pipe.zadd(self.keys.tenant_pending(record.tenant_id), {record.id: score})
            await pipe.execute()
        return True

    async def get(self, tenant_id: str, record_id: str) -> Optional[MetadataRecord]:
        data = await self.redis.get(self.keys.metadata_record(tenant_id, record_id))
        return MetadataRecord.from_json(data) if data else None

    async def fetch_pending(self, tenant_id: str, limit: int = 10000) -> List[MetadataRecord]:
        record_ids = await self.redis.zrange(self.keys.tenant_pending(tenant_id), 0, limit - 1)
        if not record_ids:
            return []
        documents = await self.redis.mget([self.keys.metadata_record(tenant_id, rid) for rid in record_ids])
        records = []
        for record_id, data in zip(record_ids, documents):
            if data is None:
                self.logger.warning(f"Pending index references missing record {record_id}")
                continue
            record = MetadataRecord.from_json(data)
            if record.processing_status == ProcessingStatus.PENDING:
                records.append(record)
        return records

    async def count_pending(self, tenant_id: str) -> int:
        return int(await self.redis.zcard(self.keys.tenant_pending(tenant_id)))

    async def mark_status(self, tenant_id: str, record_ids: Iterable[str],
                          status: ProcessingStatus) -> int:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return 0

        pending_key = self.keys.tenant_pending(tenant_id)
        while True:
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    # The document rewrite and the index removal commit together, and only
                    # for records still pending when the transaction runs
                    await pipe.watch(pending_key)
                    still_pending = [rid for rid in ids if await pipe.zscore(pending_key, rid) is not None]
                    if not still_pending:
                        await pipe.unwatch()
                        transitioned = 0
                        break
                    doc_keys = [self.keys.metadata_record(tenant_id, rid) for rid in still_pending]
                    documents = await pipe.mget(doc_keys)

                    pipe.multi()
                    transitioned = 0
                    for record_id, key, data in zip(still_pending, doc_keys, documents):
                        if data is not None:
                            record = MetadataRecord.from_json(data)
                            record.processing_status = status
                            pipe.set(key, record.to_json())
                            transitioned += 1
                        pipe.zrem(pending_key, record_id)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        if transitioned != len(ids):
            self.logger.info(
                f"{len(ids) - transitioned} of {len(ids)} records for tenant {tenant_id} "
                f"were unknown or already marked, skipping them"
            )
        return transitioned


class InMemoryMetadataStore(MetadataStore):
    """In-memory metadata store for testing and single-process use."""

    def __init__(self):
        self._records: Dict[Tuple[str, str], MetadataRecord] = {}
        self._pending: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def append(self, record: MetadataRecord) -> bool:
        key = (record.tenant_id, record.id)
        async with self._lock:
            if key in self._records:
                return False
            self._records[key] = record.model_copy(deep=True)
            if record.processing_status == ProcessingStatus.PENDING:
                self._pending.setdefault(record.tenant_id, set()).add(record.id)
            return True

    async def get(self, tenant_id: str, record_id: str) -> Optional[MetadataRecord]:
        record = self._records.get((tenant_id, record_id))
        return record.model_copy(deep=True) if record else None

    async def fetch_pending(self, tenant_id: str, limit: int = 10000) -> List[MetadataRecord]:
        records = [self._records[(tenant_id, rid)] for rid in self._pending.get(tenant_id, set())]
        records.sort(key=lambda r: r.timestamp)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def count_pending(self, tenant_id: str) -> int:
        return len(self._pending.get(tenant_id, set()))

    async def mark_status(self, tenant_id: str, record_ids: Iterable[str],
                          status: ProcessingStatus) -> int:
        transitioned = 0
        async with self._lock:
            pending = self._pending.get(tenant_id, set())
            for record_id in dict.fromkeys(record_ids):
                if record_id not in pending:
                    continue
                pending.discard(record_id)
                self._records[(tenant_id, record_id)].processing_status = status
                transitioned += 1
        return transitioned

    def all_records(self, tenant_id: Optional[str] = None) -> List[MetadataRecord]:
        """Every stored record, optionally for one tenant (useful for testing)."""
        return [r for (owner, _), r in self._records.items() if tenant_id is None or owner == tenant_id]
