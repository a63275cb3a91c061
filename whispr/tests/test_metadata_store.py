"""
Tests for append-only metadata storage and exactly-once status marking.

Includes the crash-after-run scenario: a job whose run finished but whose
records were never marked is retried, and the retry marks each record once.
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from whispr.common_tools.metadata_store import InMemoryMetadataStore
from whispr.common_tools.models import ProcessingStatus

from whispr_test_utils import TENANT_ID, build_test_services, communication_records


class TestAppend:

    @pytest.mark.asyncio
    async def test_duplicate_id_is_a_noop(self):
        store = InMemoryMetadataStore()
        record = communication_records(1)[0]

        assert await store.append(record) is True
        assert await store.append(record) is False
        assert await store.count_pending(TENANT_ID) == 1
        assert len(store.all_records()) == 1

    @pytest.mark.asyncio
    async def test_same_id_in_two_tenants_is_stored_twice(self):
        store = InMemoryMetadataStore()
        acme = communication_records(3)
        globex = communication_records(3, tenant_id="globex")

        for record in acme + globex:
            assert await store.append(record) is True

        assert await store.count_pending(TENANT_ID) == 3
        assert await store.count_pending("globex") == 3
        assert (await store.get("globex", "slack_evt_0")).tenant_id == "globex"
        assert len(store.all_records("globex")) == 3

        assert await store.mark_processed("globex", [r.id for r in globex]) == 3
        assert await store.count_pending(TENANT_ID) == 3

    @pytest.mark.asyncio
    async def test_stored_record_is_detached_from_caller(self):
        store = InMemoryMetadataStore()
        record = communication_records(1)[0]
        await store.append(record)

        record.payload["message_length"] = 9999

        assert (await store.get(TENANT_ID, record.id)).payload["message_length"] == 40

    @pytest.mark.asyncio
    async def test_pending_fetched_oldest_first(self):
        store = InMemoryMetadataStore()
        records = communication_records(6)
        for record in reversed(records):
            await store.append(record)

        pending = await store.fetch_pending(TENANT_ID)

        timestamps = [r.timestamp for r in pending]
        assert timestamps == sorted(timestamps)
        assert len(await store.fetch_pending(TENANT_ID, limit=2)) == 2
        assert await store.fetch_pending("other") == []


class TestMarkStatus:

    @pytest.mark.asyncio
    async def test_records_transition_once(self):
        store = InMemoryMetadataStore()
        records = communication_records(4)
        for record in records:
            await store.append(record)
        ids = [r.id for r in records]

        assert await store.mark_processed(TENANT_ID, ids[:3]) == 3
        assert await store.mark_processed(TENANT_ID, ids) == 1
        assert await store.mark_skipped(TENANT_ID, ids) == 0
        assert await store.count_pending(TENANT_ID) == 0
        assert all(r.processing_status == ProcessingStatus.PROCESSED for r in store.all_records())

    @pytest.mark.asyncio
    async def test_concurrent_marking_counts_each_record_once(self):
        store = InMemoryMetadataStore()
        records = communication_records(10)
        for record in records:
            await store.append(record)
        ids = [r.id for r in records]

        results = await asyncio.gather(*(store.mark_processed(TENANT_ID, ids) for _ in range(5)))

        assert sum(results) == 10

    @pytest.mark.asyncio
    async def test_unknown_ids_ignored(self):
        store = InMemoryMetadataStore()

        assert await store.mark_processed(TENANT_ID, ["missing", "missing"]) == 0


class TestRetryAfterCrash:

    @pytest.mark.asyncio
    async def test_retried_job_marks_records_exactly_once(self):
        services = build_test_services(batch_size=10)
        for record in communication_records(12):
            await services.ingestor.submit_metadata(TENANT_ID, record)

        with patch.object(services.metadata_store, "mark_processed",
                          AsyncMock(side_effect=ConnectionError("store went away"))):
            first = await services.job_queue.claim()
            assert await services.worker_pool.run_job(first) is False

        assert await services.metadata_store.count_pending(TENANT_ID) == 12
        retry_job = await services.job_queue.claim(now=time.time() + 3600)
        assert retry_job.job_id == first.job_id
        assert await services.worker_pool.run_job(retry_job) is True

        assert await services.metadata_store.count_pending(TENANT_ID) == 0
        processed = [r for r in services.metadata_store.all_records()
                     if r.processing_status == ProcessingStatus.PROCESSED]
        assert len(processed) == 12
        assert await services.metadata_store.mark_processed(TENANT_ID, [r.id for r in processed]) == 0
