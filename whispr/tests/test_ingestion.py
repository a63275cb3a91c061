"""
Tests for metadata ingestion and signed webhooks.

Ingestion stores first and then notifies the trigger; a store failure must
surface as IngestionError while a coordination failure must not fail the
write.
"""

import json
import time
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError

from whispr.common_tools.errors import IngestionError, SignatureVerificationError, UnknownTenantError
from whispr.common_tools.models import ProcessingStatus, TriggerDecision
from whispr.ingestion_agent.signatures import compute_github_signature, compute_slack_signature

from whispr_test_utils import GITHUB_SECRET, SLACK_SECRET, TENANT_ID, build_test_services


def slack_headers(body: bytes, timestamp=None, secret=SLACK_SECRET):
    timestamp = str(int(time.time())) if timestamp is None else str(timestamp)
    return {
        "X-Slack-Request-Timestamp": timestamp,
        "X-Slack-Signature": compute_slack_signature(secret, timestamp, body),
    }


def github_headers(body: bytes, event="push", delivery="d-1", secret=GITHUB_SECRET):
    return {
        "X-Hub-Signature-256": compute_github_signature(secret, body),
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
    }


SLACK_MESSAGE = {
    "type": "event_callback",
    "event_id": "Ev123",
    "event": {
        "type": "message",
        "channel": "C_ENG",
        "channel_type": "channel",
        "user": "U1",
        "text": "Shipping tonight :rocket: <@U2>",
        "ts": "1709550000.000100",
    },
}


class TestMetadataIngestor:

    def test_normalize_stamps_tenant_and_type(self, services):
        record = services.ingestor.normalize(TENANT_ID, {
            "tenant_id": "someone-else",
            "source_integration": " GitHub ",
            "event_type": "Pull_Request",
            "processing_status": "processed",
        })

        assert record.tenant_id == TENANT_ID
        assert record.source_integration == "github"
        assert record.metadata_type == "pr_lifecycle"
        assert record.processing_status == ProcessingStatus.PENDING

    def test_normalize_keeps_explicit_type(self, services):
        record = services.ingestor.normalize(TENANT_ID, {
            "source_integration": "slack", "event_type": "message", "metadata_type": "message_frequency",
        })

        assert record.metadata_type == "message_frequency"

    def test_normalize_rejects_unknown_fields(self, services):
        with pytest.raises(ValidationError):
            services.ingestor.normalize(TENANT_ID, {
                "source_integration": "slack", "event_type": "message", "text": "hello",
            })

    @pytest.mark.asyncio
    async def test_submit_stores_and_notifies_trigger(self, services):
        record = await services.ingestor.submit_metadata(TENANT_ID, {
            "source_integration": "slack", "event_type": "message",
        })

        assert (await services.metadata_store.get(TENANT_ID, record.id)).tenant_id == TENANT_ID
        assert (await services.trigger.get_state(TENANT_ID)).pending_count == 1
        assert await services.job_queue.get_waiting(TENANT_ID) is not None

    @pytest.mark.asyncio
    async def test_duplicate_record_not_counted_twice(self, services):
        payload = {"id": "evt-1", "source_integration": "slack", "event_type": "message"}

        await services.ingestor.submit_metadata(TENANT_ID, payload)
        await services.ingestor.submit_metadata(TENANT_ID, payload)

        assert (await services.trigger.get_state(TENANT_ID)).pending_count == 1
        assert await services.metadata_store.count_pending(TENANT_ID) == 1

    @pytest.mark.asyncio
    async def test_store_failure_raises_ingestion_error(self, services):
        with patch.object(services.metadata_store, "append",
                          AsyncMock(side_effect=RedisConnectionError("down"))):
            with pytest.raises(IngestionError):
                await services.ingestor.submit_metadata(TENANT_ID, {
                    "source_integration": "slack", "event_type": "message",
                })

        assert (await services.trigger.get_state(TENANT_ID)).pending_count == 0

    @pytest.mark.asyncio
    async def test_coordination_failure_does_not_fail_ingestion(self, services):
        with patch.object(services.coordination_store, "incr",
                          AsyncMock(side_effect=RedisConnectionError("down"))):
            record = await services.ingestor.submit_metadata(TENANT_ID, {
                "source_integration": "slack", "event_type": "message",
            })

        assert await services.metadata_store.get(TENANT_ID, record.id) is not None
        waiting = await services.job_queue.get_waiting(TENANT_ID)
        assert waiting.delay_ms == services.config.batching.analysis_interval_ms

    @pytest.mark.asyncio
    async def test_degraded_decision_reported(self, services):
        with patch.object(services.coordination_store, "incr",
                          AsyncMock(side_effect=RedisConnectionError("down"))):
            decision = await services.trigger.record_arrived(TENANT_ID)

        assert decision == TriggerDecision.DEGRADED


class TestWebhookIngestor:

    @pytest.mark.asyncio
    async def test_slack_message_ingested(self, services):
        body = json.dumps(SLACK_MESSAGE).encode()

        result = await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body), body)

        assert result.accepted == 1
        assert result.record_ids == ["slack_Ev123"]
        stored = await services.metadata_store.get(TENANT_ID, "slack_Ev123")
        assert stored.metadata_type == "communication_metadata"
        assert "text" not in stored.payload

    @pytest.mark.asyncio
    async def test_slack_redelivery_is_deduplicated(self, services):
        body = json.dumps(SLACK_MESSAGE).encode()

        await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body), body)
        await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body), body)

        assert await services.metadata_store.count_pending(TENANT_ID) == 1

    @pytest.mark.asyncio
    async def test_url_verification_returns_challenge(self, services):
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        result = await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body), body)

        assert result.challenge == "abc123"
        assert result.accepted == 0

    @pytest.mark.asyncio
    async def test_bad_slack_signature_rejected(self, services):
        body = json.dumps(SLACK_MESSAGE).encode()

        with pytest.raises(SignatureVerificationError):
            await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body, secret="wrong"), body)
        assert await services.metadata_store.count_pending(TENANT_ID) == 0

    @pytest.mark.asyncio
    async def test_github_push_ingested(self, services):
        body = json.dumps({
            "ref": "refs/heads/main",
            "repository": {"id": 7, "default_branch": "main"},
            "sender": {"id": 3},
            "commits": [{"author": {"email": "a@x"}}, {"author": {"email": "b@x"}}],
            "head_commit": {"timestamp": "2024-03-04T10:00:00Z", "message": "secret plans"},
        }).encode()

        result = await services.webhooks.handle(TENANT_ID, "github", github_headers(body), body)

        stored = await services.metadata_store.get(TENANT_ID, result.record_ids[0])
        assert stored.id == "github_d-1"
        assert stored.metadata_type == "commit_activity"
        assert stored.payload["commit_count"] == 2
        assert stored.payload["is_default_branch"] is True
        assert "secret plans" not in stored.to_json()

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, services):
        with pytest.raises(UnknownTenantError):
            await services.webhooks.handle("nobody", "github", {}, b"{}")

    @pytest.mark.asyncio
    async def test_unsupported_integration(self, services):
        with pytest.raises(ValueError):
            await services.webhooks.handle(TENANT_ID, "jira", {}, b"{}")

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, services):
        body = b"not json"

        with pytest.raises(ValueError):
            await services.webhooks.handle(TENANT_ID, "github", github_headers(body), body)

    @pytest.mark.asyncio
    async def test_store_outage_propagates(self):
        services = build_test_services()
        body = json.dumps(SLACK_MESSAGE).encode()

        with patch.object(services.metadata_store, "append", AsyncMock(side_effect=OSError("disk"))):
            with pytest.raises(IngestionError):
                await services.webhooks.handle(TENANT_ID, "slack", slack_headers(body), body)
