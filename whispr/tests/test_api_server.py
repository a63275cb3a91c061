"""Tests for the HTTP surface, served in-process with aiohttp's test client."""

import json
from contextlib import asynccontextmanager

import pytest
from aiohttp.test_utils import TestClient, TestServer

from whispr.api.server import create_app
from whispr.common_tools.models import WhisperStatus
from whispr.ingestion_agent.signatures import compute_github_signature

from whispr_test_utils import GITHUB_SECRET, TENANT_ID, ScriptedAnalysisClient, build_test_services


@asynccontextmanager
async def api_client(services):
    async with TestClient(TestServer(create_app(services))) as client:
        yield client


def run_body(count=12):
    return {"metadata": [
        {"id": f"evt-{i}", "source_integration": "slack", "event_type": "message",
         "timestamp": f"2024-03-0{4 + i % 3}T10:{i:02d}:00Z", "payload": {"channel_id": "C1"}}
        for i in range(count)
    ]}


class TestForcedRun:

    @pytest.mark.asyncio
    async def test_run_returns_session_summary(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/runs", json=run_body())
            body = await resp.json()

        assert resp.status == 200
        assert body["success"] is True
        assert body["whisperCount"] == 1
        assert body["sessionId"].startswith("sess_")
        assert body["status"] == "completed"
        assert await services.metadata_store.count_pending(TENANT_ID) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"metadata": []}, {"metadata": "not a list"}])
    async def test_missing_or_empty_metadata(self, services, payload):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/runs", json=payload)
            body = await resp.json()

        assert resp.status == 400
        assert body["success"] is False
        assert "metadata" in body["error"]

    @pytest.mark.asyncio
    async def test_invalid_record(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/runs",
                                     json={"metadata": [{"event_type": "message"}]})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_non_json_body(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/runs", data=b"{broken")

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_stage_errors_still_succeed(self):
        services = build_test_services(analysis_client=ScriptedAnalysisClient({"pulse": "no json here"}))

        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/runs", json=run_body())
            body = await resp.json()

        assert resp.status == 200
        assert body["data"]["status"] == "completed_with_errors"


class TestSessionsAndWhispers:

    @pytest.mark.asyncio
    async def test_session_trace(self, services):
        async with api_client(services) as client:
            run = await (await client.post(f"/api/tenants/{TENANT_ID}/runs", json=run_body())).json()
            session_id = run["sessionId"]

            listing = await (await client.get(f"/api/tenants/{TENANT_ID}/sessions")).json()
            resp = await client.get(f"/api/sessions/{session_id}")
            trace = (await resp.json())["data"]

        assert [s["session_id"] for s in listing["data"]] == [session_id]
        assert listing["data"][0]["whisper_count"] == 1
        assert resp.status == 200
        assert trace["agent_sequence"] == ["pulse", "sentinel", "whispr"]
        assert trace["duration_ms"] is not None
        assert "pulse" in trace["stage_durations"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, services):
        async with api_client(services) as client:
            resp = await client.get("/api/sessions/sess_missing")
            body = await resp.json()

        assert resp.status == 404
        assert body["success"] is False

    @pytest.mark.asyncio
    async def test_whispers_filtered_by_status(self, services):
        async with api_client(services) as client:
            await client.post(f"/api/tenants/{TENANT_ID}/runs", json=run_body())
            delivered = await (await client.get(f"/api/tenants/{TENANT_ID}/whispers",
                                                params={"status": "delivered"})).json()
            failed = await (await client.get(f"/api/tenants/{TENANT_ID}/whispers",
                                             params={"status": "failed"})).json()
            invalid = await client.get(f"/api/tenants/{TENANT_ID}/whispers", params={"status": "lost"})

        assert [w["status"] for w in delivered["data"]] == [WhisperStatus.DELIVERED.value]
        assert failed["data"] == []
        assert invalid.status == 400

    @pytest.mark.asyncio
    async def test_invalid_limit(self, services):
        async with api_client(services) as client:
            resp = await client.get(f"/api/tenants/{TENANT_ID}/sessions", params={"limit": "many"})

        assert resp.status == 400


class TestIngestionRoutes:

    @pytest.mark.asyncio
    async def test_single_record_accepted(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/metadata",
                                     json={"source_integration": "slack", "event_type": "message"})
            body = await resp.json()

        assert resp.status == 202
        assert body["data"]["accepted"] == 1
        assert await services.metadata_store.count_pending(TENANT_ID) == 1

    @pytest.mark.asyncio
    async def test_batch_accepted(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/metadata", json=run_body(3))
            body = await resp.json()

        assert resp.status == 202
        assert body["data"]["record_ids"] == ["evt-0", "evt-1", "evt-2"]

    @pytest.mark.asyncio
    async def test_invalid_record_rejected(self, services):
        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/metadata", json={"event_type": "message"})

        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_signed_github_webhook(self, services):
        body = json.dumps({"action": "opened", "issue": {"number": 4}}).encode()
        headers = {
            "X-Hub-Signature-256": compute_github_signature(GITHUB_SECRET, body),
            "X-GitHub-Event": "issues",
            "X-GitHub-Delivery": "d-42",
            "Content-Type": "application/json",
        }

        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/webhooks/github", data=body, headers=headers)
            payload = await resp.json()

        assert resp.status == 200
        assert payload["data"]["record_ids"] == ["github_d-42"]

    @pytest.mark.asyncio
    async def test_bad_webhook_signature(self, services):
        body = b'{"action": "opened"}'
        headers = {"X-Hub-Signature-256": "sha256=" + "0" * 64, "X-GitHub-Event": "issues"}

        async with api_client(services) as client:
            resp = await client.post(f"/api/tenants/{TENANT_ID}/webhooks/github", data=body, headers=headers)

        assert resp.status == 401
        assert await services.metadata_store.count_pending(TENANT_ID) == 0

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_tenant(self, services):
        async with api_client(services) as client:
            resp = await client.post("/api/tenants/nobody/webhooks/github", data=b"{}")

        assert resp.status == 404


class TestOperationalRoutes:

    @pytest.mark.asyncio
    async def test_health(self, services):
        async with api_client(services) as client:
            ready = await client.get("/health")
            live = await client.get("/health/live")
            ready_body = await ready.json()

        assert ready.status == 200
        assert ready_body["status"] == "healthy"
        assert live.status == 200

    @pytest.mark.asyncio
    async def test_failing_readiness_check(self, services):
        services.health.add_readiness_check("redis", lambda: (False, "connection refused"))

        async with api_client(services) as client:
            resp = await client.get("/health")

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_metrics_exposition(self, services):
        async with api_client(services) as client:
            await client.post(f"/api/tenants/{TENANT_ID}/metadata",
                              json={"source_integration": "slack", "event_type": "message"})
            resp = await client.get("/metrics")
            text = await resp.text()

        assert resp.status == 200
        assert "whispr_metadata_ingested_total" in text
