"""Tests for the Slack Web API delivery channel against a local fake Slack."""

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from whispr.common_tools.errors import DeliveryError
from whispr.config.settings import DeliveryConfig
from whispr.config.tenants import TenantDirectory
from whispr.delivery_agent.slack_channel import SlackDeliveryChannel

from whispr_test_utils import TENANT_ID, make_tenant

BLOCKS = [{"type": "section", "text": {"type": "mrkdwn", "text": "hello"}}]


class FakeSlack:
    """Minimal Web API: records calls and answers from a per-method script."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    async def handle(self, request):
        method = request.match_info["method"]
        body = await request.json() if request.method == "POST" else dict(request.query)
        self.calls.append((method, body, request.headers.get("Authorization")))
        answer = self.answers.get(method, {"ok": True})
        if answer == 429:
            return web.Response(status=429)
        return web.json_response(answer)


@asynccontextmanager
async def slack_channel(fake, tenant=None):
    app = web.Application()
    app.router.add_route("*", "/api/{method}", fake.handle)
    async with TestServer(app) as server:
        config = DeliveryConfig(slack_api_url=str(server.make_url("/api")))
        channel = SlackDeliveryChannel(TenantDirectory([tenant or make_tenant()]), config)
        try:
            yield channel
        finally:
            await channel.close()


class TestSendDirect:

    @pytest.mark.asyncio
    async def test_opens_conversation_then_posts(self):
        fake = FakeSlack({
            "conversations.open": {"ok": True, "channel": {"id": "D123"}},
            "chat.postMessage": {"ok": True, "ts": "1709550000.1"},
        })

        async with slack_channel(fake) as channel:
            result = await channel.send_direct(TENANT_ID, "U_ADMIN", BLOCKS, text="fallback")

        assert result.ok is True
        assert result.ref == "1709550000.1"
        assert [c[0] for c in fake.calls] == ["conversations.open", "chat.postMessage"]
        assert fake.calls[1][1]["channel"] == "D123"
        assert fake.calls[1][2] == "Bearer xoxb-test"

    @pytest.mark.asyncio
    async def test_slack_error_is_a_failed_send(self):
        fake = FakeSlack({"conversations.open": {"ok": False, "error": "user_not_found"}})

        async with slack_channel(fake) as channel:
            result = await channel.send_direct(TENANT_ID, "U_GONE", BLOCKS)

        assert result.ok is False
        assert "user_not_found" in result.error

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        fake = FakeSlack({"conversations.open": 429})

        async with slack_channel(fake) as channel:
            result = await channel.send_direct(TENANT_ID, "U_ADMIN", BLOCKS)

        assert result.ok is False
        assert "ratelimited" in result.error


class TestSendToChannel:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref,expected", [("team-insights", "#team-insights"), ("C0123", "C0123")])
    async def test_channel_name_normalized(self, ref, expected):
        fake = FakeSlack()

        async with slack_channel(fake) as channel:
            result = await channel.send_to_channel(TENANT_ID, ref, BLOCKS)

        assert result.ok is True
        assert fake.calls[0][1]["channel"] == expected


class TestListAdmins:

    @pytest.mark.asyncio
    async def test_primary_owner_first(self):
        fake = FakeSlack({"users.list": {"ok": True, "members": [
            {"id": "U_ADMIN", "is_admin": True},
            {"id": "U_BOT", "is_admin": True, "is_bot": True},
            {"id": "U_GONE", "is_owner": True, "deleted": True},
            {"id": "U_OWNER", "is_owner": True, "is_primary_owner": True},
            {"id": "U_MEMBER"},
        ]}})

        async with slack_channel(fake) as channel:
            admins = await channel.list_admins(TENANT_ID)

        assert admins == ["U_OWNER", "U_ADMIN"]

    @pytest.mark.asyncio
    async def test_missing_bot_token(self):
        async with slack_channel(FakeSlack(), tenant=make_tenant(slack_bot_token=None)) as channel:
            with pytest.raises(DeliveryError):
                await channel.list_admins(TENANT_ID)
