"""Slack Web API implementation of the delivery channel."""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from ..common_tools.errors import DeliveryError
from ..common_tools.logging import setup_logging
from ..common_tools.metrics import ExternalCallTimer, WhisprMetrics
from ..config.settings import DeliveryConfig
from ..config.tenants import TenantDirectory
from .delivery_engine import DeliveryChannel, SendResult


class SlackDeliveryChannel(DeliveryChannel):
    """
    Sends whispers through the Slack Web API with each tenant's bot token.

    Direct messages open (or reuse) an IM conversation with
    ``conversations.open`` and then post into it.
    """

    def __init__(self, tenants: TenantDirectory, config: Optional[DeliveryConfig] = None,
                 metrics: Optional[WhisprMetrics] = None):
        self.tenants = tenants
        self.config = config or DeliveryConfig()
        self.metrics = metrics
        self.api_url = self.config.slack_api_url.rstrip('/')
        self.logger = setup_logging("slack_channel")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            )
        return self._session

    def _token_for(self, tenant_id: str) -> str:
        profile = self.tenants.get(tenant_id)
        if profile is None or not profile.slack_bot_token:
            raise DeliveryError(f"No Slack bot token configured for tenant {tenant_id}")
        return profile.slack_bot_token

    async def _call(self, tenant_id: str, method: str, payload: Optional[Dict[str, Any]] = None,
                    http_method: str = "POST") -> Dict[str, Any]:
        """Call one Web API method; raises DeliveryError unless Slack answers ok."""
        headers = {"Authorization": f"Bearer {self._token_for(tenant_id)}"}
        session = await self._get_session()
        url = f"{self.api_url}/{method}"

        try:
            if self.metrics:
                with ExternalCallTimer(self.metrics, "slack", method):
                    data = await self._request(session, http_method, url, headers, payload)
            else:
                data = await self._request(session, http_method, url, headers, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"Slack {method} request failed: {e}", retryable=True) from e

        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            raise DeliveryError(f"Slack {method} returned error: {error}",
                                retryable=error in ("ratelimited", "rate_limited", "service_unavailable"))
        return data

    @staticmethod
    async def _request(session: aiohttp.ClientSession, http_method: str, url: str,
                       headers: Dict[str, str], payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if http_method == "GET":
            request = session.get(url, headers=headers, params=payload)
        else:
            request = session.post(url, headers=headers, json=payload or {})
        async with request as response:
            if response.status == 429:
                return {"ok": False, "error": "ratelimited"}
            response.raise_for_status()
            return await response.json()

    async def send_direct(self, tenant_id: str, recipient_ref: str,
                          blocks: List[Dict[str, Any]], text: str = "") -> SendResult:
        try:
            opened = await self._call(tenant_id, "conversations.open", {"users": recipient_ref})
            channel_id = opened["channel"]["id"]
            posted = await self._call(tenant_id, "chat.postMessage",
                                      {"channel": channel_id, "blocks": blocks, "text": text})
        except DeliveryError as e:
            self.logger.warning(f"Direct message to {recipient_ref} for tenant {tenant_id} failed: {e}")
            return SendResult(ok=False, error=str(e))
        return SendResult(ok=True, ref=posted.get("ts"))

    async def send_to_channel(self, tenant_id: str, channel_ref: str,
                              blocks: List[Dict[str, Any]], text: str = "") -> SendResult:
        channel = channel_ref if channel_ref.startswith(("#", "C", "G")) else f"#{channel_ref}"
        try:
            posted = await self._call(tenant_id, "chat.postMessage",
                                      {"channel": channel, "blocks": blocks, "text": text})
        except DeliveryError as e:
            self.logger.warning(f"Channel post to {channel} for tenant {tenant_id} failed: {e}")
            return SendResult(ok=False, error=str(e))
        return SendResult(ok=True, ref=posted.get("ts"))

    async def list_admins(self, tenant_id: str) -> List[str]:
        data = await self._call(tenant_id, "users.list", {"limit": 200}, http_method="GET")
        members = data.get("members", [])
        primary = [m["id"] for m in members if m.get("is_primary_owner") and not m.get("deleted")]
        others = [m["id"] for m in members
                  if (m.get("is_admin") or m.get("is_owner")) and not m.get("deleted")
                  and not m.get("is_bot") and m["id"] not in primary]
        return primary + others

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
