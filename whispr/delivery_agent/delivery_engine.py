"""
Whisper delivery with a single fallback.

Each whisper is first sent as a direct message to the tenant's designated
recipient. Any failure on that path invalidates the cached recipient and
triggers exactly one attempt on the tenant's fallback channel. The whisper
always leaves ``deliver`` as ``delivered`` or ``failed`` with every attempt
recorded on it.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..common_tools.errors import RecipientNotFoundError
from ..common_tools.logging import get_logger
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import DeliveryAttempt, DeliveryTarget, Whisper, WhisperStatus
from ..common_tools.whisper_store import WhisperStore
from ..config.settings import DeliveryConfig
from ..config.tenants import TenantDirectory

HEADER_MAX_CHARS = 150


@dataclass
class SendResult:
    """Outcome of one send on a delivery channel."""
    ok: bool
    ref: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    channel_used: Optional[str] = None
    message_ref: Optional[str] = None
    target_type: Optional[str] = None
    error: Optional[str] = None


class DeliveryChannel(ABC):
    """Messaging collaborator used by the delivery engine."""

    @abstractmethod
    async def send_direct(self, tenant_id: str, recipient_ref: str,
                          blocks: List[Dict[str, Any]], text: str = "") -> SendResult:
        """Send blocks as a direct message to one user."""

    @abstractmethod
    async def send_to_channel(self, tenant_id: str, channel_ref: str,
                              blocks: List[Dict[str, Any]], text: str = "") -> SendResult:
        """Post blocks to a channel."""

    @abstractmethod
    async def list_admins(self, tenant_id: str) -> List[str]:
        """User ids of workspace admins and owners, best candidates first."""


def confidence_label(confidence: float) -> str:
    if confidence >= 0.8:
        return "High"
    if confidence >= 0.6:
        return "Medium"
    return "Low"


def format_whisper_blocks(whisper: Whisper) -> List[Dict[str, Any]]:
    """
    Channel-agnostic message blocks for a whisper.

    Layout: header with the title, the message body, the suggested actions
    as a bullet list, and a context footer when a confidence is known.
    """
    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"🤫 {whisper.title}"[:HEADER_MAX_CHARS], "emoji": True},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": whisper.content.message or whisper.title},
        },
    ]

    actions = whisper.content.suggested_actions
    if actions:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "*Suggested Actions:*"}})
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(f"• {action}" for action in actions)},
        })

    confidence = whisper.metadata.confidence
    if confidence is not None:
        timeframe = whisper.metadata.timeframe or "7 days"
        blocks.append({
            "type": "context",
            "elements": [{
                "type": "mrkdwn",
                "text": (f"*Data context:* Based on patterns from the last {timeframe} "
                         f"with {confidence_label(confidence)} confidence"),
            }],
        })
    return blocks


class RecipientCache:
    """Per-tenant recipient ids with a bounded lifetime."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, tenant_id: str) -> Optional[str]:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        recipient, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[tenant_id]
            return None
        return recipient

    def set(self, tenant_id: str, recipient: str) -> None:
        self._entries[tenant_id] = (recipient, self._clock() + self.ttl_seconds)

    def invalidate(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class RecipientResolver:
    """Finds the tenant's designated recipient: configured admin first, then a workspace admin."""

    def __init__(self, tenants: TenantDirectory, channel: DeliveryChannel):
        self.tenants = tenants
        self.channel = channel

    async def resolve(self, tenant_id: str) -> str:
        profile = self.tenants.get(tenant_id)
        if profile is not None and profile.admin_user_id:
            return profile.admin_user_id
        admins = await self.channel.list_admins(tenant_id)
        if not admins:
            raise RecipientNotFoundError(f"No admin recipient found for tenant {tenant_id}",
                                         target_type=DeliveryTarget.DIRECT.value)
        return admins[0]


class DeliveryEngine:
    """Delivers whispers and records every attempt on the whisper itself."""

    def __init__(self, channel: DeliveryChannel, tenants: TenantDirectory, whisper_store: WhisperStore,
                 config: Optional[DeliveryConfig] = None, metrics: Optional[WhisprMetrics] = None,
                 cache: Optional[RecipientCache] = None):
        self.channel = channel
        self.tenants = tenants
        self.whisper_store = whisper_store
        self.config = config or DeliveryConfig()
        self.metrics = metrics
        self.cache = cache or RecipientCache(self.config.recipient_cache_ttl)
        self.resolver = RecipientResolver(tenants, channel)
        self.logger = get_logger("delivery_engine")

    def fallback_channel_for(self, tenant_id: str) -> str:
        profile = self.tenants.get(tenant_id)
        if profile is not None and profile.fallback_channel:
            return profile.fallback_channel
        return self.config.fallback_channel

    async def _recipient_for(self, tenant_id: str) -> str:
        recipient = self.cache.get(tenant_id)
        if recipient is None:
            recipient = await self.resolver.resolve(tenant_id)
            self.cache.set(tenant_id, recipient)
        return recipient

    async def deliver(self, whisper: Whisper) -> DeliveryResult:
        """
        Deliver one whisper: primary direct message, then at most one channel fallback.

        The whisper is updated in place and saved to the whisper store.
        """
        tenant_id = whisper.tenant_id
        blocks = format_whisper_blocks(whisper)
        text = whisper.title

        recipient: Optional[str] = None
        try:
            recipient = await self._recipient_for(tenant_id)
            sent = await self.channel.send_direct(tenant_id, recipient, blocks, text=text)
        except Exception as e:
            sent = SendResult(ok=False, error=f"{type(e).__name__}: {e}")
        self._record_attempt(whisper, DeliveryTarget.DIRECT, recipient, sent)

        if sent.ok:
            result = DeliveryResult(success=True, channel_used=recipient, message_ref=sent.ref,
                                    target_type=DeliveryTarget.DIRECT.value)
        else:
            self.cache.invalidate(tenant_id)
            fallback_channel = self.fallback_channel_for(tenant_id)
            self.logger.warning(
                f"Direct delivery of whisper {whisper.id} failed ({sent.error}), "
                f"falling back to channel {fallback_channel}",
                tenant_id=tenant_id,
                extra_fields={"event_type": "delivery_fallback", "whisper_id": whisper.id}
            )
            try:
                sent = await self.channel.send_to_channel(tenant_id, fallback_channel, blocks, text=text)
            except Exception as e:
                sent = SendResult(ok=False, error=f"{type(e).__name__}: {e}")
            self._record_attempt(whisper, DeliveryTarget.CHANNEL, fallback_channel, sent)

            if sent.ok:
                result = DeliveryResult(success=True, channel_used=fallback_channel, message_ref=sent.ref,
                                        target_type=DeliveryTarget.CHANNEL.value)
            else:
                result = DeliveryResult(success=False, target_type=DeliveryTarget.CHANNEL.value,
                                        error=sent.error or "delivery failed")

        self._apply_result(whisper, result)
        await self.whisper_store.save(whisper)

        if result.success:
            self.logger.info(f"Whisper {whisper.id} delivered via {result.target_type}",
                             tenant_id=tenant_id,
                             extra_fields={"event_type": "whisper_delivered", "whisper_id": whisper.id,
                                           "channel_used": result.channel_used})
        else:
            self.logger.error(f"Whisper {whisper.id} could not be delivered: {result.error}",
                              tenant_id=tenant_id,
                              extra_fields={"event_type": "whisper_delivery_failed", "whisper_id": whisper.id})
        return result

    def _record_attempt(self, whisper: Whisper, target_type: DeliveryTarget,
                        target_ref: Optional[str], sent: SendResult) -> None:
        whisper.delivery.attempts.append(DeliveryAttempt(
            target_type=target_type,
            target_ref=target_ref,
            success=sent.ok,
            message_ref=sent.ref,
            error=None if sent.ok else (sent.error or "send failed"),
        ))
        if self.metrics:
            self.metrics.increment_delivery(target_type.value, "success" if sent.ok else "failure")

    @staticmethod
    def _apply_result(whisper: Whisper, result: DeliveryResult) -> None:
        delivery = whisper.delivery
        delivery.target_type = DeliveryTarget(result.target_type) if result.target_type else None
        if result.success:
            delivery.channel_used = result.channel_used
            delivery.message_ref = result.message_ref
            delivery.delivered_at = datetime.now(timezone.utc)
            delivery.error = None
            whisper.status = WhisperStatus.DELIVERED
        else:
            delivery.error = result.error
            whisper.status = WhisperStatus.FAILED
