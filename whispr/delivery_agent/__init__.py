"""Whisper delivery: primary direct message with a single channel fallback."""

from .delivery_engine import (
    DeliveryChannel,
    DeliveryEngine,
    DeliveryResult,
    RecipientCache,
    RecipientResolver,
    SendResult,
    format_whisper_blocks,
)
from .slack_channel import SlackDeliveryChannel

__all__ = [
    "DeliveryChannel",
    "DeliveryEngine",
    "DeliveryResult",
    "RecipientCache",
    "RecipientResolver",
    "SendResult",
    "format_whisper_blocks",
    "SlackDeliveryChannel",
]
