"""Whisper records: the actionable insights produced by the terminal stage."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WhisperStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class WhisperCategory(str, Enum):
    IMPROVEMENT = "improvement"
    OPTIMIZATION = "optimization"
    HEALTH = "health"
    COLLABORATION = "collaboration"
    RECOGNITION = "recognition"


class DeliveryTarget(str, Enum):
    DIRECT = "direct"
    CHANNEL = "channel"


PRIORITY_LABELS = {
    1: "critical",
    2: "high",
    3: "medium",
    4: "low",
    5: "low",
}


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "medium")


class WhisperContent(BaseModel):
    message: str = ""
    suggested_actions: List[str] = Field(default_factory=list)
    rationale: Optional[str] = None


class WhisperMetadata(BaseModel):
    session_id: Optional[str] = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    generated_by: str = "whispr"
    model_name: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    timeframe: Optional[str] = None


class DeliveryAttempt(BaseModel):
    target_type: DeliveryTarget
    target_ref: Optional[str] = None
    success: bool
    message_ref: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DeliveryDetail(BaseModel):
    channel_used: Optional[str] = None
    target_type: Optional[DeliveryTarget] = None
    message_ref: Optional[str] = None
    delivered_at: Optional[datetime] = None
    error: Optional[str] = None
    attempts: List[DeliveryAttempt] = Field(default_factory=list)


class Whisper(BaseModel):
    """
    A short, actionable insight for one tenant.

    Created in ``pending`` status by the terminal pipeline stage and persisted
    before delivery; the delivery engine moves it to ``delivered`` or
    ``failed``. The core never deletes whispers.
    """

    id: str = Field(default_factory=lambda: f"whspr_{uuid.uuid4()}")
    tenant_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=300)
    category: WhisperCategory = WhisperCategory.IMPROVEMENT
    priority: int = Field(3, ge=1, le=5)
    content: WhisperContent = Field(default_factory=WhisperContent)
    status: WhisperStatus = WhisperStatus.PENDING
    scope_info: Optional[Dict[str, Any]] = None
    metadata: WhisperMetadata = Field(default_factory=WhisperMetadata)
    delivery: DeliveryDetail = Field(default_factory=DeliveryDetail)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(validate_assignment=True)

    @property
    def priority_label(self) -> str:
        return priority_label(self.priority)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> 'Whisper':
        return cls.model_validate_json(json_str)
