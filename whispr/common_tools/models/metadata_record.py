"""
Canonical MetadataRecord data model.

A metadata record is a content-free description of one activity event
(timing, counts, type) produced by an integration adapter. Records are
append-only: the only field the core ever changes is ``processing_status``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProcessingStatus(str, Enum):
    """Lifecycle of a metadata record with respect to analysis batches."""
    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"


class MetadataType(str, Enum):
    """Metadata types known to the default agent registry."""
    COMMUNICATION = "communication_metadata"
    EMOJI_USAGE = "emoji_usage"
    CHANNEL_ACTIVITY = "channel_activity"
    MESSAGE_FREQUENCY = "message_frequency"
    COMMIT_ACTIVITY = "commit_activity"
    PR_LIFECYCLE = "pr_lifecycle"
    ISSUE_TRACKING = "issue_tracking"
    CODE_REVIEW = "code_review"
    DEVELOPMENT_ACTIVITY = "development_activity"


class MetadataRecord(BaseModel):
    """One normalized, privacy-scrubbed activity event for a tenant."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str = Field(..., min_length=1, max_length=200)
    source_integration: str = Field(..., min_length=1, max_length=100)
    event_type: str = Field(..., min_length=1, max_length=200)
    metadata_type: Optional[str] = Field(None, max_length=100)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator('source_integration', 'event_type')
    @classmethod
    def normalize_identifiers(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator('timestamp')
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> 'MetadataRecord':
        return cls.model_validate_json(json_str)

    def for_analysis(self) -> Dict[str, Any]:
        """Serializable view handed to the analysis collaborator."""
        return {
            "id": self.id,
            "source": self.source_integration,
            "event_type": self.event_type,
            "metadata_type": self.metadata_type,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }
