"""Batching trigger state and analysis job models."""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TriggerDecision(str, Enum):
    """Outcome of one ``record_arrived`` call."""
    THRESHOLD = "threshold"
    SCHEDULED = "scheduled"
    ALREADY_SCHEDULED = "already_scheduled"
    DEGRADED = "degraded"


class TriggerState(BaseModel):
    tenant_id: str
    pending_count: int = 0
    scheduled_until: Optional[datetime] = None


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


class AnalysisJob(BaseModel):
    """
    A request to analyse one tenant's pending metadata.

    ``dedupe_key`` is the tenant id, so at most one job per tenant waits in
    the queue at any time.
    """

    job_id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex}")
    tenant_id: str = Field(..., min_length=1)
    dedupe_key: str
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delay_ms: int = Field(0, ge=0)
    due_at: float = Field(default_factory=time.time)
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    status: JobStatus = JobStatus.WAITING
    lease_expires_at: Optional[float] = None
    # Set on each claim; only the holder of the current token may complete or fail the job
    lease_token: Optional[str] = None

    @classmethod
    def for_tenant(cls, tenant_id: str, delay_ms: int = 0, max_attempts: int = 3,
                   now: Optional[float] = None) -> 'AnalysisJob':
        now = time.time() if now is None else now
        return cls(
            tenant_id=tenant_id,
            dedupe_key=tenant_id,
            delay_ms=delay_ms,
            due_at=now + delay_ms / 1000.0,
            max_attempts=max_attempts,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> 'AnalysisJob':
        return cls.model_validate_json(json_str)
