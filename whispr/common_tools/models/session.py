"""Agent session: the audit trail of one pipeline run."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.COMPLETED_WITH_ERRORS,
    SessionStatus.FAILED,
})


class StageLog(BaseModel):
    agent: str
    step: str
    level: str = "info"
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AgentSession(BaseModel):
    session_id: str = Field(default_factory=lambda: f"sess_{uuid.uuid4()}")
    tenant_id: str = Field(..., min_length=1)
    status: SessionStatus = SessionStatus.PENDING
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    logs: List[StageLog] = Field(default_factory=list)
    stage_durations: Dict[str, int] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    agent_sequence: List[str] = Field(default_factory=list)
    whisper_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> 'AgentSession':
        return cls.model_validate_json(json_str)
