"""
Common data models for the whispr services.

All persisted records are pydantic models serialized with ``model_dump_json``.
"""

from .metadata_record import MetadataRecord, MetadataType, ProcessingStatus
from .whisper import (
    Whisper,
    WhisperCategory,
    WhisperContent,
    WhisperMetadata,
    WhisperStatus,
    DeliveryAttempt,
    DeliveryDetail,
    DeliveryTarget,
    priority_label,
)
from .session import AgentSession, SessionStatus, StageLog, TERMINAL_STATUSES
from .analysis_job import AnalysisJob, JobStatus, TriggerDecision, TriggerState

__all__ = [
    "MetadataRecord",
    "MetadataType",
    "ProcessingStatus",
    "Whisper",
    "WhisperCategory",
    "WhisperContent",
    "WhisperMetadata",
    "WhisperStatus",
    "DeliveryAttempt",
    "DeliveryDetail",
    "DeliveryTarget",
    "priority_label",
    "AgentSession",
    "SessionStatus",
    "StageLog",
    "TERMINAL_STATUSES",
    "AnalysisJob",
    "JobStatus",
    "TriggerDecision",
    "TriggerState",
]
