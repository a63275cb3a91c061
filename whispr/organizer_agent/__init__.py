"""Batching trigger, analysis job queue and the worker pool that drains it."""

from .job_queue import AnalysisJobQueue, InMemoryJobQueue, RedisJobQueue
from .trigger_coordinator import TriggerCoordinator
from .analysis_worker import AnalysisJobProcessor, AnalysisWorkerPool

__all__ = [
    "AnalysisJobQueue",
    "InMemoryJobQueue",
    "RedisJobQueue",
    "TriggerCoordinator",
    "AnalysisJobProcessor",
    "AnalysisWorkerPool",
]
