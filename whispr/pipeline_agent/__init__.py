"""Registry-driven analysis pipeline."""

from .agent_registry import AgentDescriptor, AgentRegistry, default_registry
from .stages import STAGE_CATALOGUE, StageDefinition, parse_stage_response
from .executor import PipelineExecutor, RunResult, WorkflowState

__all__ = [
    "AgentDescriptor",
    "AgentRegistry",
    "default_registry",
    "STAGE_CATALOGUE",
    "StageDefinition",
    "parse_stage_response",
    "PipelineExecutor",
    "RunResult",
    "WorkflowState",
]
