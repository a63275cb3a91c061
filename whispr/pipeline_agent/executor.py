"""
Pipeline executor: runs the registry's stage sequence for one tenant batch.

Stage failures (analysis call errors, unparseable responses, too little
data) are recovered locally with the stage's fallback result and never abort
the run. Delivery failures are recorded but leave the analysis result
intact. Only an unexpected error outside a stage boundary fails the session,
and even then every whisper already produced is persisted first.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from ..common_tools.errors import AnalysisResponseError
from ..common_tools.llm_tools import AnalysisClient, AnalysisRequest
from ..common_tools.logging import get_logger, log_processing_error
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import (
    MetadataRecord,
    SessionStatus,
    Whisper,
    WhisperContent,
    WhisperMetadata,
)
from ..common_tools.session_store import SessionRecorder, SessionStore
from ..common_tools.whisper_store import WhisperStore
from ..config.settings import PipelineConfig
from .agent_registry import AgentDescriptor, AgentRegistry
from .stages import get_stage_definition, parse_stage_response

WORKFLOW_AGENT = "workflow"
DELIVERY_AGENT = "delivery"


@dataclass
class WorkflowState:
    """Mutable state threaded through the stages of one run."""
    session_id: str
    tenant_id: str
    metadata: List[MetadataRecord]
    results: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    whispers: List[Whisper] = field(default_factory=list)
    completed: bool = False


@dataclass
class RunResult:
    success: bool
    session_id: str
    whisper_count: int = 0
    whispers: List[Whisper] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    agent_sequence: List[str] = field(default_factory=list)
    status: Optional[SessionStatus] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "whisper_count": self.whisper_count,
            "whisper_ids": [w.id for w in self.whispers],
            "errors": self.errors,
            "agent_sequence": self.agent_sequence,
            "status": self.status.value if self.status else None,
            "error": self.error,
        }


class PipelineExecutor:
    """Runs analysis stages, persists whispers and hands them to delivery."""

    def __init__(self, registry: AgentRegistry, analysis_client: AnalysisClient,
                 session_store: SessionStore, whisper_store: WhisperStore,
                 delivery_engine, config: Optional[PipelineConfig] = None,
                 metrics: Optional[WhisprMetrics] = None):
        self.registry = registry
        self.client = analysis_client
        self.session_store = session_store
        self.whisper_store = whisper_store
        self.delivery_engine = delivery_engine
        self.config = config or PipelineConfig()
        self.metrics = metrics
        self.logger = get_logger("pipeline_executor")

    async def run(self, tenant_id: str, metadata: Iterable[MetadataRecord],
                  session_id: Optional[str] = None) -> RunResult:
        """
        Execute one end-to-end run for a tenant.

        Args:
            tenant_id: Tenant the batch belongs to
            metadata: The batch; records are not modified
            session_id: Optional caller-chosen session id

        Returns:
            RunResult; ``success`` is False only for workflow-fatal errors
        """
        recorder = await SessionRecorder.start(self.session_store, tenant_id, session_id)
        state = WorkflowState(session_id=recorder.session_id, tenant_id=tenant_id, metadata=list(metadata))
        persisted: Set[str] = set()
        sequence: List[AgentDescriptor] = []

        try:
            await recorder.log_step(WORKFLOW_AGENT, "WORKFLOW_START", {"record_count": len(state.metadata)})

            available_types = {r.metadata_type for r in state.metadata if r.metadata_type}
            sequence = self.registry.build_sequence(available_types)
            compatible_ids = self.registry.compatible_stage_ids(available_types)

            for descriptor in self.registry.incompatible_stages(available_types):
                missing = [t for t in descriptor.required_metadata_types if t not in available_types]
                await self._skip_stage(descriptor, state, recorder, {"reason": "missing_metadata_types",
                                                                     "missing": missing})

            await recorder.set_sequence([d.stage_id for d in sequence])
            await recorder.log_step(WORKFLOW_AGENT, "SEQUENCE_BUILT", {
                "available_types": sorted(available_types),
                "agent_sequence": [d.stage_id for d in sequence],
            })

            for descriptor in sequence:
                await self._run_stage(descriptor, state, compatible_ids, recorder)
                if descriptor.is_terminal:
                    await self._persist_candidates(descriptor, state, recorder, persisted)

            await self._deliver_all(state, recorder)

            status = SessionStatus.COMPLETED_WITH_ERRORS if state.errors else SessionStatus.COMPLETED
            await recorder.log_step(WORKFLOW_AGENT, "WORKFLOW_COMPLETE", {
                "status": status.value,
                "whisper_count": len(state.whispers),
                "error_count": len(state.errors),
            })
            await recorder.finalize(status)
            state.completed = True
            if self.metrics:
                self.metrics.increment_session(status.value)

            return RunResult(
                success=True,
                session_id=state.session_id,
                whisper_count=len(state.whispers),
                whispers=list(state.whispers),
                errors=list(state.errors),
                agent_sequence=[d.stage_id for d in sequence],
                status=status,
            )
        except Exception as e:
            return await self._fail_workflow(e, state, recorder, persisted, sequence)

    async def _fail_workflow(self, error: Exception, state: WorkflowState, recorder: SessionRecorder,
                             persisted: Set[str], sequence: List[AgentDescriptor]) -> RunResult:
        log_processing_error(self.logger, error, "pipeline_run", tenant_id=state.tenant_id,
                             session_id=state.session_id, recovery_action="finalize_session_failed")
        if self.metrics:
            self.metrics.increment_error(type(error).__name__, component="pipeline")

        for whisper in state.whispers:
            if whisper.id in persisted:
                continue
            try:
                await self.whisper_store.save(whisper)
                persisted.add(whisper.id)
            except Exception as save_error:
                self.logger.error(f"Could not persist whisper {whisper.id} after workflow failure: {save_error}",
                                  tenant_id=state.tenant_id, session_id=state.session_id)

        state.errors.append({"agent": WORKFLOW_AGENT, "error": str(error)})
        try:
            if not recorder.session.is_finalized:
                recorder.session.errors.append({"agent": WORKFLOW_AGENT, "error": str(error)})
                recorder.session.whisper_ids = [w.id for w in state.whispers if w.id in persisted]
                await recorder.finalize(SessionStatus.FAILED, error=str(error))
        except Exception as finalize_error:
            self.logger.error(f"Could not finalize failed session {state.session_id}: {finalize_error}",
                              tenant_id=state.tenant_id, session_id=state.session_id)
        if self.metrics:
            self.metrics.increment_session(SessionStatus.FAILED.value)

        return RunResult(
            success=False,
            session_id=state.session_id,
            whisper_count=len(state.whispers),
            whispers=list(state.whispers),
            errors=list(state.errors),
            agent_sequence=[d.stage_id for d in sequence],
            status=SessionStatus.FAILED,
            error=str(error),
        )

    async def _skip_stage(self, descriptor: AgentDescriptor, state: WorkflowState,
                          recorder: SessionRecorder, data: Dict[str, Any]) -> None:
        state.results[descriptor.output_key] = self.registry.fallback_for(descriptor.stage_id)
        await recorder.log_step(descriptor.stage_id, "STAGE_SKIPPED", data)
        if self.metrics:
            self.metrics.record_stage_outcome(descriptor.stage_id, "skipped")

    async def _run_stage(self, descriptor: AgentDescriptor, state: WorkflowState,
                         compatible_ids: Set[str], recorder: SessionRecorder) -> None:
        stage_id = descriptor.stage_id
        if not self.registry.is_runnable(descriptor, compatible_ids, state.results):
            await self._skip_stage(descriptor, state, recorder, {"reason": "dependencies_unavailable",
                                                                 "depends_on": list(descriptor.depends_on_stages)})
            return

        start_time = time.time()
        accepted = descriptor.accepted_types
        records = [r for r in state.metadata if r.metadata_type in accepted]
        await recorder.log_step(stage_id, "START", {"record_count": len(records)})

        volume = descriptor.volume(records)
        if volume < descriptor.min_records:
            result = self.registry.fallback_for(stage_id)
            outcome = "fallback"
            await recorder.log_step(stage_id, "INSUFFICIENT_DATA", {
                "record_count": volume,
                "min_records": descriptor.min_records,
            }, level="warning")
        else:
            result, outcome = await self._analyze(descriptor, records, state, recorder)

        state.results[descriptor.output_key] = result

        duration = time.time() - start_time
        await recorder.record_stage(stage_id, int(duration * 1000), self._preview(result))
        await recorder.log_step(stage_id, "COMPLETE", {"outcome": outcome,
                                                       "duration_ms": int(duration * 1000)})
        if self.metrics:
            self.metrics.observe_stage_duration(stage_id, duration)
            self.metrics.record_stage_outcome(stage_id, outcome)

    async def _analyze(self, descriptor: AgentDescriptor, records: List[MetadataRecord],
                       state: WorkflowState, recorder: SessionRecorder):
        """One analysis call; returns (result, outcome) and never raises for stage-level failures."""
        stage_id = descriptor.stage_id
        definition = get_stage_definition(stage_id)
        request = AnalysisRequest(
            system_instructions=definition.system_instructions,
            task_instructions=definition.task_instructions,
            serialized_inputs=self._serialize_inputs(descriptor, records, state),
            stage_id=stage_id,
            metadata={"tenant_id": state.tenant_id, "session_id": state.session_id},
        )

        raw: Optional[str] = None
        try:
            raw = await self.client.analyze(request)
            return parse_stage_response(stage_id, raw, definition.response_model), "ok"
        except AnalysisResponseError as e:
            error_entry = {"agent": stage_id, "error": str(e), "raw_preview": (e.raw_response or "")[:200]}
        except Exception as e:
            # Any analysis call failure is a stage error
            self.logger.warning(f"Analysis call failed for stage {stage_id}: {e}",
                                tenant_id=state.tenant_id, session_id=state.session_id,
                                extra_fields={"error_type": type(e).__name__})
            error_entry = {"agent": stage_id, "error": f"{type(e).__name__}: {e}",
                           "raw_preview": (raw or "")[:200]}

        state.errors.append(error_entry)
        await recorder.add_error(stage_id, error_entry["error"], raw_preview=error_entry["raw_preview"])
        if self.metrics:
            self.metrics.increment_error("stage_error", component=stage_id)
        return self.registry.fallback_for(stage_id), "error"

    def _serialize_inputs(self, descriptor: AgentDescriptor, records: List[MetadataRecord],
                          state: WorkflowState) -> str:
        payload: Dict[str, Any] = {}
        for key in descriptor.input_keys:
            payload[key] = state.results.get(key, {})

        if records and descriptor.input_keys:
            type_counts: Dict[str, int] = {}
            for record in records:
                type_counts[record.metadata_type] = type_counts.get(record.metadata_type, 0) + 1
            payload["metadata_summary"] = {"record_count": len(records), "types": type_counts}
        elif records:
            limit = self.config.max_serialized_records
            payload["record_count"] = len(records)
            payload["records"] = [r.for_analysis() for r in records[-limit:]]

        return json.dumps(payload, default=str, indent=2)

    def _preview(self, result: Any) -> str:
        return json.dumps(result, default=str)[:self.config.preview_chars] + "..."

    async def _persist_candidates(self, descriptor: AgentDescriptor, state: WorkflowState,
                                  recorder: SessionRecorder, persisted: Set[str]) -> None:
        """Turn terminal-stage candidates into pending whispers and store them before delivery."""
        result = state.results.get(descriptor.output_key) or {}
        candidates = result.get("whispers", []) if isinstance(result, dict) else []
        model_name = getattr(self.client, "model_name", None)

        new_whispers = []
        for candidate in candidates:
            content = candidate.get("content") or {}
            whisper = Whisper(
                tenant_id=state.tenant_id,
                title=candidate["title"],
                category=candidate.get("category", "improvement"),
                priority=candidate.get("priority", 3),
                content=WhisperContent(
                    message=content.get("message", ""),
                    suggested_actions=content.get("suggested_actions", []),
                    rationale=content.get("rationale"),
                ),
                metadata=WhisperMetadata(
                    session_id=state.session_id,
                    generated_by=descriptor.stage_id,
                    model_name=model_name,
                    confidence=candidate.get("confidence"),
                    timeframe=candidate.get("timeframe"),
                ),
            )
            state.whispers.append(whisper)
            new_whispers.append(whisper)

        for whisper in new_whispers:
            await self.whisper_store.save(whisper)
            persisted.add(whisper.id)

        if new_whispers:
            await recorder.add_whispers([w.id for w in new_whispers])
        await recorder.log_step(descriptor.stage_id, "WHISPERS_CREATED", {
            "count": len(new_whispers),
            "whisper_ids": [w.id for w in new_whispers],
        })

    async def _deliver_all(self, state: WorkflowState, recorder: SessionRecorder) -> None:
        if not state.whispers:
            return
        await recorder.log_step(DELIVERY_AGENT, "DELIVERING", {"whisper_count": len(state.whispers)})

        for whisper in state.whispers:
            result = await self.delivery_engine.deliver(whisper)
            if result.success:
                await recorder.log_step(DELIVERY_AGENT, "DELIVERED", {
                    "whisper_id": whisper.id,
                    "channel_used": result.channel_used,
                    "target_type": result.target_type,
                    "message_ref": result.message_ref,
                })
            else:
                error_entry = {"agent": DELIVERY_AGENT, "error": result.error or "delivery failed",
                               "whisper_id": whisper.id}
                state.errors.append(error_entry)
                await recorder.add_error(DELIVERY_AGENT, error_entry["error"], whisper_id=whisper.id)
