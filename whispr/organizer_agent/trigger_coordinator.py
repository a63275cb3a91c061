"""
Batching trigger for tenant analysis runs.

Each arriving metadata record bumps an atomic per-tenant counter. Crossing
``batch_size`` submits an immediate job; otherwise the first record of a
cycle sets a TTL marker and submits a job delayed by the analysis interval.
Any later record in the same cycle finds the marker and does nothing more.
Duplicate submissions under concurrent calls are absorbed by the queue's
per-tenant dedupe key.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from ..common_tools.coordination_store import CoordinationStore
from ..common_tools.logging import get_logger
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import TriggerDecision, TriggerState
from ..common_tools.redis_tools import RedisKeys
from ..config.settings import BatchingConfig
from .job_queue import AnalysisJobQueue

_STORE_ERRORS = (RedisError, OSError, ConnectionError)


class TriggerCoordinator:
    """Decides, per arriving record, whether and when to enqueue an analysis job."""

    def __init__(self, store: CoordinationStore, queue: AnalysisJobQueue,
                 config: Optional[BatchingConfig] = None, keys: Optional[RedisKeys] = None,
                 metrics: Optional[WhisprMetrics] = None):
        self.store = store
        self.queue = queue
        self.config = config or BatchingConfig()
        self.keys = keys or RedisKeys()
        self.metrics = metrics
        self.logger = get_logger("trigger_coordinator")

    async def record_arrived(self, tenant_id: str) -> TriggerDecision:
        """
        Account for one new record. Never raises.

        Returns:
            The decision taken for this record
        """
        count_key = self.keys.pending_count(tenant_id)
        marker_key = self.keys.schedule_marker(tenant_id)

        try:
            count = await self.store.incr(count_key)
            if count >= self.config.batch_size:
                await self.store.delete(marker_key, count_key)
                await self.queue.enqueue(tenant_id, delay_ms=0)
                decision = TriggerDecision.THRESHOLD
                self.logger.info(
                    f"Batch threshold reached for tenant {tenant_id} ({count} records), immediate job submitted",
                    tenant_id=tenant_id,
                    extra_fields={"event_type": "trigger_decision", "decision": decision.value, "count": count}
                )
            elif await self.store.set_if_absent(marker_key, self.config.marker_ttl_seconds):
                await self.queue.enqueue(tenant_id, delay_ms=self.config.analysis_interval_ms)
                decision = TriggerDecision.SCHEDULED
                self.logger.info(
                    f"Analysis scheduled for tenant {tenant_id} in {self.config.analysis_interval_ms}ms",
                    tenant_id=tenant_id,
                    extra_fields={"event_type": "trigger_decision", "decision": decision.value, "count": count}
                )
            else:
                decision = TriggerDecision.ALREADY_SCHEDULED
        except _STORE_ERRORS as e:
            decision = await self._degrade(tenant_id, e)

        if self.metrics:
            self.metrics.increment_trigger_decision(decision.value)
        return decision

    async def _degrade(self, tenant_id: str, error: Exception) -> TriggerDecision:
        """Coordination state is unavailable: always schedule a delayed job."""
        self.logger.warning(
            f"Coordination store unavailable for tenant {tenant_id}, scheduling analysis unconditionally: {error}",
            tenant_id=tenant_id,
            extra_fields={"event_type": "trigger_degraded", "error_type": type(error).__name__}
        )
        if self.metrics:
            self.metrics.increment_error(type(error).__name__, component="trigger")
        try:
            await self.queue.enqueue(tenant_id, delay_ms=self.config.analysis_interval_ms)
        except _STORE_ERRORS as queue_error:
            self.logger.error(
                f"Job queue also unavailable for tenant {tenant_id}; records stay pending "
                f"until the next arrival: {queue_error}",
                tenant_id=tenant_id,
                extra_fields={"event_type": "trigger_enqueue_failed", "error_type": type(queue_error).__name__}
            )
            if self.metrics:
                self.metrics.increment_error(type(queue_error).__name__, component="job_queue")
        return TriggerDecision.DEGRADED

    async def reset(self, tenant_id: str) -> bool:
        """
        Clear the counter and marker; called when a worker picks up the tenant's job.

        Never raises. A stale counter only makes the next threshold fire early.

        Returns:
            False if the coordination store was unavailable
        """
        try:
            await self.store.delete(self.keys.pending_count(tenant_id), self.keys.schedule_marker(tenant_id))
        except _STORE_ERRORS as e:
            self.logger.warning(
                f"Could not reset trigger state for tenant {tenant_id}, continuing the run: {e}",
                tenant_id=tenant_id,
                extra_fields={"event_type": "trigger_reset_failed", "error_type": type(e).__name__}
            )
            if self.metrics:
                self.metrics.increment_error(type(e).__name__, component="trigger")
            return False
        return True

    async def get_state(self, tenant_id: str) -> TriggerState:
        count = await self.store.get_int(self.keys.pending_count(tenant_id))
        remaining = await self.store.ttl(self.keys.schedule_marker(tenant_id))
        scheduled_until = None
        if remaining is not None and remaining >= 0:
            scheduled_until = datetime.now(timezone.utc) + timedelta(seconds=remaining)
        return TriggerState(tenant_id=tenant_id, pending_count=count, scheduled_until=scheduled_until)
