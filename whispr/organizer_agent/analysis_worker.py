"""
Analysis workers: claim tenant jobs from the queue and run the pipeline.

The pool runs a fixed number of asyncio worker tasks, so different tenants
are analysed concurrently while each job's stages stay sequential. A reaper
task returns jobs whose lease expired (worker crash) to the queue.
"""

import asyncio
import time
from typing import List, Optional

from redis.exceptions import RedisError

from ..common_tools.errors import JobQueueError
from ..common_tools.logging import get_logger, log_processing_error
from ..common_tools.metadata_store import MetadataStore
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import AnalysisJob
from ..config.settings import QueueConfig
from ..ingestion_agent.analyzers import build_enrichment_records
from ..pipeline_agent.executor import PipelineExecutor, RunResult
from .job_queue import AnalysisJobQueue
from .trigger_coordinator import TriggerCoordinator


class AnalysisJobProcessor:
    """Turns one claimed job into one pipeline run over the tenant's pending metadata."""

    def __init__(self, metadata_store: MetadataStore, trigger: TriggerCoordinator,
                 executor: PipelineExecutor, pending_fetch_limit: int = 10000):
        self.metadata_store = metadata_store
        self.trigger = trigger
        self.executor = executor
        self.pending_fetch_limit = pending_fetch_limit
        self.logger = get_logger("analysis_worker")

    async def process(self, job: AnalysisJob) -> Optional[RunResult]:
        """
        Run the pipeline for a job's tenant.

        Returns:
            The run result, or None when the tenant had no pending metadata
        """
        tenant_id = job.tenant_id
        await self.trigger.reset(tenant_id)

        records = await self.metadata_store.fetch_pending(tenant_id, limit=self.pending_fetch_limit)
        if not records:
            self.logger.info(f"No pending metadata for tenant {tenant_id}, nothing to analyse",
                             tenant_id=tenant_id, job_id=job.job_id)
            return None
        records.sort(key=lambda r: r.timestamp)
        consumed_ids = [r.id for r in records]

        enrichment = build_enrichment_records(tenant_id, records)
        result = await self.executor.run(tenant_id, records + enrichment)

        marked = await self.metadata_store.mark_processed(tenant_id, consumed_ids)
        self.logger.info(
            f"Analysis run {result.session_id} for tenant {tenant_id} finished "
            f"({result.status.value if result.status else 'unknown'}, {marked}/{len(consumed_ids)} records marked)",
            tenant_id=tenant_id, session_id=result.session_id, job_id=job.job_id,
            extra_fields={"event_type": "analysis_run_finished", "whisper_count": result.whisper_count,
                          "records_marked": marked, "records_consumed": len(consumed_ids)}
        )
        return result


class AnalysisWorkerPool:
    """Bounded pool of asyncio workers polling the job queue."""

    def __init__(self, queue: AnalysisJobQueue, processor: AnalysisJobProcessor,
                 config: Optional[QueueConfig] = None, metrics: Optional[WhisprMetrics] = None):
        self.queue = queue
        self.processor = processor
        self.config = config or QueueConfig()
        self.metrics = metrics
        self.logger = get_logger("worker_pool")
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def run_job(self, job: AnalysisJob) -> bool:
        """Process one claimed job and acknowledge or fail it; returns True on success."""
        start_time = time.time()
        try:
            await self.processor.process(job)
        except Exception as e:
            log_processing_error(self.logger, e, "analysis_job", tenant_id=job.tenant_id,
                                 recovery_action="job_retry_or_dead_letter",
                                 extra_data={"job_id": job.job_id, "attempts": job.attempts})
            if self.metrics:
                self.metrics.increment_error(type(e).__name__, component="worker")
            await self.queue.fail(job, f"{type(e).__name__}: {e}")
            return False

        acknowledged = await self.queue.complete(job)
        self.logger.log_job_event("processed", job.job_id, job.tenant_id,
                                  status="completed" if acknowledged else "lease_lost",
                                  attempts=job.attempts,
                                  execution_time_ms=int((time.time() - start_time) * 1000))
        return True

    async def poll_once(self) -> bool:
        """Claim and run a single job if one is due; returns whether a job ran."""
        job = await self.queue.claim()
        if job is None:
            return False
        await self.run_job(job)
        return True

    async def _worker_loop(self, worker_id: int):
        self.logger.info(f"Analysis worker {worker_id} started")
        while self._running and not self._shutdown_event.is_set():
            try:
                ran = await self.poll_once()
            except (RedisError, OSError, JobQueueError) as e:
                self.logger.error(f"Worker {worker_id} polling error: {e}")
                if self.metrics:
                    self.metrics.increment_error(type(e).__name__, component="worker")
                ran = False
            if not ran:
                await self._sleep(self.config.poll_interval)
        self.logger.info(f"Analysis worker {worker_id} stopped")

    async def _reaper_loop(self):
        while self._running and not self._shutdown_event.is_set():
            try:
                await self.queue.requeue_expired()
                await self.queue.stats()
            except (RedisError, OSError, JobQueueError) as e:
                self.logger.error(f"Lease reaper error: {e}")
            await self._sleep(self.config.reaper_interval)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def start(self):
        if self._running:
            return
        self._running = True
        self._shutdown_event.clear()
        self._tasks = [asyncio.create_task(self._worker_loop(i)) for i in range(self.config.concurrency)]
        self._tasks.append(asyncio.create_task(self._reaper_loop()))
        self.logger.info(f"Worker pool started with {self.config.concurrency} workers")

    async def shutdown(self):
        """Stop polling and wait for in-flight jobs to finish."""
        self.logger.info("Shutting down worker pool")
        self._running = False
        self._shutdown_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Worker pool shutdown complete")

    async def run(self):
        """Run until cancelled or shut down."""
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()
