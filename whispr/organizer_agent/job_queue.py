"""
AnalysisJobQueue: delayed, per-tenant deduplicated work queue for analysis runs.

Jobs are keyed by tenant id. While a job for a tenant is waiting, further
enqueues for that tenant never add a second job: the waiting job keeps the
earliest due time requested. A claimed job is leased; if the lease expires
before it is completed or failed, the job is redelivered (at-least-once).
Each claim carries a fresh lease token, and completing or failing a job is a
no-op for a worker whose lease has been taken over. Failed jobs are retried
with exponential backoff and move to an observable dead set once their
attempts are exhausted.
"""

import asyncio
import time
import uuid
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import WatchError

from ..common_tools.errors import JobQueueError
from ..common_tools.logging import get_logger
from ..common_tools.metrics import WhisprMetrics
from ..common_tools.models import AnalysisJob, JobStatus
from ..common_tools.redis_tools import RedisKeys
from ..common_tools.retry_framework import RetryPolicy, RetryStrategy


def default_backoff_policy(max_attempts: int = 3, backoff_base_ms: int = 5000) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
        base_delay=backoff_base_ms / 1000.0,
        max_delay=3600.0,
        jitter=False,
    )


class AnalysisJobQueue:
    """Base class holding the retry/dead-letter policy shared by queue backends."""

    def __init__(self, max_attempts: int = 3, backoff: Optional[RetryPolicy] = None,
                 lease_seconds: int = 900, metrics: Optional[WhisprMetrics] = None):
        self.max_attempts = max_attempts
        self.backoff = backoff or default_backoff_policy(max_attempts)
        self.lease_seconds = lease_seconds
        self.metrics = metrics
        self.logger = get_logger("job_queue")

    async def enqueue(self, tenant_id: str, delay_ms: int = 0,
                      now: Optional[float] = None) -> AnalysisJob:
        """Submit (or pull forward) the tenant's waiting job."""
        raise NotImplementedError("Subclasses must implement enqueue")

    async def claim(self, now: Optional[float] = None) -> Optional[AnalysisJob]:
        """Lease the earliest due job whose tenant has no active job."""
        raise NotImplementedError("Subclasses must implement claim")

    async def complete(self, job: AnalysisJob) -> bool:
        """Acknowledge a job; returns False if its lease was lost to another claim."""
        raise NotImplementedError("Subclasses must implement complete")

    async def fail(self, job: AnalysisJob, error: str,
                   now: Optional[float] = None) -> Optional[AnalysisJob]:
        """
        Record a failed attempt.

        Returns:
            The job in its new waiting or dead state, or None if its lease was lost
        """
        raise NotImplementedError("Subclasses must implement fail")

    async def requeue_expired(self, now: Optional[float] = None) -> int:
        """Treat active jobs whose lease expired as failed attempts."""
        raise NotImplementedError("Subclasses must implement requeue_expired")

    async def get_waiting(self, tenant_id: str) -> Optional[AnalysisJob]:
        raise NotImplementedError("Subclasses must implement get_waiting")

    async def dead_jobs(self) -> List[AnalysisJob]:
        raise NotImplementedError("Subclasses must implement dead_jobs")

    async def stats(self) -> Dict[str, int]:
        raise NotImplementedError("Subclasses must implement stats")

    def _new_job(self, tenant_id: str, delay_ms: int, now: float) -> AnalysisJob:
        return AnalysisJob.for_tenant(tenant_id, delay_ms=delay_ms,
                                      max_attempts=self.max_attempts, now=now)

    def _lease(self, job: AnalysisJob, now: float) -> AnalysisJob:
        job.status = JobStatus.ACTIVE
        job.lease_expires_at = now + self.lease_seconds
        job.lease_token = uuid.uuid4().hex
        return job

    def _lease_lost(self, job: AnalysisJob, action: str) -> None:
        self.logger.warning(
            f"Job {job.job_id} for tenant {job.tenant_id} is no longer held by this worker, "
            f"{action} ignored",
            tenant_id=job.tenant_id, job_id=job.job_id,
            extra_fields={"event_type": "job_lease_lost", "action": action}
        )
        if self.metrics:
            self.metrics.increment_job_event("lease_lost")

    def _apply_failure(self, job: AnalysisJob, error: str, now: float) -> AnalysisJob:
        """Advance attempts and decide between retry and dead-letter."""
        job.attempts += 1
        job.last_error = error
        job.lease_expires_at = None
        job.lease_token = None
        if job.exhausted:
            job.status = JobStatus.DEAD
            self.logger.log_job_event("dead", job.job_id, job.tenant_id, status=job.status.value,
                                      attempts=job.attempts, error=error)
            if self.metrics:
                self.metrics.increment_job_event("dead")
        else:
            delay_ms = self.backoff.backoff_ms(job.attempts)
            job.status = JobStatus.WAITING
            job.delay_ms = delay_ms
            job.due_at = now + delay_ms / 1000.0
            self.logger.warning(
                f"Job {job.job_id} for tenant {job.tenant_id} failed "
                f"(attempt {job.attempts}/{job.max_attempts}), retrying in {delay_ms}ms: {error}",
                tenant_id=job.tenant_id, job_id=job.job_id
            )
            if self.metrics:
                self.metrics.increment_job_event("retried")
        return job

    def _record(self, event: str, job: AnalysisJob) -> None:
        self.logger.log_job_event(event, job.job_id, job.tenant_id, status=job.status.value,
                                  attempts=job.attempts,
                                  extra_fields={"delay_ms": job.delay_ms})
        if self.metrics:
            self.metrics.increment_job_event(event)


class RedisJobQueue(AnalysisJobQueue):
    """
    Redis-backed queue.

    Waiting jobs live in a sorted set scored by due time, one member per
    tenant; active jobs live in a sorted set scored by lease expiry. Job
    bodies are JSON documents next to each index.
    """

    def __init__(self, client: aioredis.Redis, keys: Optional[RedisKeys] = None, **kwargs):
        super().__init__(**kwargs)
        self.redis = client
        self.keys = keys or RedisKeys()

    def _active_data(self, dedupe_key: str) -> str:
        return self.keys.job_data(f"active:{dedupe_key}")

    def _decode(self, data) -> AnalysisJob:
        try:
            return AnalysisJob.from_json(data)
        except ValidationError as e:
            raise JobQueueError(f"Corrupt job document: {e}") from e

    async def enqueue(self, tenant_id: str, delay_ms: int = 0,
                      now: Optional[float] = None) -> AnalysisJob:
        now = time.time() if now is None else now
        job = self._new_job(tenant_id, delay_ms, now)
        data_key = self.keys.job_data(job.dedupe_key)

        added = await self.redis.zadd(self.keys.jobs_waiting, {job.dedupe_key: job.due_at}, nx=True)
        if added:
            await self.redis.set(data_key, job.to_json())
            self._record("enqueued", job)
            return job

        # LT only ever moves the waiting job earlier
        changed = await self.redis.zadd(self.keys.jobs_waiting, {job.dedupe_key: job.due_at},
                                        lt=True, ch=True)
        existing_data = await self.redis.get(data_key)
        if existing_data is None:
            await self.redis.set(data_key, job.to_json(), nx=True)
            return job

        existing = self._decode(existing_data)
        if changed:
            existing.delay_ms = delay_ms
            existing.due_at = job.due_at
            await self.redis.set(data_key, existing.to_json())
            self._record("rescheduled", existing)
        else:
            self.logger.debug(f"Job for tenant {tenant_id} already due sooner, enqueue ignored")
        return existing

    async def claim(self, now: Optional[float] = None) -> Optional[AnalysisJob]:
        now = time.time() if now is None else now
        candidates = await self.redis.zrangebyscore(self.keys.jobs_waiting, '-inf', now, start=0, num=20)
        for dedupe_key in candidates:
            if await self.redis.zscore(self.keys.jobs_active, dedupe_key) is not None:
                continue
            # Only one claimer can remove the member
            if not await self.redis.zrem(self.keys.jobs_waiting, dedupe_key):
                continue

            data = await self.redis.get(self.keys.job_data(dedupe_key))
            await self.redis.delete(self.keys.job_data(dedupe_key))
            # The body can vanish if a concurrent enqueue replaced it; the tenant id is enough
            job = self._lease(self._decode(data) if data else self._new_job(dedupe_key, 0, now), now)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self.keys.jobs_active, {dedupe_key: job.lease_expires_at})
                pipe.set(self._active_data(dedupe_key), job.to_json())
                await pipe.execute()
            self._record("claimed", job)
            return job
        return None

    async def _release(self, job: AnalysisJob) -> bool:
        """Drop the active entry if ``job`` still holds its lease."""
        active_key = self._active_data(job.dedupe_key)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(active_key)
                data = await pipe.get(active_key)
                if data is None or self._decode(data).lease_token != job.lease_token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.zrem(self.keys.jobs_active, job.dedupe_key)
                pipe.delete(active_key)
                await pipe.execute()
                return True
            except WatchError:
                # Re-claimed or reaped between the read and the delete
                return False

    async def complete(self, job: AnalysisJob) -> bool:
        if not await self._release(job):
            self._lease_lost(job, "completion")
            return False
        job.status = JobStatus.COMPLETED
        job.lease_expires_at = None
        self._record("completed", job)
        return True

    async def fail(self, job: AnalysisJob, error: str,
                   now: Optional[float] = None) -> Optional[AnalysisJob]:
        now = time.time() if now is None else now
        if not await self._release(job):
            self._lease_lost(job, "failure")
            return None

        job = self._apply_failure(job, error, now)
        if job.status == JobStatus.DEAD:
            await self.redis.hset(self.keys.jobs_dead, job.job_id, job.to_json())
            return job

        added = await self.redis.zadd(self.keys.jobs_waiting, {job.dedupe_key: job.due_at}, nx=True)
        if added:
            await self.redis.set(self.keys.job_data(job.dedupe_key), job.to_json())
        else:
            # A newer waiting job already covers this tenant's pending records
            self.logger.info(f"Tenant {job.tenant_id} already has a waiting job, retry merged into it")
        return job

    async def requeue_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = await self.redis.zrangebyscore(self.keys.jobs_active, '-inf', now)
        requeued = 0
        for dedupe_key in expired:
            data = await self.redis.get(self._active_data(dedupe_key))
            if data is None:
                # Index entry without a body; put a fresh job back for the tenant
                if await self.redis.zrem(self.keys.jobs_active, dedupe_key):
                    await self.enqueue(dedupe_key, now=now)
                    requeued += 1
                continue
            if await self.fail(self._decode(data), "lease expired before completion", now=now) is not None:
                requeued += 1
        if requeued:
            self.logger.warning(f"Requeued {requeued} jobs with expired leases")
        return requeued

    async def get_waiting(self, tenant_id: str) -> Optional[AnalysisJob]:
        if await self.redis.zscore(self.keys.jobs_waiting, tenant_id) is None:
            return None
        data = await self.redis.get(self.keys.job_data(tenant_id))
        return self._decode(data) if data else None

    async def dead_jobs(self) -> List[AnalysisJob]:
        values = await self.redis.hvals(self.keys.jobs_dead)
        return [self._decode(v) for v in values]

    async def stats(self) -> Dict[str, int]:
        stats = {
            "waiting": int(await self.redis.zcard(self.keys.jobs_waiting)),
            "active": int(await self.redis.zcard(self.keys.jobs_active)),
            "dead": int(await self.redis.hlen(self.keys.jobs_dead)),
        }
        if self.metrics:
            for state, size in stats.items():
                self.metrics.set_queue_size(state, size)
        return stats


class InMemoryJobQueue(AnalysisJobQueue):
    """In-memory queue with the same semantics, for testing and single-process use."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._waiting: Dict[str, AnalysisJob] = {}
        self._active: Dict[str, AnalysisJob] = {}
        self._dead: Dict[str, AnalysisJob] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, tenant_id: str, delay_ms: int = 0,
                      now: Optional[float] = None) -> AnalysisJob:
        now = time.time() if now is None else now
        async with self._lock:
            job = self._new_job(tenant_id, delay_ms, now)
            existing = self._waiting.get(job.dedupe_key)
            if existing is None:
                self._waiting[job.dedupe_key] = job
                self._record("enqueued", job)
                return job.model_copy()
            if job.due_at < existing.due_at:
                existing.delay_ms = delay_ms
                existing.due_at = job.due_at
                self._record("rescheduled", existing)
            return existing.model_copy()

    async def claim(self, now: Optional[float] = None) -> Optional[AnalysisJob]:
        now = time.time() if now is None else now
        async with self._lock:
            due = sorted(
                (job for key, job in self._waiting.items()
                 if job.due_at <= now and key not in self._active),
                key=lambda j: j.due_at
            )
            if not due:
                return None
            job = self._lease(self._waiting.pop(due[0].dedupe_key), now)
            self._active[job.dedupe_key] = job
            self._record("claimed", job)
            return job.model_copy()

    def _release(self, job: AnalysisJob) -> bool:
        current = self._active.get(job.dedupe_key)
        if current is None or current.lease_token != job.lease_token:
            return False
        del self._active[job.dedupe_key]
        return True

    async def complete(self, job: AnalysisJob) -> bool:
        async with self._lock:
            released = self._release(job)
        if not released:
            self._lease_lost(job, "completion")
            return False
        job.status = JobStatus.COMPLETED
        job.lease_expires_at = None
        self._record("completed", job)
        return True

    async def fail(self, job: AnalysisJob, error: str,
                   now: Optional[float] = None) -> Optional[AnalysisJob]:
        now = time.time() if now is None else now
        async with self._lock:
            if not self._release(job):
                self._lease_lost(job, "failure")
                return None
            job = self._apply_failure(job, error, now)
            if job.status == JobStatus.DEAD:
                self._dead[job.job_id] = job
            elif job.dedupe_key not in self._waiting:
                self._waiting[job.dedupe_key] = job
            return job.model_copy()

    async def requeue_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        async with self._lock:
            expired = [job.model_copy() for job in self._active.values()
                       if job.lease_expires_at is not None and job.lease_expires_at <= now]
        requeued = 0
        for job in expired:
            if await self.fail(job, "lease expired before completion", now=now) is not None:
                requeued += 1
        return requeued

    async def get_waiting(self, tenant_id: str) -> Optional[AnalysisJob]:
        job = self._waiting.get(tenant_id)
        return job.model_copy() if job else None

    async def dead_jobs(self) -> List[AnalysisJob]:
        return [job.model_copy() for job in self._dead.values()]

    async def stats(self) -> Dict[str, int]:
        stats = {"waiting": len(self._waiting), "active": len(self._active), "dead": len(self._dead)}
        if self.metrics:
            for state, size in stats.items():
                self.metrics.set_queue_size(state, size)
        return stats
