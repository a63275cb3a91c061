"""
Service wiring.

``build_services`` assembles every component from a ``WhisprConfig``. A
``memory://`` Redis URL selects the in-process stores, which is what the
tests and single-process demos use; any other URL shares state through
Redis so API and worker processes can run separately.
"""

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from prometheus_client import CollectorRegistry

from .common_tools.coordination_store import (
    CoordinationStore,
    InMemoryCoordinationStore,
    RedisCoordinationStore,
)
from .common_tools.health import HealthChecker, job_queue_check
from .common_tools.llm_tools import AnalysisClient, LLMAnalysisClient, create_provider
from .common_tools.logging import get_logger
from .common_tools.metadata_store import InMemoryMetadataStore, MetadataStore, RedisMetadataStore
from .common_tools.metrics import WhisprMetrics
from .common_tools.redis_tools import RedisKeys, check_redis_connectivity, create_async_redis
from .common_tools.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from .common_tools.whisper_store import InMemoryWhisperStore, RedisWhisperStore, WhisperStore
from .config.settings import WhisprConfig
from .config.tenants import TenantDirectory
from .delivery_agent import DeliveryChannel, DeliveryEngine, RecipientCache, SlackDeliveryChannel
from .ingestion_agent import MetadataIngestor, WebhookIngestor
from .organizer_agent import (
    AnalysisJobProcessor,
    AnalysisJobQueue,
    AnalysisWorkerPool,
    InMemoryJobQueue,
    RedisJobQueue,
    TriggerCoordinator,
)
from .organizer_agent.job_queue import default_backoff_policy
from .pipeline_agent import AgentRegistry, PipelineExecutor, default_registry

logger = get_logger("services")


@dataclass
class WhisprServices:
    config: WhisprConfig
    tenants: TenantDirectory
    metrics: WhisprMetrics
    health: HealthChecker
    coordination_store: CoordinationStore
    metadata_store: MetadataStore
    session_store: SessionStore
    whisper_store: WhisperStore
    job_queue: AnalysisJobQueue
    trigger: TriggerCoordinator
    registry: AgentRegistry
    analysis_client: AnalysisClient
    delivery_channel: DeliveryChannel
    delivery_engine: DeliveryEngine
    executor: PipelineExecutor
    ingestor: MetadataIngestor
    webhooks: WebhookIngestor
    processor: AnalysisJobProcessor
    worker_pool: AnalysisWorkerPool
    redis: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        """Release network clients; safe to call more than once."""
        for resource in (self.analysis_client, self.delivery_channel):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


def build_services(config: WhisprConfig,
                   analysis_client: Optional[AnalysisClient] = None,
                   delivery_channel: Optional[DeliveryChannel] = None,
                   registry: Optional[AgentRegistry] = None,
                   metrics_registry: Optional[CollectorRegistry] = None) -> WhisprServices:
    """
    Assemble the service graph.

    Args:
        config: Loaded configuration
        analysis_client: Overrides the LLM-backed analysis client
        delivery_channel: Overrides the Slack delivery channel
        registry: Overrides the default stage registry
        metrics_registry: Prometheus registry; a private one is created if omitted
    """
    tenants = TenantDirectory(config.tenants)
    metrics = WhisprMetrics(config.service_name, registry=metrics_registry or CollectorRegistry())
    health = HealthChecker(config.service_name)
    keys = RedisKeys(config.redis.key_prefix)

    queue_kwargs = dict(
        max_attempts=config.queue.max_attempts,
        backoff=default_backoff_policy(config.queue.max_attempts, config.queue.backoff_base_ms),
        lease_seconds=config.queue.lease_seconds,
        metrics=metrics,
    )

    redis_client = None
    if config.redis.in_memory:
        coordination_store: CoordinationStore = InMemoryCoordinationStore()
        metadata_store: MetadataStore = InMemoryMetadataStore()
        session_store: SessionStore = InMemorySessionStore()
        whisper_store: WhisperStore = InMemoryWhisperStore()
        job_queue: AnalysisJobQueue = InMemoryJobQueue(**queue_kwargs)
    else:
        redis_client = create_async_redis(config.redis)
        coordination_store = RedisCoordinationStore(redis_client)
        metadata_store = RedisMetadataStore(redis_client, keys)
        session_store = RedisSessionStore(redis_client, keys)
        whisper_store = RedisWhisperStore(redis_client, keys)
        job_queue = RedisJobQueue(redis_client, keys, **queue_kwargs)
        health.add_readiness_check("redis", lambda: check_redis_connectivity(redis_client))
    health.add_readiness_check("job_queue", job_queue_check(job_queue))

    if analysis_client is None:
        analysis_client = LLMAnalysisClient(create_provider(config.llm), metrics=metrics,
                                            temperature=config.llm.temperature,
                                            max_tokens=config.llm.max_tokens)
    if delivery_channel is None:
        delivery_channel = SlackDeliveryChannel(tenants, config.delivery, metrics=metrics)

    trigger = TriggerCoordinator(coordination_store, job_queue, config.batching, keys=keys, metrics=metrics)
    registry = registry or default_registry()
    delivery_engine = DeliveryEngine(delivery_channel, tenants, whisper_store, config.delivery, metrics=metrics,
                                     cache=RecipientCache(config.delivery.recipient_cache_ttl))
    executor = PipelineExecutor(registry, analysis_client, session_store, whisper_store, delivery_engine,
                                config.pipeline, metrics=metrics)
    ingestor = MetadataIngestor(metadata_store, trigger, metrics=metrics)
    webhooks = WebhookIngestor(ingestor, tenants, tolerance_seconds=config.api.signature_tolerance_seconds)
    processor = AnalysisJobProcessor(metadata_store, trigger, executor,
                                     pending_fetch_limit=config.queue.pending_fetch_limit)
    worker_pool = AnalysisWorkerPool(job_queue, processor, config.queue, metrics=metrics)

    logger.info(f"Services built ({'in-memory' if config.redis.in_memory else 'redis'} backend, "
                f"{len(tenants.tenant_ids())} tenants)")

    return WhisprServices(
        config=config,
        tenants=tenants,
        metrics=metrics,
        health=health,
        coordination_store=coordination_store,
        metadata_store=metadata_store,
        session_store=session_store,
        whisper_store=whisper_store,
        job_queue=job_queue,
        trigger=trigger,
        registry=registry,
        analysis_client=analysis_client,
        delivery_channel=delivery_channel,
        delivery_engine=delivery_engine,
        executor=executor,
        ingestor=ingestor,
        webhooks=webhooks,
        processor=processor,
        worker_pool=worker_pool,
        redis=redis_client,
    )
