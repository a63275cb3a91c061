"""
Prometheus metrics for the whispr ingestion, pipeline and delivery services.

Every component receives a ``WhisprMetrics`` instance; tests pass a private
``CollectorRegistry`` so collectors never leak between test cases.
"""

import os
import threading
import time
from typing import Dict, Optional, List, Any

from prometheus_client import (  # type: ignore
    CollectorRegistry,
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST
)

_GLOBAL_REGISTRY = CollectorRegistry()

_registry_lock = threading.Lock()


class WhisprMetrics:
    """Centralized metrics collector for whispr services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector for a service.

        Args:
            service_name: Name of the service (used as label value)
            registry: Prometheus registry (uses global if None)
        """
        self.service_name = service_name
        self.registry = registry or _GLOBAL_REGISTRY
        self._metrics: Dict[str, Any] = {}

        self._init_standard_metrics()

    def _init_standard_metrics(self):
        self.metadata_ingested = self._get_or_create_counter(
            name='whispr_metadata_ingested_total',
            description='Metadata records accepted by ingestion',
            labels=['service', 'metadata_type']
        )

        self.trigger_decisions = self._get_or_create_counter(
            name='whispr_trigger_decisions_total',
            description='Batching trigger decisions by outcome',
            labels=['service', 'decision']
        )

        self.jobs_total = self._get_or_create_counter(
            name='whispr_analysis_jobs_total',
            description='Analysis job lifecycle events',
            labels=['service', 'event']
        )

        self.errors_total = self._get_or_create_counter(
            name='whispr_errors_total',
            description='Total errors by component and type',
            labels=['service', 'component', 'error_type']
        )

        self.stage_outcomes = self._get_or_create_counter(
            name='whispr_stage_outcomes_total',
            description='Pipeline stage outcomes',
            labels=['service', 'stage', 'outcome']
        )

        self.stage_duration = self._get_or_create_histogram(
            name='whispr_stage_duration_seconds',
            description='Time spent in each pipeline stage',
            labels=['service', 'stage'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
        )

        self.external_call_duration = self._get_or_create_histogram(
            name='whispr_external_call_duration_seconds',
            description='Duration of external service calls',
            labels=['service', 'target', 'operation'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
        )

        self.sessions_total = self._get_or_create_counter(
            name='whispr_sessions_total',
            description='Pipeline sessions by terminal status',
            labels=['service', 'status']
        )

        self.deliveries_total = self._get_or_create_counter(
            name='whispr_deliveries_total',
            description='Whisper delivery attempts by target and result',
            labels=['service', 'target_type', 'result']
        )

        self.queue_size = self._get_or_create_gauge(
            name='whispr_job_queue_size',
            description='Current number of jobs by queue state',
            labels=['service', 'state']
        )

        self.service_info = self._get_or_create_info(
            name='whispr_service',
            description='Information about the whispr service'
        )
        self.service_info.info({
            'service': self.service_name,
            'version': os.environ.get('WHISPR_VERSION', 'unknown')
        })

    def _get_or_create_counter(self, name: str, description: str,
                               labels: Optional[List[str]] = None) -> Counter:
        with _registry_lock:
            if name in self._metrics:
                return self._metrics[name]
            try:
                counter = Counter(name, description, labels or [], registry=self.registry)
                self._metrics[name] = counter
                return counter
            except ValueError:
                # Already registered by another service instance
                return self.registry._names_to_collectors[name]

    def _get_or_create_histogram(self, name: str, description: str,
                                 labels: Optional[List[str]] = None,
                                 buckets: Optional[List[float]] = None) -> Histogram:
        with _registry_lock:
            if name in self._metrics:
                return self._metrics[name]
            bucket_list = buckets if buckets is not None else Histogram.DEFAULT_BUCKETS
            try:
                histogram = Histogram(
                    name,
                    description,
                    labels or [],
                    registry=self.registry,
                    buckets=bucket_list,
                )
                self._metrics[name] = histogram
                return histogram
            except ValueError:
                return self.registry._names_to_collectors[name]

    def _get_or_create_gauge(self, name: str, description: str,
                             labels: Optional[List[str]] = None) -> Gauge:
        with _registry_lock:
            if name in self._metrics:
                return self._metrics[name]
            try:
                gauge = Gauge(name, description, labels or [], registry=self.registry)
                self._metrics[name] = gauge
                return gauge
            except ValueError:
                return self.registry._names_to_collectors[name]

    def _get_or_create_info(self, name: str, description: str) -> Info:
        with _registry_lock:
            if name in self._metrics:
                return self._metrics[name]
            try:
                info = Info(name, description, registry=self.registry)
                self._metrics[name] = info
                return info
            except ValueError:
                # Info collectors register under the '<name>_info' sample name
                return self.registry._names_to_collectors[f"{name}_info"]

    def increment_ingested(self, metadata_type: str, count: int = 1):
        self.metadata_ingested.labels(service=self.service_name, metadata_type=metadata_type).inc(count)

    def increment_trigger_decision(self, decision: str):
        self.trigger_decisions.labels(service=self.service_name, decision=decision).inc()

    def increment_job_event(self, event: str):
        self.jobs_total.labels(service=self.service_name, event=event).inc()

    def increment_error(self, error_type: str, component: str = "general", count: int = 1):
        """Increment error counter."""
        self.errors_total.labels(
            service=self.service_name, component=component, error_type=error_type
        ).inc(count)

    def record_stage_outcome(self, stage: str, outcome: str):
        self.stage_outcomes.labels(service=self.service_name, stage=stage, outcome=outcome).inc()

    def observe_stage_duration(self, stage: str, duration: float):
        self.stage_duration.labels(service=self.service_name, stage=stage).observe(duration)

    def observe_external_call(self, target: str, operation: str, duration: float):
        self.external_call_duration.labels(
            service=self.service_name,
            target=target,
            operation=operation
        ).observe(duration)

    def increment_session(self, status: str):
        self.sessions_total.labels(service=self.service_name, status=status).inc()

    def increment_delivery(self, target_type: str, result: str):
        self.deliveries_total.labels(
            service=self.service_name, target_type=target_type, result=result
        ).inc()

    def set_queue_size(self, state: str, size: int):
        self.queue_size.labels(service=self.service_name, state=state).set(size)

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


class ExternalCallTimer:
    """Context manager for timing external calls."""

    def __init__(self, metrics: WhisprMetrics, target: str, operation: str = "default"):
        self.metrics = metrics
        self.target = target
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.metrics.observe_external_call(self.target, self.operation, time.time() - self.start_time)


def get_global_registry() -> CollectorRegistry:
    """Get the global Prometheus registry."""
    return _GLOBAL_REGISTRY


__all__ = [
    "WhisprMetrics",
    "ExternalCallTimer",
    "get_global_registry",
]
