from tenacity import (
    retry, stop_after_attempt, wait_exponential, wait_fixed, wait_random,
    retry_if_exception_type, retry_if_not_exception_type, RetryCallState
)
from dataclasses import dataclass, field
from typing import Dict, List, Type, Optional, Callable, Any
import asyncio
import logging
import os
from enum import Enum

import aiohttp
import redis
import yaml
from prometheus_client import Counter, Histogram, CollectorRegistry

from .metrics import get_global_registry


class RetryStrategy(Enum):
    """Available retry strategies."""
    EXPONENTIAL_BACKOFF = "exponential"
    FIXED_DELAY = "fixed"


# Exception names usable in retry_config.yaml
_EXCEPTION_NAMES: Dict[str, Type[BaseException]] = {
    'ConnectionError': ConnectionError,
    'TimeoutError': TimeoutError,
    'asyncio.TimeoutError': asyncio.TimeoutError,
    'OSError': OSError,
    'ValueError': ValueError,
    'TypeError': TypeError,
    'aiohttp.ClientError': aiohttp.ClientError,
    'redis.RedisError': redis.RedisError,
    'Exception': Exception,
}


@dataclass
class RetryPolicy:
    """Retry policy configuration shared by tenacity retries and the job queue backoff."""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_max: float = 1.0
    retry_on_exceptions: List[Type[BaseException]] = field(
        default_factory=lambda: [ConnectionError, TimeoutError, aiohttp.ClientError]
    )
    no_retry_on_exceptions: List[Type[BaseException]] = field(default_factory=lambda: [ValueError, TypeError])
    metrics_enabled: bool = True
    log_attempts: bool = True
    log_level: int = logging.WARNING

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), without jitter."""
        if self.strategy == RetryStrategy.FIXED_DELAY:
            return min(self.base_delay, self.max_delay)
        delay = self.base_delay * (self.exponential_base ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def backoff_ms(self, attempt: int) -> int:
        return int(self.backoff_seconds(attempt) * 1000)


class RetryMetrics:
    """Retry metrics collection."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        registry = registry or get_global_registry()
        self.retry_attempts_total = Counter(
            'whispr_retry_attempts_total',
            'Total number of retry attempts',
            ['service', 'operation', 'attempt_number'],
            registry=registry
        )
        self.retry_failure_total = Counter(
            'whispr_retry_failure_total',
            'Total number of operations that failed after all retries',
            ['service', 'operation', 'final_error_type'],
            registry=registry
        )
        self.retry_delay_seconds = Histogram(
            'whispr_retry_delay_seconds',
            'Time spent waiting between retry attempts',
            ['service', 'operation'],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            registry=registry
        )


_metrics = RetryMetrics()

CONFIG_FILE_PATH = os.path.normpath(
    os.path.join(os.path.dirname(__file__), os.pardir, 'config', 'retry_config.yaml')
)


def _parse_exceptions(names: Optional[List[Any]]) -> List[Type[BaseException]]:
    result = []
    for name in names or []:
        if isinstance(name, str):
            if name not in _EXCEPTION_NAMES:
                raise ValueError(f"Unknown exception name in retry config: {name}")
            result.append(_EXCEPTION_NAMES[name])
        else:
            result.append(name)
    return result


def policy_from_dict(raw: Dict[str, Any]) -> RetryPolicy:
    """Build a RetryPolicy from a YAML mapping, keeping defaults for absent keys."""
    defaults = RetryPolicy()
    return RetryPolicy(
        max_attempts=raw.get('max_attempts', defaults.max_attempts),
        strategy=RetryStrategy(raw.get('strategy', defaults.strategy.value)),
        base_delay=raw.get('base_delay', defaults.base_delay),
        max_delay=raw.get('max_delay', defaults.max_delay),
        exponential_base=raw.get('exponential_base', defaults.exponential_base),
        jitter=raw.get('jitter', defaults.jitter),
        jitter_max=raw.get('jitter_max', defaults.jitter_max),
        retry_on_exceptions=_parse_exceptions(raw.get('retry_on_exceptions')) or defaults.retry_on_exceptions,
        no_retry_on_exceptions=_parse_exceptions(raw.get('no_retry_on_exceptions')) or defaults.no_retry_on_exceptions,
        metrics_enabled=raw.get('metrics_enabled', defaults.metrics_enabled),
        log_attempts=raw.get('log_attempts', defaults.log_attempts),
        log_level=logging.getLevelName(raw['log_level']) if 'log_level' in raw else defaults.log_level,
    )


def load_retry_policies(path: str = CONFIG_FILE_PATH) -> Dict[str, RetryPolicy]:
    """Load named retry policies from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to load retry config {path}: {e}")
        return {}
    raw_policies = data.get('retry_policies', data) if isinstance(data, dict) else {}
    return {name: policy_from_dict(raw or {}) for name, raw in raw_policies.items()}


_RETRY_POLICIES = load_retry_policies()


def get_retry_policy(policy_name: str) -> RetryPolicy:
    policy = _RETRY_POLICIES.get(policy_name)
    if policy is None:
        raise ValueError(f"Retry policy '{policy_name}' not found")
    return policy


def retry_with_policy(policy_name: str, service: str = 'default', operation: str = 'default',
                      policy: Optional[RetryPolicy] = None) -> Callable:
    """Decorator applying a named RetryPolicy; works for sync and async callables."""
    policy = policy or get_retry_policy(policy_name)
    logger = logging.getLogger(__name__)

    if policy.strategy == RetryStrategy.FIXED_DELAY:
        wait = wait_fixed(policy.base_delay)
    else:
        wait = wait_exponential(multiplier=policy.base_delay, max=policy.max_delay, exp_base=policy.exponential_base)
    if policy.jitter:
        wait = wait + wait_random(0, policy.jitter_max)

    retry_condition = (
        retry_if_exception_type(tuple(policy.retry_on_exceptions))
        & retry_if_not_exception_type(tuple(policy.no_retry_on_exceptions))
    )

    def _before_sleep(retry_state: RetryCallState):
        attempt = retry_state.attempt_number
        err = retry_state.outcome.exception() if retry_state.outcome.failed else None
        if policy.log_attempts:
            logger.log(policy.log_level,
                       f"[{service}/{operation}] attempt {attempt} failed: {err}, "
                       f"sleeping {retry_state.next_action.sleep:.2f}s")
        if policy.metrics_enabled:
            _metrics.retry_attempts_total.labels(service, operation, attempt).inc()
            _metrics.retry_delay_seconds.labels(service, operation).observe(retry_state.next_action.sleep)

    def _retry_error_callback(retry_state: RetryCallState):
        exc = retry_state.outcome.exception()
        if policy.metrics_enabled:
            _metrics.retry_failure_total.labels(service, operation, type(exc).__name__).inc()
        raise exc

    return retry(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait,
        retry=retry_condition,
        before_sleep=_before_sleep,
        retry_error_callback=_retry_error_callback,
        reraise=True
    )


__all__ = [
    'RetryStrategy', 'RetryPolicy', 'RetryMetrics', 'policy_from_dict',
    'load_retry_policies', 'get_retry_policy', 'retry_with_policy'
]
