"""
Configuration management for the whispr services.

Values come from an optional YAML file and are then overridden by any
environment variables that are set. Batch size and analysis interval are
independent parameters; neither is derived from the other.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from ..common_tools.errors import ConfigurationError
from .tenants import TenantProfile


@dataclass
class RedisConfig:
    """Redis configuration for coordination state, queue and document storage."""
    url: str = "redis://localhost:6379"
    database: int = 0
    password: Optional[str] = None
    key_prefix: str = "whispr"
    socket_timeout: int = 5
    socket_connect_timeout: int = 5
    health_check_interval: int = 30

    def __post_init__(self):
        parsed = urlparse(self.url)
        if parsed.scheme not in ('redis', 'rediss', 'memory'):
            raise ValueError("Redis URL must use redis://, rediss:// or memory:// scheme")
        if not self.key_prefix:
            raise ValueError("Redis key_prefix cannot be empty")

    @property
    def in_memory(self) -> bool:
        return urlparse(self.url).scheme == 'memory'


@dataclass
class BatchingConfig:
    """Trigger thresholds: analyse after ``batch_size`` records or ``analysis_interval_ms``."""
    batch_size: int = 100
    analysis_interval_ms: int = 300000
    grace_seconds: int = 60

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        if self.analysis_interval_ms < 0:
            raise ValueError("analysis_interval_ms cannot be negative")
        if self.grace_seconds < 0:
            raise ValueError("grace_seconds cannot be negative")

    @property
    def marker_ttl_seconds(self) -> int:
        return math.ceil(self.analysis_interval_ms / 1000) + self.grace_seconds


@dataclass
class QueueConfig:
    """Analysis job queue and worker pool settings."""
    concurrency: int = 2
    max_attempts: int = 3
    backoff_base_ms: int = 5000
    lease_seconds: int = 900
    poll_interval: float = 1.0
    reaper_interval: float = 30.0
    pending_fetch_limit: int = 10000

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        if self.lease_seconds < 1:
            raise ValueError("lease_seconds must be positive")


@dataclass
class PipelineConfig:
    """Stage execution settings."""
    min_stage_records: int = 10
    preview_chars: int = 200
    max_serialized_records: int = 2000

    def __post_init__(self):
        if self.min_stage_records < 0:
            raise ValueError("min_stage_records cannot be negative")
        if self.preview_chars < 1:
            raise ValueError("preview_chars must be positive")


@dataclass
class LLMConfig:
    """Language-model provider configuration for stage analysis."""
    provider: str = "openai"
    model_name: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: Optional[str] = None
    ollama_base_url: str = "http://localhost:11434"
    max_tokens: int = 2000
    temperature: float = 0.2
    timeout_seconds: int = 60

    def __post_init__(self):
        if self.provider not in ('openai', 'ollama'):
            raise ValueError("LLM provider must be 'openai' or 'ollama'")
        if self.provider == 'openai' and not self.api_key:
            logging.warning("No OpenAI API key provided - stage analysis calls will fail")
        if self.temperature < 0.0 or self.temperature > 2.0:
            raise ValueError("LLM temperature must be between 0.0 and 2.0")
        if self.max_tokens < 1:
            raise ValueError("LLM max_tokens must be positive")


@dataclass
class DeliveryConfig:
    """Whisper delivery settings."""
    fallback_channel: str = "general"
    recipient_cache_ttl: int = 3600
    slack_api_url: str = "https://slack.com/api"
    request_timeout_seconds: int = 15

    def __post_init__(self):
        if not self.fallback_channel:
            raise ValueError("fallback_channel cannot be empty")
        if self.recipient_cache_ttl < 0:
            raise ValueError("recipient_cache_ttl cannot be negative")


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    signature_tolerance_seconds: int = 300

    def __post_init__(self):
        if self.port < 1 or self.port > 65535:
            raise ValueError("port must be between 1 and 65535")


@dataclass
class MonitoringConfig:
    """Monitoring and logging configuration."""
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None

    def __post_init__(self):
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(f"log_level must be one of {valid_log_levels}")
        if self.log_format not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")


@dataclass
class WhisprConfig:
    """Main configuration for the whispr services."""
    redis: RedisConfig = field(default_factory=RedisConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    tenants: List[TenantProfile] = field(default_factory=list)

    service_name: str = "whispr"


_SECTIONS = {
    'redis': RedisConfig,
    'batching': BatchingConfig,
    'queue': QueueConfig,
    'pipeline': PipelineConfig,
    'llm': LLMConfig,
    'delivery': DeliveryConfig,
    'api': ApiConfig,
    'monitoring': MonitoringConfig,
}

# (section, key, env var, converter)
_ENV_OVERRIDES = [
    ('redis', 'url', 'REDIS_URL', str),
    ('redis', 'database', 'REDIS_DATABASE', int),
    ('redis', 'password', 'REDIS_PASSWORD', str),
    ('redis', 'key_prefix', 'REDIS_KEY_PREFIX', str),
    ('batching', 'batch_size', 'BATCH_SIZE', int),
    ('batching', 'analysis_interval_ms', 'ANALYSIS_INTERVAL_MS', int),
    ('batching', 'grace_seconds', 'TRIGGER_GRACE_SECONDS', int),
    ('queue', 'concurrency', 'WORKER_CONCURRENCY', int),
    ('queue', 'max_attempts', 'JOB_MAX_ATTEMPTS', int),
    ('queue', 'backoff_base_ms', 'JOB_BACKOFF_BASE_MS', int),
    ('queue', 'lease_seconds', 'JOB_LEASE_SECONDS', int),
    ('pipeline', 'min_stage_records', 'MIN_STAGE_RECORDS', int),
    ('llm', 'provider', 'LLM_PROVIDER', str),
    ('llm', 'model_name', 'LLM_MODEL', str),
    ('llm', 'api_key', 'OPENAI_API_KEY', str),
    ('llm', 'base_url', 'OPENAI_BASE_URL', str),
    ('llm', 'ollama_base_url', 'OLLAMA_BASE_URL', str),
    ('llm', 'temperature', 'LLM_TEMPERATURE', float),
    ('llm', 'max_tokens', 'LLM_MAX_TOKENS', int),
    ('delivery', 'fallback_channel', 'FALLBACK_CHANNEL', str),
    ('delivery', 'recipient_cache_ttl', 'RECIPIENT_CACHE_TTL', int),
    ('api', 'host', 'API_HOST', str),
    ('api', 'port', 'API_PORT', int),
    ('monitoring', 'log_level', 'LOG_LEVEL', str),
    ('monitoring', 'log_format', 'LOG_FORMAT', str),
]


class ConfigManager:
    """Configuration manager for the whispr services."""

    def __init__(self, config_file: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        self.config_file = config_file
        self.environ = os.environ if environ is None else environ
        self.config: Optional[WhisprConfig] = None

    def load_config(self) -> WhisprConfig:
        """Load configuration from the YAML file and environment variables."""
        config_data: Dict[str, Any] = {}

        if self.config_file and Path(self.config_file).exists():
            try:
                with open(self.config_file, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Cannot read {self.config_file}: {e}") from e
            if not isinstance(config_data, dict):
                raise ConfigurationError(f"{self.config_file} must contain a mapping at the top level")

        config_data = self._merge_configs(config_data, self._load_from_environment())

        self.config = WhisprConfig(
            tenants=[TenantProfile.from_dict(t) for t in config_data.get('tenants') or []],
            **{name: cls(**(config_data.get(name) or {})) for name, cls in _SECTIONS.items()},
            **{k: v for k, v in config_data.items() if k not in _SECTIONS and k != 'tenants'}
        )
        return self.config

    def _load_from_environment(self) -> Dict[str, Any]:
        """Collect overrides for environment variables that are actually set."""
        env_config: Dict[str, Dict[str, Any]] = {}
        for section, key, env_var, convert in _ENV_OVERRIDES:
            raw = self.environ.get(env_var)
            if raw is None or raw == "":
                continue
            try:
                env_config.setdefault(section, {})[key] = convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {env_var}: {raw!r}") from e
        return env_config

    def _merge_configs(self, file_config: Dict, env_config: Dict) -> Dict:
        merged = file_config.copy()
        for key, value in env_config.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return merged

    def get_config(self) -> WhisprConfig:
        if self.config is None:
            return self.load_config()
        return self.config


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(os.getenv('WHISPR_CONFIG_PATH', 'config.yaml'))
    return _config_manager


def get_config() -> WhisprConfig:
    """Get the current configuration."""
    return get_config_manager().get_config()
