from .settings import (
    ApiConfig,
    BatchingConfig,
    ConfigManager,
    DeliveryConfig,
    LLMConfig,
    MonitoringConfig,
    PipelineConfig,
    QueueConfig,
    RedisConfig,
    WhisprConfig,
    get_config,
    get_config_manager,
)
from .tenants import TenantDirectory, TenantProfile

__all__ = [
    "ApiConfig",
    "BatchingConfig",
    "ConfigManager",
    "DeliveryConfig",
    "LLMConfig",
    "MonitoringConfig",
    "PipelineConfig",
    "QueueConfig",
    "RedisConfig",
    "WhisprConfig",
    "get_config",
    "get_config_manager",
    "TenantDirectory",
    "TenantProfile",
]
