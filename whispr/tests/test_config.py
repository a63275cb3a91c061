"""Tests for configuration loading and validation."""

import pytest
import yaml

from whispr.common_tools.errors import ConfigurationError
from whispr.config.settings import BatchingConfig, ConfigManager, QueueConfig, RedisConfig
from whispr.config.tenants import TenantDirectory, TenantProfile


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "redis": {"url": "memory://"},
        "batching": {"batch_size": 25, "analysis_interval_ms": 60000},
        "llm": {"provider": "ollama", "model_name": "llama3"},
        "tenants": [
            {"tenant_id": "acme", "integrations": ["Slack", "GitHub"], "fallback_channel": "ops",
             "unknown_setting": True},
        ],
    }))
    return str(path)


class TestConfigManager:

    def test_defaults_without_file(self):
        config = ConfigManager(None, environ={}).load_config()

        assert config.batching.batch_size == 100
        assert config.batching.analysis_interval_ms == 300000
        assert config.queue.max_attempts == 3
        assert config.pipeline.min_stage_records == 10
        assert config.tenants == []

    def test_yaml_values(self, config_file):
        config = ConfigManager(config_file, environ={}).load_config()

        assert config.redis.in_memory
        assert config.batching.batch_size == 25
        assert config.llm.provider == "ollama"
        [tenant] = config.tenants
        assert tenant.integrations == ["slack", "github"]
        assert tenant.fallback_channel == "ops"

    def test_environment_overrides_file(self, config_file):
        environ = {"BATCH_SIZE": "5", "ANALYSIS_INTERVAL_MS": "1000", "LLM_MODEL": "", "WORKER_CONCURRENCY": "4"}

        config = ConfigManager(config_file, environ=environ).load_config()

        assert config.batching.batch_size == 5
        assert config.batching.analysis_interval_ms == 1000
        assert config.llm.model_name == "llama3"
        assert config.queue.concurrency == 4

    def test_invalid_environment_value(self):
        with pytest.raises(ValueError, match="BATCH_SIZE"):
            ConfigManager(None, environ={"BATCH_SIZE": "lots"}).load_config()

    @pytest.mark.parametrize("content", ["redis: [unclosed", "- just\n- a list\n"])
    def test_malformed_file(self, tmp_path, content):
        path = tmp_path / "config.yaml"
        path.write_text(content)

        with pytest.raises(ConfigurationError):
            ConfigManager(str(path), environ={}).load_config()

    def test_get_config_caches(self, config_file):
        manager = ConfigManager(config_file, environ={})

        assert manager.get_config() is manager.get_config()


class TestValidation:

    def test_batch_size_and_interval_are_independent(self):
        config = BatchingConfig(batch_size=1, analysis_interval_ms=0)

        assert config.marker_ttl_seconds == config.grace_seconds

    def test_marker_ttl_rounds_up(self):
        assert BatchingConfig(analysis_interval_ms=1500, grace_seconds=60).marker_ttl_seconds == 62

    @pytest.mark.parametrize("kwargs", [{"batch_size": 0}, {"analysis_interval_ms": -1}])
    def test_invalid_batching(self, kwargs):
        with pytest.raises(ValueError):
            BatchingConfig(**kwargs)

    def test_redis_scheme(self):
        with pytest.raises(ValueError):
            RedisConfig(url="http://localhost")
        assert not RedisConfig().in_memory

    def test_queue_concurrency(self):
        with pytest.raises(ValueError):
            QueueConfig(concurrency=0)


class TestTenants:

    def test_signing_secret_lookup(self):
        profile = TenantProfile(tenant_id="acme", slack_signing_secret="s", github_webhook_secret="g")

        assert profile.signing_secret_for("slack") == "s"
        assert profile.signing_secret_for("github") == "g"
        assert profile.signing_secret_for("jira") is None

    def test_empty_tenant_id(self):
        with pytest.raises(ValueError):
            TenantProfile(tenant_id="")

    def test_directory_lookup(self):
        directory = TenantDirectory([TenantProfile(tenant_id="b"), TenantProfile(tenant_id="a")])

        assert directory.tenant_ids() == ["a", "b"]
        assert directory.get("missing") is None
