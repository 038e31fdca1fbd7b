"""
Unit Tests for Configuration
Tests for ConfigManager YAML loading and EngineLimits
"""
import pytest
from pathlib import Path
from pydantic import ValidationError

from bulk_audit.core.config import ConfigManager, EngineLimits, Settings


CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


class TestConfigManager:
    """Tests for YAML configuration loading"""

    def test_environment_file_overrides_default(self, tmp_path):
        """<env>.yaml is deep-merged over default.yaml"""
        (tmp_path / "default.yaml").write_text(
            "engine:\n  max_retries: 3\n  default_rpm: 10\n"
        )
        (tmp_path / "staging.yaml").write_text("engine:\n  default_rpm: 30\n")

        config = ConfigManager(env="staging", config_dir=tmp_path)

        assert config.get("engine.default_rpm") == 30
        assert config.get("engine.max_retries") == 3

    def test_env_var_substitution(self, tmp_path, monkeypatch):
        """${VAR} values are read from the environment"""
        monkeypatch.setenv("AUDIT_RPM", "42")
        (tmp_path / "default.yaml").write_text("engine:\n  default_rpm: ${AUDIT_RPM}\n")

        config = ConfigManager(env="development", config_dir=tmp_path)

        assert config.get("engine.default_rpm") == "42"
        assert config.get_engine_limits().default_rpm == 42

    def test_missing_key_returns_default(self, tmp_path):
        """Unknown dotted paths return the default"""
        config = ConfigManager(env="development", config_dir=tmp_path)

        assert config.get("engine.nope", "fallback") == "fallback"
        assert config.get_engine_limits() == EngineLimits()

    def test_invalid_tunable_fails_fast(self, tmp_path):
        """Out-of-range tunables raise at load time"""
        (tmp_path / "default.yaml").write_text("engine:\n  max_retries: 0\n")

        with pytest.raises(ValidationError):
            ConfigManager(env="development", config_dir=tmp_path).get_engine_limits()

    def test_shipped_defaults_match_model_defaults(self):
        """config/default.yaml agrees with EngineLimits defaults"""
        limits = ConfigManager(env="production", config_dir=CONFIG_DIR).get_engine_limits()
        assert limits == EngineLimits()

    def test_shipped_test_profile(self):
        """config/test.yaml disables retry delays"""
        limits = ConfigManager(env="test", config_dir=CONFIG_DIR).get_engine_limits()

        assert limits.retry_base_delay_seconds == 0
        assert limits.max_retries == 3


class TestEngineLimits:
    """Tests for engine tunables"""

    def test_retry_delay_backs_off_exponentially(self):
        """Delay doubles per attempt"""
        limits = EngineLimits(retry_base_delay_seconds=1.0, retry_backoff_multiplier=2)

        assert [limits.retry_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_retry_delay_is_capped(self):
        """Delay never exceeds the configured maximum"""
        limits = EngineLimits(retry_max_delay_seconds=60)
        assert limits.retry_delay(20) == 60

    def test_zero_base_delay(self):
        assert EngineLimits(retry_base_delay_seconds=0).retry_delay(3) == 0


class TestSettings:
    """Tests for deployment settings"""

    def test_backends_from_environment(self, monkeypatch):
        """Backends are selected by environment variables"""
        monkeypatch.setenv("QUEUE_BACKEND", "memory")
        monkeypatch.setenv("STORE_BACKEND", "memory")

        settings = Settings()

        assert settings.queue_backend == "memory"
        assert settings.store_backend == "memory"
        assert settings.campaigns_table == "bulk_audit_campaigns"
