"""
Configuration Management
Loads deployment settings from the environment and engine tunables from YAML
"""
import yaml
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Deployment settings loaded from environment"""

    environment: str = "development"
    debug: bool = True

    # API Settings
    api_prefix: str = "/api/v1"

    # Redis/Queue
    redis_url: str = "redis://localhost:6379"
    queue_backend: str = "redis"  # redis | memory

    # Campaign storage
    store_backend: str = "supabase"  # supabase | memory
    supabase_url: str = ""
    supabase_service_key: str = ""
    campaigns_table: str = "bulk_audit_campaigns"

    # AI audit service
    audit_service_url: str = "http://localhost:8001"
    audit_service_api_key: str = ""

    # Run the dispatcher inside the API process
    dispatcher_enabled: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


class EngineLimits(BaseModel):
    """
    Tunables for the campaign engine.

    Loaded from the `engine:` section of the YAML config.
    """

    # Retry policy
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)

    # Campaign defaults
    default_rpm: int = Field(default=10, ge=1)
    default_failure_threshold_percent: float = Field(default=20.0, ge=0, le=100)
    min_sample_size: int = Field(default=5, ge=1)
    max_jobs_per_campaign: int = Field(default=10000, ge=1)

    # Dispatcher
    max_workers_per_campaign: int = Field(default=3, ge=1)
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    recovery_check_interval_seconds: float = Field(default=60.0, ge=0)
    visibility_timeout_seconds: float = Field(default=300.0, gt=0)
    max_consecutive_errors: int = Field(default=10, ge=1)

    # Audit execution
    audit_timeout_seconds: float = Field(default=120.0, gt=0)
    supported_audio_formats: List[str] = Field(
        default=["wav", "mp3", "webm", "ogg", "m4a"]
    )

    def retry_delay(self, attempts: int) -> float:
        """Exponential backoff before re-queueing a retryable failure."""
        delay = self.retry_base_delay_seconds * (self.retry_backoff_multiplier ** attempts)
        return min(delay, self.retry_max_delay_seconds)


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    def __init__(self, env: str = "development", config_dir: Path = None):
        self.env = env
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        # Load default config if exists
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        # Load environment-specific config
        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        # Substitute environment variables
        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                config[key] = os.getenv(env_var, value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("engine.max_retries") -> 3
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_engine_limits(self) -> EngineLimits:
        """Validate the engine section into EngineLimits"""
        return EngineLimits(**(self.get("engine", {}) or {}))


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_engine_limits() -> EngineLimits:
    return ConfigManager(env=get_settings().environment).get_engine_limits()
