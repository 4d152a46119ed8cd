from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ethosync.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the orchestration service."""

    # Control-plane stores
    database_url: str = env_field(
        "postgresql://localhost:5432/ethosync", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field(
        "/tmp/ethosync",
        "SHARED_FS_ROOT",
        description="Directory the in-memory store persists its state under",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (in-process fallbacks, test resets).",
    )

    # Identity
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str | None = env_field(None, "JWT_ISSUER")
    jwt_audience: str | None = env_field(None, "JWT_AUDIENCE")
    secret_key: str | None = env_field(
        None,
        "SECRET_KEY",
        description="Key material for encrypting workflow credentials at rest",
    )

    # Cloud platform
    platform_api_token: str | None = env_field(None, "PLATFORM_API_TOKEN")
    platform_api_base: str = env_field(
        "https://api.northflank.com", "PLATFORM_API_BASE"
    )
    platform_template_id: str = env_field("sunday", "PLATFORM_TEMPLATE_ID")
    platform_region: str = env_field("asia-southeast", "PLATFORM_REGION")
    platform_timeout_seconds: float = env_field(30.0, "PLATFORM_TIMEOUT_SECONDS")
    ollama_project_id: str | None = env_field(None, "OLLAMA_PROJECT_ID")
    internal_ollama_url: str = env_field(
        "http://ollama.internal:11434", "INTERNAL_OLLAMA_URL"
    )

    # Template run arguments
    template_database_url: str | None = env_field(None, "TEMPLATE_DATABASE_URL")
    google_oauth_client_id: str | None = env_field(None, "GOOGLE_OAUTH_CLIENT_ID")
    google_oauth_client_secret: str | None = env_field(
        None, "GOOGLE_OAUTH_CLIENT_SECRET"
    )
    webhook_url: str | None = env_field(None, "WEBHOOK_URL")
    webhook_auth_token: str | None = env_field(None, "WEBHOOK_AUTH_TOKEN")

    # Gating service
    gating_service_url: str = env_field("http://localhost:8001", "GATING_SERVICE_URL")
    gating_timeout_seconds: float = env_field(10.0, "GATING_TIMEOUT_SECONDS")

    # Embedding service
    ollama_url: str | None = env_field(None, "OLLAMA_URL")
    embedding_model: str = env_field("nomic-embed-text", "EMBEDDING_MODEL")
    embedding_dimensions: int = env_field(768, "EMBEDDING_DIMENSIONS")
    embedding_timeout_seconds: float = env_field(30.0, "EMBEDDING_TIMEOUT_SECONDS")

    # Provisioning monitor
    provision_poll_interval_seconds: float = env_field(
        30.0, "PROVISION_POLL_INTERVAL_SECONDS"
    )
    provision_max_wait_seconds: float = env_field(
        900.0,
        "PROVISION_MAX_WAIT_SECONDS",
        description="Ceiling on the total time a provisioning monitor may poll",
    )
    provision_lock_ttl_seconds: float = env_field(
        1200.0,
        "PROVISION_LOCK_TTL_SECONDS",
        description="Lifetime of the per-tenant provisioning lock before takeover is allowed",
    )
    workflow_api_key_initial_delay_seconds: float = env_field(
        30.0, "WORKFLOW_API_KEY_INITIAL_DELAY_SECONDS"
    )
    workflow_api_key_max_retries: int = env_field(5, "WORKFLOW_API_KEY_MAX_RETRIES")
    workflow_api_key_retry_base_seconds: float = env_field(
        15.0, "WORKFLOW_API_KEY_RETRY_BASE_SECONDS"
    )
    workflow_password_prefix: str = env_field("7On", "WORKFLOW_PASSWORD_PREFIX")
    addon_external_access_wait_seconds: float = env_field(
        15.0, "ADDON_EXTERNAL_ACCESS_WAIT_SECONDS"
    )
    addon_resume_wait_seconds: float = env_field(30.0, "ADDON_RESUME_WAIT_SECONDS")

    # Adapter training
    training_job_id: str = env_field("user-lora-training", "TRAINING_JOB_ID")
    training_base_model: str = env_field(
        "TinyLlama/TinyLlama-1.1B-Chat-v1.0", "TRAINING_BASE_MODEL"
    )
    training_output_path: str = env_field("/workspace/adapters", "TRAINING_OUTPUT_PATH")
    training_min_samples: int = env_field(10, "TRAINING_MIN_SAMPLES")
    training_poll_interval_seconds: float = env_field(
        60.0, "TRAINING_POLL_INTERVAL_SECONDS"
    )
    training_max_wait_seconds: float = env_field(7200.0, "TRAINING_MAX_WAIT_SECONDS")

    # Tenant database pools
    tenant_pool_max_size: int = env_field(10, "TENANT_POOL_MAX_SIZE")
    tenant_pool_idle_seconds: float = env_field(30.0, "TENANT_POOL_IDLE_SECONDS")
    tenant_connect_timeout_seconds: int = env_field(10, "TENANT_CONNECT_TIMEOUT_SECONDS")
    tenant_statement_timeout_ms: int = env_field(10000, "TENANT_STATEMENT_TIMEOUT_MS")
    tenant_pool_wait_seconds: float = env_field(
        15.0,
        "TENANT_POOL_WAIT_SECONDS",
        description="How long a request waits for a pooled connection before failing",
    )

    # Request limits
    provision_rate_limit_per_minute: int = env_field(
        5, "PROVISION_RATE_LIMIT_PER_MINUTE"
    )
    webhook_rate_limit_per_minute: int = env_field(120, "WEBHOOK_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to call the API",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("platform_api_base", "gating_service_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("ollama_url", "jwt_secret", "webhook_auth_token", "platform_api_token")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("embedding_dimensions")
    @classmethod
    def _validate_dimensions(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("EMBEDDING_DIMENSIONS must be positive")
        return value

    @field_validator("provision_poll_interval_seconds", "training_poll_interval_seconds")
    @classmethod
    def _validate_poll_interval(cls, value: float) -> float:
        if value < 0:
            raise ValueError("poll intervals must not be negative")
        return value

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    def missing_template_env(self) -> list[str]:
        """Names of template arguments that are not configured."""

        required = {
            "TEMPLATE_DATABASE_URL": self.template_database_url,
            "GOOGLE_OAUTH_CLIENT_ID": self.google_oauth_client_id,
            "GOOGLE_OAUTH_CLIENT_SECRET": self.google_oauth_client_secret,
            "WEBHOOK_URL": self.webhook_url,
            "WEBHOOK_AUTH_TOKEN": self.webhook_auth_token,
        }
        return [name for name, value in required.items() if not value]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
