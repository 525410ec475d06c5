"""
Process settings loaded from environment variables.

Uses Pydantic Settings for type-safe configuration with validation.
All settings can be overridden via environment variables or .env file.
Values set here take precedence over the ``secrets`` section of the
configuration document (see libs.secrets.config.SecretsConfig.from_tree).
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseSettings):
    """
    Process configuration.

    All settings are loaded from environment variables or .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extraneous env vars from broader platform configs
    )

    # Deployment guardrails
    deployment_env: str = Field(
        default="local",
        description="Environment name: local, staging or production",
    )
    secret_allow_env_in_non_local: bool = Field(
        default=False,
        description="Allow the env provider outside local environments (emergency use only)",
    )

    # Secret resolution overrides (None = use the configuration document)
    secrets_default_provider: str | None = Field(
        default=None,
        description="Override for secrets.default_provider",
    )
    secrets_max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Per-provider bound on concurrent fetches",
    )
    secrets_retry_delay_seconds: float | None = Field(
        default=None,
        ge=0,
        le=30,
        description="Delay before the single retry of a transient provider failure",
    )
    secrets_resolve_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Overall deadline for one resolution pass",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    service_name: str = Field(
        default="config-secret-refs",
        description="Service name stamped on every JSON log line",
    )

    @field_validator("deployment_env")
    @classmethod
    def _normalise_env(cls, value: str) -> str:
        return value.strip().lower() or "local"

    @field_validator("secret_allow_env_in_non_local", mode="before")
    @classmethod
    def _parse_truthy(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY_VALUES
        return value


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once; tests call
    ``get_settings.cache_clear()`` after changing the environment.
    """
    return Settings()
