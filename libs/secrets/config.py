"""
Typed model of the ``secrets`` configuration section.

Example section::

    secrets:
      default_provider: vault
      max_concurrency: 8
      providers:
        vault:
          location: https://vault.internal:8200
          ttl_seconds: 600
          options: {mount_point: kv}
        aws:
          location: eu-west-1
        gcp:
          location: my-project
          credentials_file: /etc/gcp/sa.json
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from libs.secrets.references import PROVIDER_PATTERN

if TYPE_CHECKING:
    from config.settings import Settings


class ProviderConfig(BaseModel):
    """Settings for one provider id."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: str | None = Field(
        default=None,
        description="Implementation id (env, vault, aws, gcp); defaults to the provider id",
    )
    location: str | None = Field(
        default=None,
        description="Vault URL, AWS region, GCP project or dotenv path",
    )
    ttl_seconds: float = Field(default=3600, ge=0)
    credentials_file: str | None = None
    request_timeout_seconds: float = Field(default=10, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)


class SecretsConfig(BaseModel):
    """The ``secrets`` section: provider table plus resolution tuning."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_provider: str | None = None
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)
    max_concurrency: int | None = Field(default=None, ge=1)
    retry_delay_seconds: float = Field(default=0.25, ge=0)
    resolve_timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("providers")
    @classmethod
    def _check_provider_ids(cls, providers: dict[str, ProviderConfig]) -> dict[str, ProviderConfig]:
        for provider_id in providers:
            if not PROVIDER_PATTERN.fullmatch(provider_id):
                raise ValueError(f"invalid provider id '{provider_id}'")
        return providers

    @model_validator(mode="after")
    def _check_default_provider(self) -> SecretsConfig:
        if self.default_provider is not None and self.default_provider not in self.providers:
            raise ValueError(f"default_provider '{self.default_provider}' is not configured")
        return self

    @classmethod
    def from_tree(cls, tree: Mapping[str, Any], settings: Settings | None = None) -> SecretsConfig:
        """
        Build from the ``secrets`` key of a raw configuration tree.

        Environment settings that are set override the document values.

        Raises:
            pydantic.ValidationError: Section is malformed
        """
        section = dict(tree.get("secrets") or {})
        if settings is not None:
            overrides = {
                "default_provider": settings.secrets_default_provider,
                "max_concurrency": settings.secrets_max_concurrency,
                "retry_delay_seconds": settings.secrets_retry_delay_seconds,
                "resolve_timeout_seconds": settings.secrets_resolve_timeout_seconds,
            }
            section.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(section)
