"""
Tests for libs/secrets/config.py - the ``secrets`` configuration section.
"""

import pytest
from pydantic import ValidationError

from config.settings import Settings
from libs.secrets.config import ProviderConfig, SecretsConfig


class TestProviderConfig:
    @pytest.mark.unit()
    def test_defaults(self) -> None:
        config = ProviderConfig()

        assert config.backend is None
        assert config.ttl_seconds == 3600
        assert config.request_timeout_seconds == 10
        assert config.options == {}

    @pytest.mark.unit()
    def test_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            ProviderConfig(ttl=60)

    @pytest.mark.unit()
    @pytest.mark.parametrize(
        "kwargs", [{"ttl_seconds": -1}, {"request_timeout_seconds": 0}]
    )
    def test_rejects_invalid_bounds(self, kwargs) -> None:
        with pytest.raises(ValidationError):
            ProviderConfig(**kwargs)

    @pytest.mark.unit()
    def test_is_immutable(self) -> None:
        config = ProviderConfig(location="eu-west-1")

        with pytest.raises(ValidationError):
            config.location = "us-east-1"


class TestSecretsConfig:
    @pytest.mark.unit()
    def test_from_tree(self) -> None:
        tree = {
            "secrets": {
                "default_provider": "vault",
                "max_concurrency": 4,
                "providers": {
                    "vault": {"location": "https://vault:8200", "ttl_seconds": 600},
                    "team-aws": {"backend": "aws", "location": "eu-west-1"},
                },
            },
            "db": {"password": "${vault:db/password}"},
        }

        config = SecretsConfig.from_tree(tree)

        assert config.default_provider == "vault"
        assert config.max_concurrency == 4
        assert config.providers["vault"].ttl_seconds == 600
        assert config.providers["vault"].backend is None
        assert config.providers["team-aws"].backend == "aws"
        assert config.retry_delay_seconds == 0.25
        assert config.resolve_timeout_seconds is None

    @pytest.mark.unit()
    def test_missing_section_is_empty(self) -> None:
        config = SecretsConfig.from_tree({"db": {}})

        assert config.providers == {}
        assert config.default_provider is None

    @pytest.mark.unit()
    def test_default_provider_must_be_configured(self) -> None:
        with pytest.raises(ValidationError, match="default_provider 'gcp' is not configured"):
            SecretsConfig(default_provider="gcp", providers={"vault": ProviderConfig()})

    @pytest.mark.unit()
    @pytest.mark.parametrize("provider_id", ["Vault", "my vault", "", "a.b"])
    def test_provider_ids_follow_reference_grammar(self, provider_id: str) -> None:
        with pytest.raises(ValidationError, match="invalid provider id"):
            SecretsConfig(providers={provider_id: ProviderConfig()})

    @pytest.mark.unit()
    def test_settings_override_document(self) -> None:
        tree = {
            "secrets": {
                "default_provider": "vault",
                "retry_delay_seconds": 1.0,
                "providers": {"vault": {}, "aws": {}},
            }
        }
        settings = Settings(
            secrets_default_provider="aws",
            secrets_max_concurrency=2,
            secrets_resolve_timeout_seconds=15,
        )

        config = SecretsConfig.from_tree(tree, settings)

        assert config.default_provider == "aws"
        assert config.max_concurrency == 2
        assert config.resolve_timeout_seconds == 15
        # Unset settings leave document values alone
        assert config.retry_delay_seconds == 1.0

    @pytest.mark.unit()
    def test_settings_override_is_validated(self) -> None:
        tree = {"secrets": {"providers": {"vault": {}}}}

        with pytest.raises(ValidationError):
            SecretsConfig.from_tree(tree, Settings(secrets_default_provider="gcp"))
