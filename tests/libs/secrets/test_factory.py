"""
Tests for libs/secrets/factory.py - backend table and provider registry.

Test Coverage:
    - Backend selection via ProviderConfig.backend (defaulting to the provider id)
    - Location fallbacks (VAULT_ADDR, AWS_REGION, GOOGLE_CLOUD_PROJECT, SECRET_DOTENV_PATH)
    - Production guardrail (EnvSecretManager only allowed in local/test)
    - Construction failures surfaced as ProviderUnconfiguredError
    - ProviderRegistry lazy construction, registration and close

Test Organization:
    - TestCreateSecretManagerBackendSelection: Backend selection logic
    - TestCreateSecretManagerProductionGuardrail: Security guardrails
    - TestCreateSecretManagerErrorHandling: Invalid configurations
    - TestProviderRegistry: Lazy, process-wide instances
"""

import os
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from config.settings import Settings
from libs.secrets import create_secret_manager
from libs.secrets.config import ProviderConfig, SecretsConfig
from libs.secrets.exceptions import ProviderUnconfiguredError, UnknownProviderError
from libs.secrets.factory import BACKENDS, ProviderRegistry

LOCAL = Settings(deployment_env="local", secret_allow_env_in_non_local=False)


class TestCreateSecretManagerBackendSelection:
    """Test backend selection from the provider configuration."""

    @pytest.mark.unit()
    def test_backend_table_is_closed(self) -> None:
        assert sorted(BACKENDS) == ["aws", "env", "gcp", "vault"]

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_provider_id_selects_backend_by_default(
        self, mock_env_backend: MagicMock, tmp_path: Path, monkeypatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SECRET_DOTENV_PATH", raising=False)

        manager = create_secret_manager("env", ProviderConfig(), LOCAL)

        assert manager is mock_env_backend.return_value
        mock_env_backend.assert_called_once_with(dotenv_path=None)

    @pytest.mark.unit()
    @patch("libs.secrets.vault_backend.VaultSecretManager")
    def test_vault_backend_selection(self, mock_vault_backend: MagicMock) -> None:
        config = ProviderConfig(
            backend="vault",
            location="https://vault.internal:8200",
            request_timeout_seconds=3,
            options={"token": "s.abc", "mount_point": "secret"},
        )

        create_secret_manager("corp-vault", config, LOCAL)

        mock_vault_backend.assert_called_once_with(
            vault_url="https://vault.internal:8200",
            token="s.abc",
            mount_point="secret",
            verify=True,
            timeout=3,
        )

    @pytest.mark.unit()
    @patch("libs.secrets.vault_backend.VaultSecretManager")
    def test_vault_falls_back_to_vault_addr(self, mock_vault_backend: MagicMock) -> None:
        with patch.dict(os.environ, {"VAULT_ADDR": "http://localhost:8200"}):
            create_secret_manager("vault", ProviderConfig(credentials_file="/etc/ca.pem"), LOCAL)

        kwargs = mock_vault_backend.call_args.kwargs
        assert kwargs["vault_url"] == "http://localhost:8200"
        assert kwargs["verify"] == "/etc/ca.pem"

    @pytest.mark.unit()
    @patch("libs.secrets.aws_backend.AWSSecretsManager")
    def test_aws_region_resolution(self, mock_aws_backend: MagicMock) -> None:
        create_secret_manager("aws", ProviderConfig(location="ap-south-1"), LOCAL)
        mock_aws_backend.assert_called_with(region_name="ap-south-1", timeout=10)

        with patch.dict(os.environ, {"AWS_REGION": "us-west-2"}):
            create_secret_manager("aws", ProviderConfig(), LOCAL)
        mock_aws_backend.assert_called_with(region_name="us-west-2", timeout=10)

        with patch.dict(os.environ, {"AWS_DEFAULT_REGION": "eu-west-1"}, clear=True):
            create_secret_manager("aws", ProviderConfig(), LOCAL)
        mock_aws_backend.assert_called_with(region_name="eu-west-1", timeout=10)

        with patch.dict(os.environ, {}, clear=True):
            create_secret_manager("aws", ProviderConfig(), LOCAL)
        mock_aws_backend.assert_called_with(region_name="us-east-1", timeout=10)

    @pytest.mark.unit()
    @patch("libs.secrets.gcp_backend.GCPSecretManager")
    def test_gcp_backend_selection(self, mock_gcp_backend: MagicMock) -> None:
        config = ProviderConfig(location="my-project", credentials_file="/etc/gcp/sa.json")

        create_secret_manager("gcp", config, LOCAL)

        mock_gcp_backend.assert_called_once_with(
            project_id="my-project",
            credentials_file="/etc/gcp/sa.json",
            timeout=10,
        )

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_case_insensitive_backend_name(self, mock_env_backend: MagicMock) -> None:
        create_secret_manager("dev", ProviderConfig(backend=" ENV "), LOCAL)

        assert mock_env_backend.called

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_env_backend_loads_default_dotenv_when_present(
        self, mock_env_backend: MagicMock, tmp_path: Path, monkeypatch
    ) -> None:
        """EnvSecretManager loads .env from the working directory when present."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("SECRET_DOTENV_PATH", raising=False)
        dotenv_file = tmp_path / ".env"
        dotenv_file.write_text("TEST_SECRET=1\n", encoding="utf-8")

        create_secret_manager("env", ProviderConfig(), LOCAL)

        assert mock_env_backend.call_args.kwargs.get("dotenv_path") == dotenv_file

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_env_backend_uses_location_then_secret_dotenv_path(
        self, mock_env_backend: MagicMock, tmp_path: Path
    ) -> None:
        located = tmp_path / "located.env"
        located.write_text("A=1\n", encoding="utf-8")
        custom = tmp_path / "custom.env"
        custom.write_text("A=2\n", encoding="utf-8")

        with patch.dict(os.environ, {"SECRET_DOTENV_PATH": str(custom)}):
            create_secret_manager("env", ProviderConfig(location=str(located)), LOCAL)
            assert mock_env_backend.call_args.kwargs["dotenv_path"] == located.resolve()

            create_secret_manager("env", ProviderConfig(), LOCAL)
            assert mock_env_backend.call_args.kwargs["dotenv_path"] == custom.resolve()


class TestCreateSecretManagerProductionGuardrail:
    """Test production guardrail preventing EnvSecretManager in staging/production."""

    @pytest.mark.unit()
    @pytest.mark.parametrize("deployment_env", ["local", "test", "LOCAL"])
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_env_backend_allowed(self, mock_env_backend: MagicMock, deployment_env: str) -> None:
        create_secret_manager("env", ProviderConfig(), Settings(deployment_env=deployment_env))

        assert mock_env_backend.called

    @pytest.mark.unit()
    @pytest.mark.parametrize("deployment_env", ["staging", "production"])
    def test_env_backend_blocked(self, deployment_env: str) -> None:
        settings = Settings(deployment_env=deployment_env, secret_allow_env_in_non_local=False)

        with pytest.raises(ProviderUnconfiguredError) as exc_info:
            create_secret_manager("env", ProviderConfig(), settings)

        assert f"not allowed in {deployment_env}" in str(exc_info.value)
        assert exc_info.value.provider == "env"

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_env_backend_allowed_with_override_flag(
        self, mock_env_backend: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        settings = Settings(deployment_env="production", secret_allow_env_in_non_local="true")

        create_secret_manager("env", ProviderConfig(), settings)

        assert mock_env_backend.called
        assert "override enabled" in caplog.text

    @pytest.mark.unit()
    @patch("libs.secrets.vault_backend.VaultSecretManager")
    def test_vault_allowed_in_production(self, mock_vault_backend: MagicMock) -> None:
        settings = Settings(deployment_env="production")

        create_secret_manager("vault", ProviderConfig(location="https://vault:8200"), settings)

        assert mock_vault_backend.called

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_settings_default_to_process_settings(
        self, mock_env_backend: MagicMock, monkeypatch
    ) -> None:
        monkeypatch.setenv("DEPLOYMENT_ENV", "staging")
        monkeypatch.delenv("SECRET_ALLOW_ENV_IN_NON_LOCAL", raising=False)

        with pytest.raises(ProviderUnconfiguredError, match="not allowed in staging"):
            create_secret_manager("env", ProviderConfig())


class TestCreateSecretManagerErrorHandling:
    """Test invalid configurations."""

    @pytest.mark.unit()
    def test_unknown_backend(self) -> None:
        with pytest.raises(ProviderUnconfiguredError) as exc_info:
            create_secret_manager("keyring", ProviderConfig(), LOCAL)

        message = str(exc_info.value)
        assert "no implementation for backend 'keyring'" in message
        assert "aws, env, gcp, vault" in message

    @pytest.mark.unit()
    def test_missing_vault_url(self) -> None:
        with patch.dict(os.environ, {}, clear=True), pytest.raises(
            ProviderUnconfiguredError, match="Vault URL required"
        ):
            create_secret_manager("vault", ProviderConfig(), LOCAL)

    @pytest.mark.unit()
    def test_missing_gcp_project(self) -> None:
        with patch.dict(os.environ, {}, clear=True), pytest.raises(
            ProviderUnconfiguredError, match="GCP project required"
        ):
            create_secret_manager("gcp", ProviderConfig(), LOCAL)

    @pytest.mark.unit()
    def test_missing_dotenv_file(self, tmp_path: Path) -> None:
        with pytest.raises(ProviderUnconfiguredError, match="does not exist"):
            create_secret_manager(
                "env", ProviderConfig(location=str(tmp_path / "missing.env")), LOCAL
            )

    @pytest.mark.unit()
    def test_missing_sdk(self) -> None:
        def _missing_sdk(config: ProviderConfig, settings: Settings) -> None:
            raise ModuleNotFoundError("No module named 'hvac'", name="hvac")

        with patch.dict(BACKENDS, {"vault": _missing_sdk}), pytest.raises(
            ProviderUnconfiguredError, match="SDK for backend 'vault' is not installed \\(hvac\\)"
        ):
            create_secret_manager("vault", ProviderConfig(), LOCAL)

    @pytest.mark.unit()
    @patch("libs.secrets.gcp_backend.GCPSecretManager")
    def test_credential_discovery_failure(self, mock_gcp_backend: MagicMock) -> None:
        class DefaultCredentialsError(Exception):
            pass

        mock_gcp_backend.side_effect = DefaultCredentialsError("no ADC")

        with pytest.raises(ProviderUnconfiguredError, match="DefaultCredentialsError"):
            create_secret_manager("gcp", ProviderConfig(location="p"), LOCAL)


class TestProviderRegistry:
    """Test the lazily constructed provider set."""

    @staticmethod
    def _config() -> SecretsConfig:
        return SecretsConfig(
            default_provider="local",
            providers={"local": ProviderConfig(backend="env"), "broken": ProviderConfig(backend="nosuch")},
        )

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_get_constructs_once(self, mock_env_backend: MagicMock) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)

        first = registry.get("local")
        second = registry.get("local")

        assert first is second
        assert mock_env_backend.call_count == 1

    @pytest.mark.unit()
    @patch("libs.secrets.env_backend.EnvSecretManager")
    def test_concurrent_get_constructs_once(self, mock_env_backend: MagicMock) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)
        threads = [threading.Thread(target=registry.get, args=("local",)) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert mock_env_backend.call_count == 1

    @pytest.mark.unit()
    def test_unknown_provider(self) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)

        with pytest.raises(UnknownProviderError):
            registry.get("azure")
        with pytest.raises(UnknownProviderError):
            registry.provider_config("azure")

    @pytest.mark.unit()
    def test_unconfigured_provider(self) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)

        with pytest.raises(ProviderUnconfiguredError):
            registry.get("broken")

    @pytest.mark.unit()
    def test_register_requires_configured_id(self) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)
        manager = MagicMock()

        registry.register("broken", manager)

        assert registry.get("broken") is manager
        with pytest.raises(UnknownProviderError):
            registry.register("azure", manager)

    @pytest.mark.unit()
    def test_close_closes_every_manager(self) -> None:
        registry = ProviderRegistry(self._config(), LOCAL)
        first, second = MagicMock(), MagicMock()
        registry.register("local", first)
        registry.register("broken", second)

        registry.close()

        first.close.assert_called_once()
        second.close.assert_called_once()

    @pytest.mark.unit()
    def test_slow_construction_does_not_block_other_providers(self) -> None:
        config = SecretsConfig(providers={"slow": ProviderConfig(), "fast": ProviderConfig()})
        registry = ProviderRegistry(config, LOCAL)
        release = threading.Event()
        built: dict[str, MagicMock] = {}

        def build(provider_id, provider_config, settings):
            if provider_id == "slow":
                assert release.wait(timeout=5)
            built[provider_id] = MagicMock()
            return built[provider_id]

        with patch("libs.secrets.factory.create_secret_manager", side_effect=build) as factory:
            slow_thread = threading.Thread(target=registry.get, args=("slow",))
            slow_thread.start()
            try:
                # Returns while "slow" is still being constructed
                assert registry.get("fast") is built["fast"]
                assert "slow" not in built
            finally:
                release.set()
                slow_thread.join(timeout=5)

            assert registry.get("slow") is built["slow"]
            assert factory.call_count == 2
