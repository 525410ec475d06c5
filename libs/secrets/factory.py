"""
Factory and registry for SecretManager instances.

The set of provider implementations is closed and selected through an
explicit table (no plugin discovery):

    "env"   -> EnvSecretManager    (python-dotenv)
    "vault" -> VaultSecretManager  (hvac)
    "aws"   -> AWSSecretsManager   (boto3)
    "gcp"   -> GCPSecretManager    (google-cloud-secret-manager)

Backend modules are imported lazily so that a process only needs the SDKs
of the providers it actually references; a missing SDK surfaces as
ProviderUnconfiguredError for that provider alone.

Production Guardrails:
    - EnvSecretManager is ONLY allowed when DEPLOYMENT_ENV is "local" (default) or "test"
    - SECRET_ALLOW_ENV_IN_NON_LOCAL=true overrides this for emergency rollback

Example Usage:
    >>> registry = ProviderRegistry(SecretsConfig.from_tree(raw_config))
    >>> secret_mgr = registry.get("vault")
"""

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Final

from config.settings import Settings, get_settings
from libs.secrets.config import ProviderConfig, SecretsConfig
from libs.secrets.exceptions import (
    ProviderUnconfiguredError,
    SecretManagerError,
    UnknownProviderError,
)
from libs.secrets.manager import SecretManager

logger = logging.getLogger(__name__)

BackendBuilder = Callable[[ProviderConfig, Settings], SecretManager]

_ENV_ALLOWED_DEPLOYMENTS = frozenset({"local", "test"})


def _resolve_dotenv_path(location: str | None) -> Path | None:
    """
    Resolve the .env file for EnvSecretManager.

    Priority:
        1. Provider ``location`` (must exist, otherwise raise)
        2. SECRET_DOTENV_PATH (must exist, otherwise raise)
        3. "./.env" (if present)
        4. No .env file (process environment only)
    """
    override_path = location or os.getenv("SECRET_DOTENV_PATH")
    if override_path:
        candidate = Path(override_path).expanduser().resolve()
        if not candidate.is_file():
            raise SecretManagerError(
                f"dotenv path is set to '{candidate}', but the file does not exist.",
                backend="env",
            )
        return candidate

    default_path = Path.cwd() / ".env"
    return default_path if default_path.is_file() else None


def _build_env(config: ProviderConfig, settings: Settings) -> SecretManager:
    from libs.secrets.env_backend import EnvSecretManager

    deployment_env = settings.deployment_env
    if deployment_env not in _ENV_ALLOWED_DEPLOYMENTS and not settings.secret_allow_env_in_non_local:
        raise SecretManagerError(
            f"EnvSecretManager not allowed in {deployment_env} environment. "
            "Plain-text .env files are LOCAL DEVELOPMENT ONLY. "
            "Use the vault, aws or gcp provider for staging/production.",
            backend="env",
        )
    if deployment_env not in _ENV_ALLOWED_DEPLOYMENTS:
        logger.warning(
            "EnvSecretManager override enabled for %s environment. "
            "Use only for rollback/emergency scenarios.",
            deployment_env,
        )
    return EnvSecretManager(dotenv_path=_resolve_dotenv_path(config.location))


def _build_vault(config: ProviderConfig, settings: Settings) -> SecretManager:
    from libs.secrets.vault_backend import VaultSecretManager

    vault_url = config.location or os.getenv("VAULT_ADDR")
    if not vault_url:
        raise SecretManagerError(
            "Vault URL required: set providers.<id>.location or VAULT_ADDR",
            backend="vault",
        )
    return VaultSecretManager(
        vault_url=vault_url,
        token=config.options.get("token"),
        mount_point=config.options.get("mount_point", "kv"),
        verify=config.options.get("verify", config.credentials_file or True),
        timeout=config.request_timeout_seconds,
    )


def _build_aws(config: ProviderConfig, settings: Settings) -> SecretManager:
    from libs.secrets.aws_backend import AWSSecretsManager

    # Priority: location > AWS_REGION > AWS_DEFAULT_REGION > us-east-1
    region_name = (
        config.location
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
    )
    return AWSSecretsManager(region_name=region_name, timeout=config.request_timeout_seconds)


def _build_gcp(config: ProviderConfig, settings: Settings) -> SecretManager:
    from libs.secrets.gcp_backend import GCPSecretManager

    project_id = config.location or os.getenv("GOOGLE_CLOUD_PROJECT")
    if not project_id:
        raise SecretManagerError(
            "GCP project required: set providers.<id>.location or GOOGLE_CLOUD_PROJECT",
            backend="gcp",
        )
    return GCPSecretManager(
        project_id=project_id,
        credentials_file=config.credentials_file,
        timeout=config.request_timeout_seconds,
    )


BACKENDS: Final[dict[str, BackendBuilder]] = {
    "env": _build_env,
    "vault": _build_vault,
    "aws": _build_aws,
    "gcp": _build_gcp,
}


def create_secret_manager(
    provider_id: str,
    config: ProviderConfig,
    settings: Settings | None = None,
) -> SecretManager:
    """
    Construct the backend for one provider id.

    Raises:
        ProviderUnconfiguredError: Backend id not in the table, its SDK is not
            importable, or construction rejected the configuration
    """
    backend = (config.backend or provider_id).lower().strip()
    builder = BACKENDS.get(backend)
    if builder is None:
        raise ProviderUnconfiguredError(
            provider_id,
            f"no implementation for backend '{backend}' (valid: {', '.join(sorted(BACKENDS))})",
        )
    try:
        manager = builder(config, settings or get_settings())
    except ImportError as e:
        raise ProviderUnconfiguredError(
            provider_id, f"SDK for backend '{backend}' is not installed ({e.name or e})"
        ) from e
    except (SecretManagerError, ValueError, TypeError, OSError) as e:
        raise ProviderUnconfiguredError(provider_id, str(e) or type(e).__name__) from e
    except Exception as e:
        # SDK credential discovery errors (e.g. google.auth DefaultCredentialsError)
        raise ProviderUnconfiguredError(
            provider_id, f"backend construction failed ({type(e).__name__})"
        ) from e
    logger.info(
        "Secret provider initialised",
        extra={"provider": provider_id, "backend": backend},
    )
    return manager


class ProviderRegistry:
    """
    Lazily constructed, process-wide set of provider instances.

    Thread Safety:
        Each provider id has its own construction lock, so it is built at
        most once and a slow backend never delays another provider's first
        use. The shared lock only guards the dictionaries.
    """

    def __init__(self, config: SecretsConfig, settings: Settings | None = None) -> None:
        self._config = config
        self._settings = settings
        self._managers: dict[str, SecretManager] = {}
        self._build_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> SecretsConfig:
        return self._config

    def provider_config(self, provider_id: str) -> ProviderConfig:
        """
        Raises:
            UnknownProviderError: No configuration for ``provider_id``
        """
        try:
            return self._config.providers[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def get(self, provider_id: str) -> SecretManager:
        """
        Return the manager for ``provider_id``, constructing it on first use.

        Raises:
            UnknownProviderError: No configuration for ``provider_id``
            ProviderUnconfiguredError: Implementation unavailable
        """
        with self._lock:
            manager = self._managers.get(provider_id)
            if manager is not None:
                return manager
            config = self.provider_config(provider_id)
            build_lock = self._build_locks.setdefault(provider_id, threading.Lock())

        with build_lock:
            with self._lock:
                manager = self._managers.get(provider_id)
            if manager is not None:
                return manager
            manager = create_secret_manager(provider_id, config, self._settings)
            with self._lock:
                # register() may have installed an instance meanwhile
                return self._managers.setdefault(provider_id, manager)

    def register(self, provider_id: str, manager: SecretManager) -> None:
        """Install an explicit instance for a configured provider id."""
        self.provider_config(provider_id)
        with self._lock:
            self._managers[provider_id] = manager

    def close(self) -> None:
        with self._lock:
            managers = list(self._managers.values())
            self._managers = {}
        for manager in managers:
            manager.close()
