"""
Abstract SecretManager Interface for Pluggable Secret Providers.

This module defines the capability contract every secret store implements.
The resolution engine only ever talks to this interface, so adding a store
means adding one backend module and one row in the factory's backend table.

Architecture:
    SecretManager (ABC)
    ├── VaultSecretManager - HashiCorp Vault KV v2 (vault_backend.py)
    ├── AWSSecretsManager - AWS Secrets Manager (aws_backend.py)
    ├── GCPSecretManager - Google Cloud Secret Manager (gcp_backend.py)
    └── EnvSecretManager - Process environment / .env file (env_backend.py)

Contract:
    - Backends do NOT cache and do NOT retry. The resolver owns both.
    - Every operation accepts an optional ``timeout`` in seconds and honours it.
    - SDK errors are mapped onto the failure taxonomy:
      SecretNotFoundError / SecretAccessError / SecretUnavailableError.
    - Secret values never appear in exceptions or log lines.

Usage Example:
    >>> with registry.get("vault") as secret_mgr:
    ...     ok, detail = secret_mgr.test_connection(timeout=5)
"""

from abc import ABC, abstractmethod
from types import TracebackType

from libs.secrets.exceptions import (
    SecretAccessError,  # noqa: F401 - Used in docstrings for documentation
    SecretNotFoundError,  # noqa: F401 - Used in docstrings for documentation
    SecretUnavailableError,  # noqa: F401 - Used in docstrings for documentation
    SecretWriteError,  # noqa: F401 - Used in docstrings for documentation
)
from libs.secrets.models import LATEST_VERSION


class SecretManager(ABC):
    """
    Abstract base class for all secret provider backends.

    Thread Safety:
        Implementations MUST be safe to call from several worker threads at
        once: the resolver issues concurrent get_secret() calls from its own
        thread pool.

    Security:
        - NEVER log secret values
        - ONLY log secret names/paths in exceptions (safe for audit logs)
        - Validate secret names to prevent path traversal

    Example:
        >>> class MySecretManager(SecretManager):
        ...     def get_secret(self, name, version="latest", timeout=None):
        ...         ...
    """

    #: Short backend identifier used in exceptions and log context.
    backend_name: str = "unknown"

    @abstractmethod
    def get_secret(
        self,
        name: str,
        version: str = LATEST_VERSION,
        timeout: float | None = None,
    ) -> str:
        """
        Retrieve one secret value from the store.

        Args:
            name: Secret name in hierarchical path format ("database/password").
                Each backend maps this onto its own naming scheme.
            version: Store-specific version label; "latest" selects the
                current version
            timeout: Upper bound in seconds for the call (None = backend default)

        Returns:
            Secret value as string

        Raises:
            SecretNotFoundError: Secret or version doesn't exist
            SecretAccessError: Permission denied
            SecretUnavailableError: Transport failure, timeout, throttling
        """

    @abstractmethod
    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        """
        Create or update a secret (idempotent). Setup/migration path only.

        Raises:
            SecretWriteError: Write operation failed
            SecretAccessError: Permission denied
        """

    @abstractmethod
    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        """
        List available secret names, optionally filtered by prefix.

        Returns:
            Sorted secret names. NEVER values.

        Raises:
            SecretAccessError: Permission denied
            SecretUnavailableError: Backend unreachable
        """

    @abstractmethod
    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        """
        Check that the store is reachable with the configured credentials.

        Never raises: failures are reported as ``(False, reason)``.

        Returns:
            (True, None) on success, (False, human-readable reason) otherwise
        """

    def close(self) -> None:  # noqa: B027 - Intentionally optional hook with default no-op
        """
        Close connections and clean up resources (optional hook).

        Default implementation is a no-op (safe for backends without cleanup).
        """

    def __enter__(self) -> "SecretManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit (calls close(); exceptions propagate normally)."""
        self.close()
