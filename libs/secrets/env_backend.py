"""
Environment Variable Secret Provider.

This module implements EnvSecretManager, a local development provider that
reads secrets from the process environment, optionally layered under the
contents of a .env file. It MUST NOT be used outside local development: the
factory refuses it when DEPLOYMENT_ENV is not "local" unless explicitly
overridden.

Naming:
    Hierarchical names are mapped to UPPERCASE environment variable names:
    "database/password" -> "DATABASE_PASSWORD", "api.key-id" -> "API_KEY_ID".

Versions:
    The environment has no version history; only "latest" resolves. Any other
    version label is reported as not found.

Usage Example:
    >>> secret_mgr = EnvSecretManager(dotenv_path=".env")
    >>> db_password = secret_mgr.get_secret("database/password")
"""

import logging
import os
import re
import threading
import warnings
from pathlib import Path

from dotenv import dotenv_values

from libs.secrets.exceptions import (
    SecretAccessError,
    SecretNotFoundError,
    SecretWriteError,
)
from libs.secrets.manager import SecretManager
from libs.secrets.models import LATEST_VERSION

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[/.\-]")


def env_var_name(name: str) -> str:
    """Map a hierarchical secret name onto an environment variable name."""
    return _SEPARATORS.sub("_", name).upper()


class EnvSecretManager(SecretManager):
    """
    Environment variable secrets backend for local development.

    Values set in the .env file take precedence over the process environment
    (matching ``load_dotenv(override=True)``), but the file is read into a
    private mapping instead of mutating os.environ.

    Thread Safety:
        All operations are protected by threading.Lock.
    """

    backend_name = "env"

    def __init__(self, dotenv_path: str | Path | None = None) -> None:
        """
        Args:
            dotenv_path: Optional path to a .env file. If None, only the
                process environment is consulted.

        Raises:
            SecretAccessError: If dotenv_path is provided but the file doesn't exist
        """
        self._lock = threading.Lock()
        self._dotenv_path = Path(dotenv_path) if dotenv_path is not None else None
        self._overrides: dict[str, str] = {}

        if self._dotenv_path is not None:
            if not self._dotenv_path.exists():
                raise SecretAccessError(
                    secret_name="dotenv_file",
                    backend=self.backend_name,
                    reason=f".env file not found: {self._dotenv_path}",
                )
            self._overrides = {
                key: value
                for key, value in dotenv_values(self._dotenv_path).items()
                if value is not None
            }
            logger.info(
                "Loaded .env file for secret resolution",
                extra={"dotenv_path": str(self._dotenv_path), "backend": self.backend_name},
            )
        else:
            logger.info(
                "Using environment variables without .env file",
                extra={"backend": self.backend_name},
            )

    def _lookup(self, key: str) -> str | None:
        if key in self._overrides:
            return self._overrides[key]
        return os.environ.get(key)

    def get_secret(
        self,
        name: str,
        version: str = LATEST_VERSION,
        timeout: float | None = None,
    ) -> str:
        """
        Read ``name`` from the .env overrides or the process environment.

        ``timeout`` is accepted for interface compatibility; lookups are local.

        Raises:
            SecretNotFoundError: Variable not set, or a non-latest version requested
        """
        key = env_var_name(name)
        if version != LATEST_VERSION:
            raise SecretNotFoundError(
                secret_name=name,
                backend=self.backend_name,
                additional_context=f"Environment variables have no version '{version}'",
            )
        with self._lock:
            value = self._lookup(key)
        if value is None:
            raise SecretNotFoundError(
                secret_name=name,
                backend=self.backend_name,
                additional_context=f"Environment variable '{key}' not set",
            )
        logger.debug(
            "Secret loaded from environment",
            extra={"secret_name": name, "backend": self.backend_name},
        )
        return value

    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        """
        List variable names (converted to lowercase hierarchical form).

        The reverse mapping is lossy: every underscore becomes a slash, so
        ``ALPACA_API_KEY`` lists as ``alpaca/api/key``.

        Calling without a prefix lists the whole process environment and
        emits a UserWarning.
        """
        if prefix is None:
            warnings.warn(
                "list_secrets() called without prefix filter. "
                "This returns ALL environment variables including system vars.",
                category=UserWarning,
                stacklevel=2,
            )
        with self._lock:
            keys = set(os.environ) | set(self._overrides)
        if prefix is not None:
            env_prefix = env_var_name(prefix)
            keys = {key for key in keys if key.startswith(env_prefix)}
        names = sorted(key.lower().replace("_", "/") for key in keys)
        logger.info(
            "Listed environment variables",
            extra={"count": len(names), "prefix": prefix, "backend": self.backend_name},
        )
        return names

    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        """
        Set a variable in the running process (not persisted to the .env file).

        Raises:
            SecretWriteError: os.environ rejected the update
        """
        key = env_var_name(name)
        with self._lock:
            try:
                os.environ[key] = value
            except (ValueError, OSError) as e:
                raise SecretWriteError(
                    secret_name=name,
                    backend=self.backend_name,
                    reason=f"Failed to set environment variable: {type(e).__name__}",
                ) from e
            self._overrides.pop(key, None)
        logger.info(
            "Secret updated in environment",
            extra={"secret_name": name, "backend": self.backend_name},
        )

    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        if self._dotenv_path is not None and not self._dotenv_path.exists():
            return False, f".env file not found: {self._dotenv_path}"
        return True, None
