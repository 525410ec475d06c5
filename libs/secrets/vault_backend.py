"""
HashiCorp Vault Secret Provider.

This module implements VaultSecretManager on top of the hvac client for the
Vault KV v2 secret engine.

Architecture:
    - hvac client (requests session with connection pooling)
    - Token authentication (explicit token or VAULT_TOKEN env var)
    - All calls go through the client adapter so that each one carries its
      own ``timeout``
    - Path convention: "database/password" -> {mount}/data/database/password
    - Versions: KV v2 integer versions ("latest" = current version)

Error mapping:
    InvalidPath (404)                    -> SecretNotFoundError
    Forbidden / Unauthorized / InvalidRequest -> SecretAccessError
    VaultDown, other VaultError, transport -> SecretUnavailableError

Usage Example:
    >>> secret_mgr = VaultSecretManager(
    ...     vault_url="https://vault.company.com:8200",
    ...     token="s.abc123xyz",
    ...     mount_point="kv",
    ... )
    >>> db_password = secret_mgr.get_secret("database/password", version="3")
"""

import logging
import threading
from typing import Any

import hvac
from hvac.exceptions import (
    Forbidden,
    InvalidPath,
    InvalidRequest,
    Unauthorized,
    VaultDown,
    VaultError,
)
from requests.exceptions import RequestException

from libs.secrets.exceptions import (
    SecretAccessError,
    SecretNotFoundError,
    SecretUnavailableError,
    SecretWriteError,
)
from libs.secrets.manager import SecretManager
from libs.secrets.models import LATEST_VERSION

logger = logging.getLogger(__name__)


class VaultSecretManager(SecretManager):
    """
    HashiCorp Vault KV v2 secrets backend.

    Multi-Key Secrets:
        A KV v2 secret holds a mapping. get_secret() returns the "value" key
        when present, otherwise the first key alphabetically (deterministic).

    Thread Safety:
        hvac's requests session is shared; writes and listing are serialised
        with threading.Lock, reads run concurrently.
    """

    backend_name = "vault"

    def __init__(
        self,
        vault_url: str,
        token: str | None = None,
        mount_point: str = "kv",
        verify: bool | str = True,
        timeout: float = 10.0,
    ) -> None:
        """
        Args:
            vault_url: Vault server URL (e.g., "https://vault.company.com:8200")
            token: Vault token. If None, hvac reads VAULT_TOKEN from the environment.
            mount_point: KV v2 mount point. Default: "kv"
            verify: TLS verification flag or CA bundle path. Default: True
            timeout: Default per-request timeout in seconds

        Raises:
            ValueError: vault_url is empty
        """
        if not vault_url:
            raise ValueError("vault_url is required for the Vault backend")
        self._lock = threading.Lock()
        self._vault_url = vault_url
        self._mount_point = mount_point.strip("/")
        self._timeout = timeout
        self._client = hvac.Client(url=vault_url, token=token, verify=verify, timeout=timeout)
        logger.info(
            "Vault client created",
            extra={"vault_url": vault_url, "mount_point": self._mount_point, "backend": "vault"},
        )

    def _request_timeout(self, timeout: float | None) -> float:
        return self._timeout if timeout is None else timeout

    def _unavailable(self, name: str, e: Exception) -> SecretUnavailableError:
        logger.warning(
            "Vault request failed",
            extra={"secret_name": name, "backend": "vault", "error_type": type(e).__name__},
        )
        return SecretUnavailableError(
            secret_name=name,
            backend="vault",
            reason=f"Vault request failed ({type(e).__name__}): {e}",
        )

    def get_secret(
        self,
        name: str,
        version: str = LATEST_VERSION,
        timeout: float | None = None,
    ) -> str:
        """
        Read one version of a KV v2 secret.

        Raises:
            SecretNotFoundError: Path or version doesn't exist, or holds no data
            SecretAccessError: Token lacks read capability or is invalid
            SecretUnavailableError: Vault sealed/down, 5xx, network or timeout
        """
        params: dict[str, Any] = {}
        if version != LATEST_VERSION:
            if not version.isdigit():
                raise SecretNotFoundError(
                    secret_name=name,
                    backend="vault",
                    additional_context=f"KV v2 versions are integers, got '{version}'",
                )
            params["version"] = int(version)

        try:
            response = self._client.adapter.get(
                f"/v1/{self._mount_point}/data/{name}",
                params=params,
                timeout=self._request_timeout(timeout),
            )
        except InvalidPath as e:
            raise SecretNotFoundError(
                secret_name=name,
                backend="vault",
                additional_context=f"Verify path: vault kv get {self._mount_point}/{name}",
            ) from e
        except (Forbidden, Unauthorized, InvalidRequest) as e:
            raise SecretAccessError(
                secret_name=name,
                backend="vault",
                reason=(
                    f"Permission denied reading '{name}'. "
                    f"Verify token has read access to {self._mount_point}/{name}"
                ),
            ) from e
        except (VaultDown, VaultError, RequestException) as e:
            raise self._unavailable(name, e) from e

        secret_data = ((response or {}).get("data") or {}).get("data") or {}
        if not secret_data:
            raise SecretNotFoundError(
                secret_name=name,
                backend="vault",
                additional_context="Secret exists but has no data (deleted or destroyed version)",
            )

        if "value" in secret_data:
            value = str(secret_data["value"])
        else:
            first_key = sorted(secret_data.keys())[0]
            value = str(secret_data[first_key])
            logger.debug(
                "Secret has multiple keys, using first key",
                extra={"secret_name": name, "key_used": first_key, "backend": "vault"},
            )
        logger.info(
            "Secret loaded from Vault",
            extra={"secret_name": name, "version": version, "backend": "vault"},
        )
        return value

    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        """
        Recursively list secret paths under ``prefix`` via the metadata API.

        A missing prefix yields an empty list.

        Raises:
            SecretAccessError: Token lacks list capability on {mount}/metadata/*
            SecretUnavailableError: Vault unreachable
        """
        label = f"list_secrets(prefix={prefix})"
        all_paths: list[str] = []
        stack = [prefix.rstrip("/") if prefix else ""]
        with self._lock:
            try:
                while stack:
                    current_path = stack.pop()
                    response = self._client.adapter.list(
                        f"/v1/{self._mount_point}/metadata/{current_path}",
                        timeout=self._request_timeout(timeout),
                    )
                    keys = ((response or {}).get("data") or {}).get("keys", [])
                    for key in keys:
                        full_path = f"{current_path}/{key}" if current_path else key
                        if key.endswith("/"):
                            stack.append(full_path.rstrip("/"))
                        else:
                            all_paths.append(full_path)
            except InvalidPath:
                logger.info("No secrets found with prefix", extra={"prefix": prefix, "backend": "vault"})
                return []
            except (Forbidden, Unauthorized) as e:
                raise SecretAccessError(
                    secret_name=label,
                    backend="vault",
                    reason=(
                        "Permission denied listing secrets. "
                        f"Verify token has list capability on {self._mount_point}/metadata/*"
                    ),
                ) from e
            except (VaultError, RequestException) as e:
                raise self._unavailable(label, e) from e

        logger.info(
            "Listed Vault secrets",
            extra={"count": len(all_paths), "prefix": prefix, "backend": "vault"},
        )
        return sorted(all_paths)

    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        """
        Write ``{"value": value}`` as a new KV v2 version (history preserved).

        Raises:
            SecretWriteError: Permission denied, invalid request or Vault error
        """
        with self._lock:
            try:
                self._client.adapter.post(
                    f"/v1/{self._mount_point}/data/{name}",
                    json={"data": {"value": value}},
                    timeout=self._request_timeout(timeout),
                )
            except (Forbidden, Unauthorized) as e:
                raise SecretWriteError(
                    secret_name=name,
                    backend="vault",
                    reason=(
                        f"Permission denied writing '{name}'. "
                        f"Verify token has create/update capability on {self._mount_point}/{name}"
                    ),
                ) from e
            except (VaultError, RequestException) as e:
                raise SecretWriteError(
                    secret_name=name,
                    backend="vault",
                    reason=f"Vault error writing '{name}' ({type(e).__name__})",
                ) from e
        logger.info("Secret written to Vault", extra={"secret_name": name, "backend": "vault"})

    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        """Verify the token (lookup-self) and the seal status."""
        request_timeout = self._request_timeout(timeout)
        try:
            self._client.adapter.get("/v1/auth/token/lookup-self", timeout=request_timeout)
        except Forbidden:
            logger.info(
                "Vault token lacks 'lookup-self' capability, deferring validation",
                extra={"vault_url": self._vault_url, "backend": "vault"},
            )
        except Unauthorized:
            return False, f"Vault authentication failed for {self._vault_url}"
        except (VaultError, RequestException) as e:
            return False, f"Vault unreachable at {self._vault_url}: {type(e).__name__}"

        try:
            status = self._client.adapter.get("/v1/sys/seal-status", timeout=request_timeout)
        except (VaultError, RequestException) as e:
            return False, f"Vault seal status unavailable: {type(e).__name__}"
        if (status or {}).get("sealed"):
            return False, f"Vault is sealed at {self._vault_url}"
        return True, None

    def close(self) -> None:
        """Close the hvac client's HTTP adapter (connection pool)."""
        with self._lock:
            adapter = getattr(self._client, "adapter", None)
            if adapter and hasattr(adapter, "close"):
                adapter.close()
        logger.info("VaultSecretManager closed", extra={"backend": "vault"})
