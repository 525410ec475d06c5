"""
Google Cloud Secret Manager Provider.

This module implements GCPSecretManager on top of google-cloud-secret-manager.

Naming:
    GCP secret ids only allow ``[A-Za-z0-9_-]``, so hierarchical names are
    flattened: "database/password" -> "database-password". A name that is
    already a full resource path ("projects/p/secrets/s") is used as-is.

Versions:
    "latest", numeric versions and version aliases are passed through:
    projects/{project}/secrets/{secret}/versions/{version}

Error mapping (google.api_core.exceptions):
    NotFound, FailedPrecondition (disabled/destroyed version) -> SecretNotFoundError
    InvalidArgument (bad secret id or version label)            -> SecretNotFoundError
    PermissionDenied, Unauthenticated                           -> SecretAccessError
    ServiceUnavailable, DeadlineExceeded, other API errors      -> SecretUnavailableError

Usage Example:
    >>> secret_mgr = GCPSecretManager(project_id="my-project")
    >>> db_password = secret_mgr.get_secret("database/password", version="7")
"""

import logging
import re
from typing import Any

from google.api_core import exceptions as gcp_exceptions
from google.cloud import secretmanager

from libs.secrets.exceptions import (
    SecretAccessError,
    SecretManagerError,
    SecretNotFoundError,
    SecretUnavailableError,
    SecretWriteError,
)
from libs.secrets.manager import SecretManager
from libs.secrets.models import LATEST_VERSION

logger = logging.getLogger(__name__)

_FLATTEN = re.compile(r"[/.]")


class GCPSecretManager(SecretManager):
    """Google Cloud Secret Manager backend (SDK retries disabled per call)."""

    backend_name = "gcp"

    def __init__(
        self,
        project_id: str,
        credentials_file: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Args:
            project_id: GCP project that owns the secrets
            credentials_file: Service account JSON key; Application Default
                Credentials are used when None
            timeout: Default per-call deadline in seconds

        Raises:
            ValueError: project_id is empty
        """
        if not project_id:
            raise ValueError("project_id is required for the GCP backend")
        self._project_id = project_id
        self._timeout = timeout
        if credentials_file:
            self._client = secretmanager.SecretManagerServiceClient.from_service_account_file(
                credentials_file
            )
        else:
            self._client = secretmanager.SecretManagerServiceClient()
        logger.info(
            "GCP Secret Manager initialized",
            extra={
                "project_id": project_id,
                "auth_mode": "service_account" if credentials_file else "adc",
                "backend": "gcp",
            },
        )

    def secret_path(self, name: str) -> str:
        if name.startswith("projects/"):
            return name
        return f"projects/{self._project_id}/secrets/{_FLATTEN.sub('-', name)}"

    def _call_options(self, timeout: float | None) -> dict[str, Any]:
        return {"timeout": self._timeout if timeout is None else timeout, "retry": None}

    def _map_error(self, name: str, e: Exception) -> SecretManagerError:
        if isinstance(e, gcp_exceptions.InvalidArgument):
            # Malformed secret id or version label
            return SecretNotFoundError(
                secret_name=name,
                backend="gcp",
                additional_context=f"invalid secret name or version (project: {self._project_id})",
            )
        if isinstance(e, (gcp_exceptions.NotFound, gcp_exceptions.FailedPrecondition)):
            return SecretNotFoundError(
                secret_name=name,
                backend="gcp",
                additional_context=f"project: {self._project_id}",
            )
        if isinstance(e, (gcp_exceptions.PermissionDenied, gcp_exceptions.Unauthenticated)):
            return SecretAccessError(
                secret_name=name,
                backend="gcp",
                reason=(
                    f"{type(e).__name__}. Verify the service account has "
                    "roles/secretmanager.secretAccessor"
                ),
            )
        logger.warning(
            "GCP Secret Manager transient failure",
            extra={"secret_name": name, "backend": "gcp", "error_type": type(e).__name__},
        )
        return SecretUnavailableError(
            secret_name=name,
            backend="gcp",
            reason=f"GCP API error ({type(e).__name__}): {e}",
        )

    def get_secret(
        self,
        name: str,
        version: str = LATEST_VERSION,
        timeout: float | None = None,
    ) -> str:
        resource = f"{self.secret_path(name)}/versions/{version}"
        try:
            response = self._client.access_secret_version(
                request={"name": resource}, **self._call_options(timeout)
            )
        except gcp_exceptions.GoogleAPIError as e:
            raise self._map_error(name, e) from e

        try:
            value = response.payload.data.decode("UTF-8")
        except UnicodeDecodeError as e:
            raise SecretAccessError(
                secret_name=name,
                backend="gcp",
                reason="Secret payload is binary, expected UTF-8 text",
            ) from e
        logger.info(
            "Secret loaded from GCP Secret Manager",
            extra={"secret_name": name, "version": version, "backend": "gcp"},
        )
        return value

    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        """List secret ids in the project (flattened form), filtered by prefix."""
        label = f"list_secrets(prefix={prefix})"
        wanted = _FLATTEN.sub("-", prefix) if prefix else None
        secret_ids: list[str] = []
        try:
            for secret in self._client.list_secrets(
                request={"parent": f"projects/{self._project_id}"},
                **self._call_options(timeout),
            ):
                secret_id = secret.name.split("/")[-1]
                if wanted is None or secret_id.startswith(wanted):
                    secret_ids.append(secret_id)
        except gcp_exceptions.GoogleAPIError as e:
            raise self._map_error(label, e) from e
        logger.info(
            "Listed secrets from GCP Secret Manager",
            extra={"count": len(secret_ids), "prefix": prefix, "backend": "gcp"},
        )
        return sorted(secret_ids)

    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        """Create the secret if needed, then add a new version."""
        secret_path = self.secret_path(name)
        options = self._call_options(timeout)
        try:
            try:
                self._client.create_secret(
                    request={
                        "parent": f"projects/{self._project_id}",
                        "secret_id": secret_path.rsplit("/", 1)[-1],
                        "secret": {"replication": {"automatic": {}}},
                    },
                    **options,
                )
                logger.info(
                    "Secret created in GCP Secret Manager",
                    extra={"secret_name": name, "backend": "gcp"},
                )
            except gcp_exceptions.AlreadyExists:
                pass
            self._client.add_secret_version(
                request={"parent": secret_path, "payload": {"data": value.encode("UTF-8")}},
                **options,
            )
        except gcp_exceptions.GoogleAPIError as e:
            raise SecretWriteError(
                secret_name=name,
                backend="gcp",
                reason=f"GCP API error writing secret ({type(e).__name__})",
            ) from e
        logger.info(
            "Secret version added in GCP Secret Manager",
            extra={"secret_name": name, "backend": "gcp"},
        )

    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        """List one page of secrets in the project."""
        try:
            pager = self._client.list_secrets(
                request={"parent": f"projects/{self._project_id}", "page_size": 1},
                **self._call_options(timeout),
            )
            next(iter(pager), None)
        except gcp_exceptions.GoogleAPIError as e:
            return False, f"GCP API error: {type(e).__name__}"
        return True, None

    def close(self) -> None:
        transport = getattr(self._client, "transport", None)
        if transport is not None and hasattr(transport, "close"):
            transport.close()
        logger.info("GCPSecretManager closed", extra={"backend": "gcp"})
