"""
AWS Secrets Manager Provider.

This module implements AWSSecretsManager on top of boto3.

Architecture:
    - boto3 "secretsmanager" client per distinct timeout value, each built
      with a botocore Config carrying connect/read timeouts
    - SDK-level retries disabled (total_max_attempts=1): the resolver owns
      the single retry
    - IAM role authentication (recommended) or explicit access keys
    - Versions map to staging labels: "latest" -> AWSCURRENT, any other
      label (AWSPREVIOUS, custom stages) is passed as VersionStage

IAM Permissions Required:
    - secretsmanager:GetSecretValue (read)
    - secretsmanager:ListSecrets (list_secrets, test_connection)
    - secretsmanager:PutSecretValue / CreateSecret (set_secret only)

Usage Example:
    >>> secret_mgr = AWSSecretsManager(region_name="us-east-1")
    >>> db_password = secret_mgr.get_secret("prod/database/password")
    >>> previous = secret_mgr.get_secret("prod/database/password", version="AWSPREVIOUS")
"""

import logging
import threading
from typing import Any, cast

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

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

_TRANSIENT_CODES = frozenset(
    {
        "ThrottlingException",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "InternalServiceError",
        "InternalFailure",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)

_NOT_FOUND_CODES = frozenset({"ResourceNotFoundException", "InvalidRequestException"})

_ACCESS_CODES = frozenset(
    {
        "AccessDeniedException",
        "UnrecognizedClientException",
        "InvalidSignatureException",
        "ExpiredTokenException",
        "DecryptionFailure",
    }
)


def _error_code(exception: ClientError) -> str:
    return str(exception.response.get("Error", {}).get("Code", "Unknown"))


def _is_transient_aws_error(exception: BaseException) -> bool:
    """
    Check if an AWS exception is transient (maps to SecretUnavailableError).

    Transient: network/SDK errors (BotoCoreError, including timeouts),
    throttling, and server-side (5xx) ClientErrors.
    """
    if isinstance(exception, BotoCoreError):
        return True
    if isinstance(exception, ClientError):
        if _error_code(exception) in _TRANSIENT_CODES:
            return True
        status = exception.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return isinstance(status, int) and status >= 500
    return False


class AWSSecretsManager(SecretManager):
    """
    AWS Secrets Manager backend.

    Thread Safety:
        boto3 clients are thread-safe once created; client creation is
        serialised with threading.Lock.
    """

    backend_name = "aws"

    def __init__(
        self,
        region_name: str = "us-east-1",
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Args:
            region_name: AWS region (e.g., "us-east-1")
            aws_access_key_id: Access key ID (optional; IAM role otherwise)
            aws_secret_access_key: Secret access key (optional; IAM role otherwise)
            timeout: Default connect/read timeout in seconds

        Raises:
            ValueError: Only one of the access key pair was provided
        """
        if (aws_access_key_id is None) != (aws_secret_access_key is None):
            raise ValueError("aws_access_key_id and aws_secret_access_key must be set together")
        self._lock = threading.Lock()
        self._region_name = region_name
        self._timeout = timeout
        self._client_kwargs: dict[str, Any] = {"region_name": region_name}
        if aws_access_key_id is not None:
            self._client_kwargs["aws_access_key_id"] = aws_access_key_id
            self._client_kwargs["aws_secret_access_key"] = aws_secret_access_key
            auth_mode = "access_key"
        else:
            auth_mode = "iam_role"
        self._clients: dict[float, Any] = {}
        # Connection validated lazily (read-only roles may lack ListSecrets)
        self._client_for(None)
        logger.info(
            "AWS Secrets Manager initialized",
            extra={"region": region_name, "auth_mode": auth_mode, "backend": "aws"},
        )

    def _client_for(self, timeout: float | None) -> Any:
        effective = self._timeout if timeout is None else timeout
        with self._lock:
            client = self._clients.get(effective)
            if client is None:
                config = Config(
                    connect_timeout=effective,
                    read_timeout=effective,
                    retries={"total_max_attempts": 1, "mode": "standard"},
                )
                client = boto3.client("secretsmanager", config=config, **self._client_kwargs)
                self._clients[effective] = client
            return client

    def _map_error(self, name: str, e: Exception) -> SecretManagerError:
        if _is_transient_aws_error(e):
            reason = _error_code(e) if isinstance(e, ClientError) else f"{type(e).__name__}: {e}"
            logger.warning(
                "AWS Secrets Manager transient failure",
                extra={"secret_name": name, "backend": "aws", "error_type": type(e).__name__},
            )
            return SecretUnavailableError(secret_name=name, backend="aws", reason=reason)
        code = _error_code(e) if isinstance(e, ClientError) else type(e).__name__
        if code in _NOT_FOUND_CODES:
            context = f"region: {self._region_name}"
            if code == "InvalidRequestException":
                context = f"secret marked for deletion ({context})"
            return SecretNotFoundError(secret_name=name, backend="aws", additional_context=context)
        if code in _ACCESS_CODES:
            return SecretAccessError(
                secret_name=name,
                backend="aws",
                reason=f"{code}. Verify IAM role has secretsmanager permissions.",
            )
        return SecretAccessError(secret_name=name, backend="aws", reason=f"AWS API error: {code}")

    def get_secret(
        self,
        name: str,
        version: str = LATEST_VERSION,
        timeout: float | None = None,
    ) -> str:
        """
        Retrieve ``name`` at a staging label.

        Raises:
            SecretNotFoundError: Secret or stage doesn't exist, or is pending deletion
            SecretAccessError: IAM denial, KMS decryption failure, binary secret
            SecretUnavailableError: Throttling, 5xx, network error or timeout
        """
        request: dict[str, str] = {"SecretId": name}
        if version != LATEST_VERSION:
            request["VersionStage"] = version
        try:
            response = self._client_for(timeout).get_secret_value(**request)
        except (ClientError, BotoCoreError) as e:
            raise self._map_error(name, e) from e

        if "SecretString" not in response:
            raise SecretAccessError(
                secret_name=name,
                backend="aws",
                reason="Secret is binary, expected text (SecretString)",
            )
        logger.info(
            "Secret loaded from AWS Secrets Manager",
            extra={"secret_name": name, "version": version, "backend": "aws"},
        )
        return cast(str, response["SecretString"])

    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        """
        List secret names, filtered client-side by ``prefix``.

        AWS name filters are not strict prefix matches, so every page is
        fetched and filtered locally.
        """
        label = f"list_secrets(prefix={prefix})"
        secret_names: list[str] = []
        try:
            paginator = self._client_for(timeout).get_paginator("list_secrets")
            for page in paginator.paginate():
                for secret in page.get("SecretList", []):
                    secret_name = secret.get("Name", "")
                    if secret_name and (prefix is None or secret_name.startswith(prefix)):
                        secret_names.append(secret_name)
        except (ClientError, BotoCoreError) as e:
            raise self._map_error(label, e) from e

        logger.info(
            "Listed secrets from AWS Secrets Manager",
            extra={"count": len(secret_names), "prefix": prefix, "backend": "aws"},
        )
        return sorted(secret_names)

    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        """
        PutSecretValue, falling back to CreateSecret when the secret is new.

        Raises:
            SecretWriteError: Any AWS failure during the write
        """
        client = self._client_for(timeout)
        try:
            try:
                client.put_secret_value(SecretId=name, SecretString=value)
                logger.info(
                    "Secret updated in AWS Secrets Manager",
                    extra={"secret_name": name, "backend": "aws"},
                )
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise
                client.create_secret(Name=name, SecretString=value)
                logger.info(
                    "Secret created in AWS Secrets Manager",
                    extra={"secret_name": name, "backend": "aws"},
                )
        except ClientError as e:
            raise SecretWriteError(
                secret_name=name,
                backend="aws",
                reason=f"AWS API error: {_error_code(e)}",
            ) from e
        except BotoCoreError as e:
            raise SecretWriteError(
                secret_name=name,
                backend="aws",
                reason=f"AWS SDK error writing secret: {type(e).__name__}",
            ) from e

    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        """Issue a single-item ListSecrets call."""
        try:
            self._client_for(timeout).list_secrets(MaxResults=1)
        except ClientError as e:
            return False, f"AWS API error: {_error_code(e)}"
        except BotoCoreError as e:
            return False, f"AWS SDK error: {type(e).__name__}"
        return True, None

    def close(self) -> None:
        """Close the boto3 clients' HTTP connection pools."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients = {}
        for client in clients:
            close = getattr(client, "close", None)
            if callable(close):
                close()
        logger.info("AWSSecretsManager closed", extra={"backend": "aws"})
