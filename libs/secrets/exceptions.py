"""
Secret Reference Resolution Exception Hierarchy.

This module defines all exceptions raised by the secret resolution engine and
its provider backends, together with the failure taxonomy surfaced to callers
of resolve_all().

Exception hierarchy:
    SecretManagerError (base)
    ├── SecretReferenceSyntaxError - Malformed ${provider:name#version} token
    ├── UnknownProviderError - Reference names a provider with no configuration
    ├── ProviderUnconfiguredError - Provider implementation unavailable in process
    ├── SecretNotFoundError - Secret/version doesn't exist in backend
    ├── SecretAccessError - Permission/authorization failure
    ├── SecretUnavailableError - Transport/network failure (retryable)
    ├── SecretWriteError - Failed to write/update secret
    └── SecretResolutionError - Required configuration path left unresolved

All exceptions include structured context (secret name, backend type) without
ever exposing secret values.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from libs.secrets.models import ResolutionFailure


class FailureKind(str, Enum):
    """Classified failure kinds reported per configuration path."""

    SYNTAX_ERROR = "SyntaxError"
    UNKNOWN_PROVIDER = "UnknownProvider"
    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    UNAVAILABLE = "Unavailable"
    TIMEOUT = "Timeout"
    PROVIDER_UNCONFIGURED = "ProviderUnconfigured"


def _require_text(field: str, value: object) -> None:
    if not isinstance(value, str) or not value:
        raise TypeError(f"{field} must be a non-empty string")


class SecretManagerError(Exception):
    """
    Base exception for all secrets management errors.

    Subclasses MUST NOT include secret values in error messages. Only secret
    names, provider identifiers and provider-supplied error text (already
    scrubbed by the caller) are allowed.

    Attributes:
        secret_name: Name/path of the secret (e.g., "database/password")
        backend: Backend or provider identifier ("vault", "aws", "gcp", "env")
        message: Human-readable error message (MUST NOT include secret value)

    Example:
        >>> try:
        ...     secret = secret_mgr.get_secret("database/password")
        ... except SecretManagerError as e:
        ...     logger.error("Secret error", extra={"secret_name": e.secret_name})
    """

    failure_kind: ClassVar[FailureKind] = FailureKind.UNAVAILABLE

    def __init__(
        self,
        message: str,
        secret_name: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message)
        self.secret_name = secret_name
        self.backend = backend
        self.message = message

    def __str__(self) -> str:
        """
        Format error message with context (secret name + backend).

        Example:
            >>> str(SecretManagerError("Timeout", "db/password", "vault"))
            'Timeout (secret: db/password, backend: vault)'
        """
        context_parts = []
        if self.secret_name:
            context_parts.append(f"secret: {self.secret_name}")
        if self.backend:
            context_parts.append(f"backend: {self.backend}")

        if context_parts:
            context = ", ".join(context_parts)
            return f"{self.message} ({context})"
        return self.message


class SecretReferenceSyntaxError(SecretManagerError):
    """
    Raised at configuration-load time when reference tokens are malformed.

    Fatal to loading the configuration document: malformed syntax is an
    authoring error, never a runtime condition to tolerate. The exception
    collects every offending token so a single load reports all of them.

    Attributes:
        errors: List of (path, token, reason) tuples

    Example:
        >>> validate_references({"db": {"password": "${gcp:}"}})
        SecretReferenceSyntaxError: Invalid secret reference syntax:
            db.password: '${gcp:}' (empty secret name)
    """

    failure_kind = FailureKind.SYNTAX_ERROR

    def __init__(self, errors: list[tuple[str, str, str]]) -> None:
        if not errors:
            raise TypeError("errors must contain at least one entry")
        self.errors = list(errors)
        lines = [f"{path or '<root>'}: {token!r} ({reason})" for path, token, reason in errors]
        super().__init__(message="Invalid secret reference syntax: " + "; ".join(lines))


class UnknownProviderError(SecretManagerError):
    """
    Raised when a reference names a provider with no matching configuration.

    Distinct from SecretNotFoundError: the secret was never looked up because
    the `secrets.providers` section has no entry for the provider id.
    """

    failure_kind = FailureKind.UNKNOWN_PROVIDER

    def __init__(self, provider: str) -> None:
        _require_text("provider", provider)
        self.provider = provider
        super().__init__(
            message=f"No configuration for secret provider '{provider}'",
            backend=provider,
        )


class ProviderUnconfiguredError(SecretManagerError):
    """
    Raised when a provider's implementation is not available in this process.

    Typical causes:
    - Backend id has no entry in the compiled-in backend table
    - Optional SDK (hvac, boto3, google-cloud-secret-manager) not importable
    - Backend construction rejected its settings (missing location, guardrail)
    """

    failure_kind = FailureKind.PROVIDER_UNCONFIGURED

    def __init__(self, provider: str, reason: str) -> None:
        _require_text("provider", provider)
        _require_text("reason", reason)
        self.provider = provider
        self.reason = reason
        super().__init__(
            message=f"Secret provider '{provider}' is not available: {reason}",
            backend=provider,
        )


class SecretNotFoundError(SecretManagerError):
    """
    Raised when a requested secret (or version) doesn't exist in the backend.

    Never masked by a stale cache entry: a deleted secret must not keep
    resolving from memory.

    Example:
        >>> secret_mgr.get_secret("database/password")
        SecretNotFoundError: Secret 'database/password' not found in VAULT
                            (secret: database/password, backend: vault)
    """

    failure_kind = FailureKind.NOT_FOUND

    def __init__(
        self,
        secret_name: str,
        backend: str,
        additional_context: str | None = None,
    ) -> None:
        _require_text("secret_name", secret_name)
        _require_text("backend", backend)

        base_message = f"Secret '{secret_name}' not found in {backend.upper()}"
        if additional_context:
            base_message += f". {additional_context}"

        super().__init__(
            message=base_message,
            secret_name=secret_name,
            backend=backend,
        )


class SecretAccessError(SecretManagerError):
    """
    Raised when authentication/authorization fails accessing a secret.

    Never masked by a stale cache entry: reusing cached data to hide an
    authorization failure is not acceptable.

    Common causes:
    - Expired credentials (Vault token TTL exceeded)
    - Wrong IAM role/policy (AWS/GCP permission denied)
    """

    failure_kind = FailureKind.PERMISSION_DENIED

    def __init__(
        self,
        secret_name: str,
        backend: str,
        reason: str,
    ) -> None:
        _require_text("secret_name", secret_name)
        _require_text("backend", backend)
        _require_text("reason", reason)

        super().__init__(
            message=f"Access denied: {reason}",
            secret_name=secret_name,
            backend=backend,
        )


class SecretUnavailableError(SecretManagerError):
    """
    Raised when the backend cannot be reached or fails transiently.

    The resolver retries once after a short fixed delay, then falls back to a
    stale cache entry when one exists.

    Common causes:
    - Network errors (DNS, TLS, connection refused)
    - Provider call exceeded its time bound
    - Backend sealed, throttling or 5xx responses
    """

    failure_kind = FailureKind.UNAVAILABLE

    def __init__(
        self,
        secret_name: str,
        backend: str,
        reason: str,
    ) -> None:
        _require_text("secret_name", secret_name)
        _require_text("backend", backend)
        _require_text("reason", reason)

        super().__init__(
            message=f"Secret backend unavailable: {reason}",
            secret_name=secret_name,
            backend=backend,
        )


class SecretWriteError(SecretManagerError):
    """
    Raised when writing/updating a secret fails.

    Only the setup/migration path writes secrets; resolution never does.
    """

    def __init__(
        self,
        secret_name: str,
        backend: str,
        reason: str,
    ) -> None:
        _require_text("secret_name", secret_name)
        _require_text("backend", backend)
        _require_text("reason", reason)

        super().__init__(
            message=f"Failed to write secret: {reason}",
            secret_name=secret_name,
            backend=backend,
        )


class SecretResolutionError(SecretManagerError):
    """
    Raised by ResolvedTree.require() when a required path did not resolve.

    Attributes:
        failures: The ResolutionFailure records that triggered the error
    """

    def __init__(self, failures: Sequence[ResolutionFailure]) -> None:
        if not failures:
            raise TypeError("failures must contain at least one entry")
        self.failures = list(failures)
        summary = ", ".join(
            f"{failure.path} ({failure.reference.token}: {failure.kind.value})"
            for failure in self.failures
        )
        super().__init__(message=f"Required secrets unresolved: {summary}")
