"""
Secret reference resolution for configuration trees.

Configuration values may embed ``${provider:name#version}`` tokens that are
resolved at load time against pluggable secret stores (Vault, AWS Secrets
Manager, GCP Secret Manager, environment/.env).

Quick Start:
    >>> from libs.secrets import SecretReferenceResolver, SecretsConfig, redact
    >>> resolver = SecretReferenceResolver(SecretsConfig.from_tree(raw_config))
    >>> resolved = resolver.resolve_all_sync(raw_config, timeout=30)
    >>> resolved.failures_under("database")
    []
    >>> safe_to_print = redact(resolved)

Security Requirements:
    - Secret values NEVER logged (only provider, name, version, path)
    - Resolved values held in memory only (cache entries refuse serialization)
    - Production guardrail: the env provider is refused outside local development
"""

from typing import Any

from libs.secrets.cache import CacheState, ResolutionCache
from libs.secrets.config import ProviderConfig, SecretsConfig
from libs.secrets.exceptions import (
    FailureKind,
    ProviderUnconfiguredError,
    SecretAccessError,
    SecretManagerError,
    SecretNotFoundError,
    SecretReferenceSyntaxError,
    SecretResolutionError,
    SecretUnavailableError,
    SecretWriteError,
    UnknownProviderError,
)
from libs.secrets.factory import ProviderRegistry, create_secret_manager
from libs.secrets.manager import SecretManager
from libs.secrets.models import (
    ResolutionDiagnostic,
    ResolutionFailure,
    ResolvedTree,
    SecretReference,
    UnresolvedSecret,
)
from libs.secrets.redaction import SecretRedactionFilter, SecretRedactor, redact
from libs.secrets.references import parse_references, validate_references
from libs.secrets.resolver import SecretReferenceResolver


def __getattr__(name: str) -> Any:
    """Lazy load backend implementations to avoid importing optional SDKs.

    ``from libs.secrets import GCPSecretManager`` only requires
    google-cloud-secret-manager when the attribute is actually used.
    """
    if name == "AWSSecretsManager":
        from libs.secrets.aws_backend import AWSSecretsManager

        return AWSSecretsManager
    if name == "VaultSecretManager":
        from libs.secrets.vault_backend import VaultSecretManager

        return VaultSecretManager
    if name == "GCPSecretManager":
        from libs.secrets.gcp_backend import GCPSecretManager

        return GCPSecretManager
    if name == "EnvSecretManager":
        from libs.secrets.env_backend import EnvSecretManager

        return EnvSecretManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


# Package exports (PEP 8: __all__ defines public API)
__all__ = [
    # Resolution
    "SecretReferenceResolver",
    "ResolvedTree",
    "ResolutionFailure",
    "ResolutionDiagnostic",
    "UnresolvedSecret",
    "SecretReference",
    "parse_references",
    "validate_references",
    # Configuration
    "SecretsConfig",
    "ProviderConfig",
    # Providers
    "SecretManager",
    "ProviderRegistry",
    "create_secret_manager",
    "EnvSecretManager",
    "VaultSecretManager",
    "AWSSecretsManager",
    "GCPSecretManager",
    # Cache
    "ResolutionCache",
    "CacheState",
    # Redaction
    "redact",
    "SecretRedactor",
    "SecretRedactionFilter",
    # Exceptions (callers should catch these)
    "FailureKind",
    "SecretManagerError",
    "SecretReferenceSyntaxError",
    "UnknownProviderError",
    "ProviderUnconfiguredError",
    "SecretNotFoundError",
    "SecretAccessError",
    "SecretUnavailableError",
    "SecretWriteError",
    "SecretResolutionError",
]
