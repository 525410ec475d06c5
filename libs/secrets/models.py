"""
Value types shared by the parser, cache, resolver and redaction guard.

None of these types ever render a resolved secret value in their repr:
values travel as pydantic SecretStr and the resolved tree is excluded from
ResolvedTree's repr.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import SecretStr

from libs.secrets.exceptions import FailureKind, SecretResolutionError

LATEST_VERSION = "latest"

ConfigPath = tuple[str | int, ...]


def format_path(path: ConfigPath) -> str:
    """
    Render a configuration path the way failures report it.

    Examples:
        >>> format_path(("b", "d"))
        'b.d'
        >>> format_path(("servers", 0, "token"))
        'servers[0].token'
    """
    rendered = ""
    for segment in path:
        if isinstance(segment, int):
            rendered += f"[{segment}]"
        elif rendered:
            rendered += f".{segment}"
        else:
            rendered = str(segment)
    return rendered


@dataclass(frozen=True)
class SecretReference:
    """
    Parsed identity of a ``${provider:name#version}`` token.

    Identity for caching is the full (provider, name, version) triple; an
    absent version is stored as "latest".
    """

    provider: str
    name: str
    version: str = LATEST_VERSION

    @property
    def token(self) -> str:
        """Reference token as it would appear in configuration."""
        if self.version == LATEST_VERSION:
            return f"${{{self.provider}:{self.name}}}"
        return f"${{{self.provider}:{self.name}#{self.version}}}"

    @property
    def key(self) -> str:
        """Fully-qualified cache key, e.g. ``gcp:db/password#latest``."""
        return f"{self.provider}:{self.name}#{self.version}"

    def log_context(self) -> dict[str, str]:
        """Structured logging fields identifying this reference (no value)."""
        return {"provider": self.provider, "secret_name": self.name, "version": self.version}


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of resolving one distinct reference during a pass."""

    reference: SecretReference
    value: SecretStr | None = None
    kind: FailureKind | None = None
    detail: str | None = None
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class ResolutionFailure:
    """One unresolved reference at one configuration path."""

    path: str
    reference: SecretReference
    kind: FailureKind
    detail: str | None = None

    def as_dict(self) -> dict[str, str | None]:
        return {
            "path": self.path,
            "provider": self.reference.provider,
            "secret_name": self.reference.name,
            "version": self.reference.version,
            "kind": self.kind.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ResolutionDiagnostic:
    """Non-fatal event recorded during a pass (e.g. stale fallback)."""

    reference: SecretReference
    message: str
    paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnresolvedSecret:
    """
    Marker left in the rewritten tree where a scalar could not be resolved.

    Deliberately not a ``str``: a consumer can never mistake it for an
    intentional literal ``${...}`` value.
    """

    template: str
    failures: tuple[ResolutionFailure, ...]

    @property
    def kinds(self) -> tuple[FailureKind, ...]:
        return tuple(failure.kind for failure in self.failures)

    def __str__(self) -> str:
        kinds = ", ".join(kind.value for kind in self.kinds)
        return f"<unresolved {self.template!r}: {kinds}>"


@dataclass
class ResolvedTree:
    """
    Result of a resolution pass.

    Attributes:
        tree: Rewritten configuration tree (contains plaintext secrets)
        failures: One entry per unresolved reference per configuration path
        diagnostics: Non-fatal warnings (stale fallbacks)
        provenance: Path -> original raw scalar text for every position
            that was substituted, escape-decoded or marked unresolved; the
            redaction guard uses it to rebuild a display-safe tree
    """

    tree: Any = field(repr=False)
    failures: list[ResolutionFailure] = field(default_factory=list)
    diagnostics: list[ResolutionDiagnostic] = field(default_factory=list)
    provenance: dict[ConfigPath, str] = field(default_factory=dict, repr=False)

    @property
    def ok(self) -> bool:
        return not self.failures

    def failures_under(self, path: str) -> list[ResolutionFailure]:
        """Failures at ``path`` or nested below it."""
        if not path:
            return list(self.failures)
        return [
            failure
            for failure in self.failures
            if failure.path == path
            or failure.path.startswith(f"{path}.")
            or failure.path.startswith(f"{path}[")
        ]

    def require(self, *paths: str) -> None:
        """
        Raise if any of ``paths`` (or anything below them) failed to resolve.

        With no arguments every failure is treated as fatal. This is the
        opt-in policy for callers that want startup to abort rather than
        disable the dependent feature.

        Raises:
            SecretResolutionError: At least one required path is unresolved
        """
        if not paths:
            blocking = list(self.failures)
        else:
            blocking = list(
                dict.fromkeys(failure for path in paths for failure in self.failures_under(path))
            )
        if blocking:
            raise SecretResolutionError(blocking)
