"""
Reference token parser.

Recognises ``${provider:name#version}`` tokens embedded anywhere in string
scalars of a configuration tree.

Grammar:
    token    := "${" provider ":" name ( "#" version )? "}"
    provider := [a-z][a-z0-9_-]*
    name     := [A-Za-z0-9_\\-/.]+
    version  := [A-Za-z0-9_.]+

Rules:
    - ``$${...}`` is an escape: it decodes to the literal ``${...}`` and is
      never a reference. The escape alternative is tried first at every
      position.
    - Tokens whose body starts with an uppercase letter or ``_`` belong to the
      environment-substitution grammar (``${HOME}``, ``${DB_URL:-x}``) and are
      left verbatim. Provider ids are lowercase, so the two grammars never
      overlap.
    - Every other ``${...}`` span is a reference candidate; anything that does
      not match the grammar is a syntax error reported at load time.

Example:
    >>> compile_scalar("postgres://app:${vault:db/password}@db").references
    (SecretReference(provider='vault', name='db/password', version='latest'),)
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from libs.secrets.exceptions import SecretReferenceSyntaxError
from libs.secrets.models import LATEST_VERSION, ConfigPath, SecretReference, format_path

PROVIDER_PATTERN = re.compile(r"[a-z][a-z0-9_-]*")
NAME_PATTERN = re.compile(r"[A-Za-z0-9_\-/.]+")
VERSION_PATTERN = re.compile(r"[A-Za-z0-9_.]+")

_TOKEN_PATTERN = re.compile(
    r"(?P<escape>\$\$\{(?P<escaped>[^{}]*)\})"
    r"|(?P<token>\$\{(?P<body>[^{}]*)\})"
    r"|(?P<unterminated>\$\{(?=[a-z]))"
)


def _is_env_token(body: str) -> bool:
    return bool(body) and (body[0].isupper() or body[0] == "_")


@dataclass(frozen=True)
class ReferenceSpan:
    """A reference token (or malformed token) located inside a string."""

    start: int
    end: int
    text: str
    reference: SecretReference | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.reference is not None


def _parse_body(body: str) -> SecretReference:
    """Parse the inside of ``${...}``; raises ValueError with a reason."""
    provider, sep, rest = body.partition(":")
    if not sep:
        raise ValueError("missing ':' between provider and secret name")
    if not provider:
        raise ValueError("empty provider")
    if not PROVIDER_PATTERN.fullmatch(provider):
        raise ValueError(f"invalid provider '{provider}'")

    name, hash_sep, version = rest.partition("#")
    if not name:
        raise ValueError("empty secret name")
    if not NAME_PATTERN.fullmatch(name):
        raise ValueError("secret name contains a disallowed character")
    if hash_sep:
        if not version:
            raise ValueError("empty version")
        if not VERSION_PATTERN.fullmatch(version):
            raise ValueError("version contains a disallowed character")
    return SecretReference(provider=provider, name=name, version=version or LATEST_VERSION)


def parse_references(text: str) -> list[ReferenceSpan]:
    """
    Return the ordered, non-overlapping reference spans found in ``text``.

    Escaped tokens and environment-substitution tokens are not included.
    Malformed candidates are returned as spans with ``error`` set.

    Example:
        >>> [s.reference.name for s in parse_references("a ${p:x} b ${q:y#2}")]
        ['x', 'y']
    """
    spans: list[ReferenceSpan] = []
    for match in _TOKEN_PATTERN.finditer(text):
        if match.group("escape") is not None:
            continue
        if match.group("unterminated") is not None:
            spans.append(
                ReferenceSpan(
                    start=match.start(),
                    end=len(text),
                    text=text[match.start() :],
                    error="unterminated reference token",
                )
            )
            continue
        body = match.group("body")
        if _is_env_token(body):
            continue
        try:
            reference = _parse_body(body)
        except ValueError as exc:
            spans.append(
                ReferenceSpan(match.start(), match.end(), match.group("token"), error=str(exc))
            )
        else:
            spans.append(
                ReferenceSpan(match.start(), match.end(), match.group("token"), reference=reference)
            )
    return spans


@dataclass(frozen=True)
class ScalarTemplate:
    """
    A string scalar split into literal text and reference segments.

    Literal segments already have escapes decoded, so rendering only needs
    the resolved values.
    """

    raw: str
    segments: tuple[str | SecretReference, ...]

    @property
    def references(self) -> tuple[SecretReference, ...]:
        return tuple(seg for seg in self.segments if isinstance(seg, SecretReference))

    @property
    def has_escapes(self) -> bool:
        return "$${" in self.raw

    def render(self, values: Mapping[SecretReference, str]) -> str:
        """Substitute resolved values; raises KeyError for a missing reference."""
        return "".join(
            values[seg] if isinstance(seg, SecretReference) else seg for seg in self.segments
        )


def compile_scalar(text: str) -> ScalarTemplate:
    """
    Split ``text`` into literal and reference segments.

    Raises:
        ValueError: First malformed token found (message is the reason)
    """
    segments: list[str | SecretReference] = []
    literal: list[str] = []
    cursor = 0
    for match in _TOKEN_PATTERN.finditer(text):
        literal.append(text[cursor : match.start()])
        cursor = match.end()
        if match.group("escape") is not None:
            literal.append("${" + match.group("escaped") + "}")
            continue
        if match.group("unterminated") is not None:
            raise ValueError("unterminated reference token")
        body = match.group("body")
        if _is_env_token(body):
            literal.append(match.group("token"))
            continue
        reference = _parse_body(body)
        if literal:
            segments.append("".join(literal))
            literal = []
        segments.append(reference)
    literal.append(text[cursor:])
    tail = "".join(literal)
    if tail:
        segments.append(tail)
    return ScalarTemplate(raw=text, segments=tuple(segments))


def iter_scalars(tree: Any, path: ConfigPath = ()) -> Iterator[tuple[ConfigPath, str]]:
    """Yield ``(path, value)`` for every string scalar in a nested tree."""
    if isinstance(tree, str):
        yield path, tree
    elif isinstance(tree, Mapping):
        for key, value in tree.items():
            yield from iter_scalars(value, (*path, key))
    elif isinstance(tree, (list, tuple)):
        for index, value in enumerate(tree):
            yield from iter_scalars(value, (*path, index))


def collect_references(tree: Any) -> dict[ConfigPath, ScalarTemplate]:
    """
    Compile every string scalar that contains a reference or an escape.

    Scalars without either are omitted, so an empty result means the tree
    needs no rewriting at all.

    Raises:
        SecretReferenceSyntaxError: One or more malformed tokens (all of them
            are reported, each with its configuration path)
    """
    templates: dict[ConfigPath, ScalarTemplate] = {}
    errors: list[tuple[str, str, str]] = []
    for path, value in iter_scalars(tree):
        if "${" not in value:
            continue
        bad = [span for span in parse_references(value) if not span.ok]
        if bad:
            errors.extend((format_path(path), span.text, span.error or "invalid") for span in bad)
            continue
        template = compile_scalar(value)
        if template.references or template.has_escapes:
            templates[path] = template
    if errors:
        raise SecretReferenceSyntaxError(errors)
    return templates


def validate_references(tree: Any) -> None:
    """
    Load-time check: fail fast on malformed reference tokens.

    Configuration loaders call this right after parsing so that later stages
    never see invalid tokens.

    Raises:
        SecretReferenceSyntaxError: One or more malformed tokens
    """
    collect_references(tree)
