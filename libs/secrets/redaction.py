"""
Redaction guard for resolved configuration.

Two layers keep resolved values out of display and log sinks:

- ``redact(resolved)`` rebuilds a display-safe copy of a resolved tree by
  putting back the original ``${provider:name}`` template text at every
  position the resolver substituted. It is a pure provenance lookup: no
  value matching, no provider I/O.
- ``SecretRedactor`` remembers every value resolved in this process and
  scrubs it out of free text (provider error messages, log lines).
  ``SecretRedactionFilter`` applies it to log records before any handler
  formats them.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from libs.secrets.models import ConfigPath, ResolvedTree, UnresolvedSecret

REDACTED = "***"
MIN_SCRUB_LENGTH = 4
MAX_DETAIL_LENGTH = 256

_RESERVED_LOGGING_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def redact(resolved: ResolvedTree) -> Any:
    """
    Return a copy of ``resolved.tree`` with secret positions shown as templates.

    Example:
        >>> resolved = await resolver.resolve_all({"db": {"url": "pg://u:${vault:db/pw}@h"}})
        >>> redact(resolved)
        {'db': {'url': 'pg://u:${vault:db/pw}@h'}}
    """
    if not resolved.provenance:
        return resolved.tree
    return _rebuild(resolved.tree, (), resolved.provenance)


def _rebuild(node: Any, path: ConfigPath, provenance: Mapping[ConfigPath, str]) -> Any:
    if path in provenance:
        return provenance[path]
    if isinstance(node, UnresolvedSecret):
        return node.template
    if isinstance(node, Mapping):
        return {key: _rebuild(value, (*path, key), provenance) for key, value in node.items()}
    if isinstance(node, list):
        return [_rebuild(value, (*path, index), provenance) for index, value in enumerate(node)]
    if isinstance(node, tuple):
        return tuple(_rebuild(value, (*path, index), provenance) for index, value in enumerate(node))
    return node


class SecretRedactor:
    """
    In-memory registry of resolved values used to scrub free text.

    Values shorter than MIN_SCRUB_LENGTH are not registered: scrubbing
    them would mangle unrelated text.

    Thread Safety:
        register() and clear() are serialised with threading.Lock; scrub()
        reads an immutable compiled pattern.
    """

    def __init__(self, max_length: int = MAX_DETAIL_LENGTH) -> None:
        self._max_length = max_length
        self._values: set[str] = set()
        self._pattern: re.Pattern[str] | None = None
        self._lock = threading.Lock()

    def register(self, values: Iterable[str]) -> None:
        with self._lock:
            added = {value for value in values if len(value) >= MIN_SCRUB_LENGTH} - self._values
            if not added:
                return
            self._values |= added
            # Longest first so a value containing another is replaced whole.
            ordered = sorted(self._values, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(value) for value in ordered))

    def clear(self) -> None:
        with self._lock:
            self._values = set()
            self._pattern = None

    def __len__(self) -> int:
        return len(self._values)

    def scrub(self, text: str, truncate: bool = True) -> str:
        """Replace registered values with ``***``, then bound the length."""
        pattern = self._pattern
        if pattern is not None:
            text = pattern.sub(REDACTED, text)
        if truncate and len(text) > self._max_length:
            text = text[: self._max_length - 3] + "..."
        return text

    def scrub_value(self, value: Any) -> Any:
        """Scrub strings nested in dicts/lists/tuples, preserving types."""
        if isinstance(value, str):
            return self.scrub(value, truncate=False)
        if isinstance(value, dict):
            return {key: self.scrub_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.scrub_value(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.scrub_value(item) for item in value)
        return value


class SecretRedactionFilter(logging.Filter):
    """
    Logging filter that removes resolved secret values from records.

    Attach it to handlers (configure_logging does this) so it runs before
    formatting. The message is rendered and scrubbed eagerly; extra fields
    and exception text are scrubbed in place.
    """

    def __init__(self, redactor: SecretRedactor) -> None:
        super().__init__()
        self._redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - matches logging API
        if not len(self._redactor):
            return True
        redactor = self._redactor
        record.msg = redactor.scrub(record.getMessage(), truncate=False)
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key in _RESERVED_LOGGING_FIELDS:
                continue
            record.__dict__[key] = redactor.scrub_value(value)
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redactor.scrub(record.exc_text, truncate=False)
        return True


__all__ = [
    "MAX_DETAIL_LENGTH",
    "REDACTED",
    "SecretRedactionFilter",
    "SecretRedactor",
    "redact",
]
