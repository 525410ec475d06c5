"""Centralized logging configuration.

Sets up structured JSON output on stdout with pass ID injection and, when a
SecretRedactor is supplied, scrubbing of resolved secret values.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="config-loader", log_level="INFO",
    ...                            redactor=resolver.redactor)
"""

import logging
import sys

from libs.common.logging.context import get_pass_id
from libs.common.logging.formatter import JSONFormatter
from libs.secrets.redaction import SecretRedactionFilter, SecretRedactor


class PassIDFilter(logging.Filter):
    """Logging filter that adds the current resolution pass ID to records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - matches logging API
        record.pass_id = get_pass_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
    redactor: SecretRedactor | None = None,
) -> logging.Logger:
    """Configure structured JSON logging on the root logger.

    This should be called once at process startup.

    Args:
        service_name: Name of the service stamped on every line
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include extra fields in output
        redactor: When given, resolved secret values are scrubbed from every
            record before formatting

    Returns:
        Configured root logger instance

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(PassIDFilter())
    if redactor is not None:
        handler.addFilter(SecretRedactionFilter(redactor))

    root_logger.addHandler(handler)
    return root_logger
