"""Centralized structured logging library.

Structured JSON logging with resolution pass ID correlation and secret
value scrubbing.

Usage:
    # At process startup
    from libs.common.logging import configure_logging
    configure_logging(service_name="config-loader", log_level="INFO",
                      redactor=resolver.redactor)
"""

from libs.common.logging.config import PassIDFilter, configure_logging
from libs.common.logging.context import (
    ResolutionPassContext,
    clear_pass_id,
    generate_pass_id,
    get_pass_id,
    set_pass_id,
)
from libs.common.logging.formatter import JSONFormatter

__all__ = [
    # Configuration
    "configure_logging",
    "PassIDFilter",
    # Pass ID management
    "generate_pass_id",
    "get_pass_id",
    "set_pass_id",
    "clear_pass_id",
    "ResolutionPassContext",
    # Formatter (for advanced usage)
    "JSONFormatter",
]
