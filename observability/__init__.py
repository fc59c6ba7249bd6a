"""Observability package for SiteFoundry."""

from .logging import (
    JSONFormatter,
    ColoredFormatter,
    StructuredLogger,
    get_structured_logger,
    setup_logging
)

__all__ = [
    'JSONFormatter',
    'ColoredFormatter',
    'StructuredLogger',
    'get_structured_logger',
    'setup_logging'
]
