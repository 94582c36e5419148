"""
Logging module - structured logging with structlog.
"""

from .setup import configure_logging

__all__ = [
    "configure_logging",
]
