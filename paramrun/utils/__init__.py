"""Utility modules for the parameterized run engine.

Provides:
- Structured logging configuration
"""

from .logging import LogContext, configure_logging

__all__ = [
    "configure_logging",
    "LogContext",
]
