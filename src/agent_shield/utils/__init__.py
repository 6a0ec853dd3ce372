"""
agent-shield utilities

Logging and helper utilities.
"""

from agent_shield.utils.logger import (
    get_logger,
    get_fallback_logger,
    configure_logging,
    DEFAULT_FORMAT,
)

__all__ = [
    "get_logger",
    "get_fallback_logger",
    "configure_logging",
    "DEFAULT_FORMAT",
]
