"""
Observability module for structured logging with auth context.

- ContextVar-propagated provider / flow identifiers
- Structured JSON logging for production
- Human-readable logging for development
"""

from reins_auth.observability.logging import (
    clear_auth_context,
    configure_logging,
    get_auth_context,
    reset_auth_context,
    set_auth_context,
)

__all__ = [
    "configure_logging",
    "get_auth_context",
    "set_auth_context",
    "reset_auth_context",
    "clear_auth_context",
]
