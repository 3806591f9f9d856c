"""
Structured logging with automatic auth context propagation.

Key Features:
- Standard logger.info() calls pick up the current provider/flow automatically
- ContextVar-based propagation: async-safe across concurrent OAuth flows
- Dual output modes: JSON for production, human-readable for development
- Secrets are never part of the context; only identifiers are

Architecture:
    ProviderAuthService.initiate_oauth() → sets provider + flow_id once
        ↓ (automatic propagation via ContextVar)
    OAuthCallbackServer / OAuthFlowHandler → logger.info("...")
        ↓
    Every record carries provider and flow_id without passing them around
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

auth_context: ContextVar[dict[str, Any] | None] = ContextVar("auth_context", default=None)

# ANSI escape code pattern (matches \033[...m or \x1b[...m)
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Fields copied from ``extra={...}`` onto the JSON entry when present
EXTRA_FIELDS = ("event", "provider", "source", "credential_id", "connection_state")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Auth context (provider, flow_id)
    - Known fields from the extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        context = auth_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a [provider | flow] prefix from the auth context.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string."""
        context = auth_context.get() or {}
        provider = context.get("provider") or getattr(record, "provider", "")
        flow_id = context.get("flow_id", "")

        prefix_parts = []
        if provider:
            prefix_parts.append(f"provider:{provider}")
        if flow_id:
            prefix_parts.append(f"flow:{flow_id[:8]}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application. Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Output format:
            - "json": Machine-parseable JSON (for production)
            - "human": Human-readable with colors (for development)
            - "auto": JSON if LOG_FORMAT=json or ENV=production, else human
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route aiohttp/httpx records through the root JSON handler
        for logger_name in ("aiohttp.access", "aiohttp.server", "httpx", "httpcore"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_auth_context(**kwargs: Any) -> Token[dict[str, Any] | None]:
    """
    Merge fields (provider, flow_id, source) into the current auth context.

    The context propagates through awaits in the same task and is copied
    into tasks created from it. Pass the returned token to
    ``reset_auth_context`` to restore the previous context.
    """
    current = auth_context.get() or {}
    return auth_context.set({**current, **kwargs})


def reset_auth_context(token: Token[dict[str, Any] | None]) -> None:
    """Restore the context that was active before ``set_auth_context``."""
    auth_context.reset(token)


def get_auth_context() -> dict[str, Any]:
    """Return a copy of the current auth context (empty dict if unset)."""
    context = auth_context.get() or {}
    return context.copy()


def clear_auth_context() -> None:
    """Clear the auth context (between tests, or at the end of a flow)."""
    auth_context.set(None)
