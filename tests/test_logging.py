"""Tests for structured logging and auth context propagation."""

import asyncio
import json
import logging

import pytest

from reins_auth.observability import (
    clear_auth_context,
    configure_logging,
    get_auth_context,
    reset_auth_context,
    set_auth_context,
)
from reins_auth.observability.logging import HumanReadableFormatter, StructuredFormatter


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("reins_auth.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestAuthContext:
    def test_set_merges_and_reset_restores(self):
        outer = set_auth_context(provider="anthropic")
        inner = set_auth_context(flow_id="flow-1")

        assert get_auth_context() == {"provider": "anthropic", "flow_id": "flow-1"}

        reset_auth_context(inner)
        assert get_auth_context() == {"provider": "anthropic"}
        reset_auth_context(outer)
        assert get_auth_context() == {}

    def test_get_returns_copy(self):
        set_auth_context(provider="openai")
        get_auth_context()["provider"] = "mutated"
        assert get_auth_context() == {"provider": "openai"}

    def test_clear(self):
        set_auth_context(provider="openai")
        clear_auth_context()
        assert get_auth_context() == {}

    @pytest.mark.asyncio
    async def test_concurrent_tasks_are_isolated(self):
        async def flow(provider: str) -> dict:
            set_auth_context(provider=provider)
            await asyncio.sleep(0.01)
            return get_auth_context()

        first, second = await asyncio.gather(flow("anthropic"), flow("acme"))

        assert first == {"provider": "anthropic"}
        assert second == {"provider": "acme"}
        assert get_auth_context() == {}


class TestStructuredFormatter:
    def test_includes_context_and_extra_fields(self):
        set_auth_context(provider="acme", flow_id="abcdef123456")

        entry = json.loads(
            StructuredFormatter().format(_record("\033[32mstarted\033[0m", event="oauth_initiated"))
        )

        assert entry["message"] == "started"
        assert entry["level"] == "info"
        assert entry["logger"] == "reins_auth.test"
        assert entry["provider"] == "acme"
        assert entry["flow_id"] == "abcdef123456"
        assert entry["event"] == "oauth_initiated"
        assert "timestamp" in entry

    def test_unknown_extras_not_copied(self):
        entry = json.loads(StructuredFormatter().format(_record(secret="value")))
        assert "secret" not in entry


class TestHumanReadableFormatter:
    def test_prefix_from_context(self):
        set_auth_context(provider="acme", flow_id="abcdef123456")

        line = HumanReadableFormatter().format(_record("started", event="oauth_initiated"))

        assert "[provider:acme | flow:abcdef12]" in line
        assert line.endswith("started [oauth_initiated]")

    def test_provider_from_record_extra(self):
        line = HumanReadableFormatter().format(_record("revoked", provider="openai"))
        assert "[provider:openai]" in line


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_format(self):
        configure_logging(level="debug", format="json")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_auto_uses_env(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        configure_logging(format="auto")
        assert isinstance(logging.getLogger().handlers[0].formatter, StructuredFormatter)

        monkeypatch.delenv("LOG_FORMAT")
        monkeypatch.setenv("ENV", "development")
        configure_logging(format="auto")
        assert isinstance(logging.getLogger().handlers[0].formatter, HumanReadableFormatter)
