"""
Tests for OAuthCallbackServer, the loopback OAuth redirect listener.
"""

import asyncio
import socket

import aiohttp
import pytest

from reins_auth.errors import OAuthProtocolError, OAuthStateMismatchError
from reins_auth.oauth.callback_server import (
    CallbackServerConfig,
    OAuthCallbackServer,
    start_callback_server,
)


def _make_server(timeout_seconds: float = 5.0, port: int = 0) -> OAuthCallbackServer:
    """Helper to create a server with port=0 for an OS-assigned port."""
    config = CallbackServerConfig(host="127.0.0.1", port=port, timeout_seconds=timeout_seconds)
    return OAuthCallbackServer(config)


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _hit(url: str) -> tuple[int, str]:
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as resp:
            return resp.status, await resp.text()


class TestCallbackServerLifecycle:
    """Tests for listener start/stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = _make_server()

        await server.start()
        assert server.is_running
        assert server.port is not None
        assert server.redirect_uri == f"http://127.0.0.1:{server.port}/callback"

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        server = _make_server()
        await server.start()

        await server.stop()
        await server.stop()
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        server = _make_server()

        # Should be a no-op, not raise
        await server.stop()
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_rejects_non_loopback_host(self):
        server = OAuthCallbackServer(CallbackServerConfig(host="0.0.0.0"))

        with pytest.raises(OAuthProtocolError, match="loopback"):
            await server.start()
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_bind_failure_is_protocol_error(self):
        first = _make_server()
        await first.start()
        try:
            second = _make_server(port=first.port)
            with pytest.raises(OAuthProtocolError, match="Unable to start"):
                await second.start()
            assert not second.is_running
        finally:
            await first.stop()

    @pytest.mark.asyncio
    async def test_port_released_after_stop(self):
        port = _free_port()
        first = _make_server(port=port)
        await first.start()
        await first.stop()

        second = _make_server(port=port)
        await second.start()
        try:
            assert second.port == port
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with _make_server() as server:
            assert server.is_running
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_start_callback_server_helper(self):
        server = await start_callback_server(CallbackServerConfig(callback_path="/oauth/done"))
        try:
            assert server.is_running
            assert server.redirect_uri.endswith("/oauth/done")
        finally:
            await server.stop()


class TestWaitForCallback:
    """Tests for redirect handling and wait semantics."""

    @pytest.mark.asyncio
    async def test_callback_resolves_wait_and_stops(self):
        server = _make_server()
        await server.start()

        waiter = asyncio.create_task(server.wait_for_callback(expected_state="abc"))
        await asyncio.sleep(0)
        status, text = await _hit(f"{server.redirect_uri}?code=xyz&state=abc")

        params = await waiter
        assert status == 200
        assert "return to Reins" in text
        assert params.code == "xyz"
        assert params.state == "abc"
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_callback_before_wait_is_kept(self):
        server = _make_server()
        await server.start()

        status, _ = await _hit(f"{server.redirect_uri}?code=early&state=s1")
        params = await server.wait_for_callback(expected_state="s1")

        assert status == 200
        assert params.code == "early"

    @pytest.mark.asyncio
    async def test_second_hit_gets_gone(self):
        server = _make_server()
        await server.start()

        try:
            first_status, _ = await _hit(f"{server.redirect_uri}?code=one&state=s")
            second_status, _ = await _hit(f"{server.redirect_uri}?code=two&state=s")

            assert first_status == 200
            assert second_status == 410
            params = await server.wait_for_callback(expected_state="s")
            assert params.code == "one"
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_unknown_path_is_not_found(self):
        server = _make_server()
        await server.start()

        try:
            status, _ = await _hit(f"http://127.0.0.1:{server.port}/elsewhere?code=x&state=y")
            assert status == 404
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_state_mismatch_is_rejected(self):
        server = _make_server()
        await server.start()

        await _hit(f"{server.redirect_uri}?code=xyz&state=forged")
        with pytest.raises(OAuthStateMismatchError):
            await server.wait_for_callback(expected_state="abc")
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_missing_code(self):
        server = _make_server()
        await server.start()

        await _hit(f"{server.redirect_uri}?state=abc")
        with pytest.raises(OAuthProtocolError, match="missing authorization code"):
            await server.wait_for_callback(expected_state="abc")

    @pytest.mark.asyncio
    async def test_missing_state(self):
        server = _make_server()
        await server.start()

        await _hit(f"{server.redirect_uri}?code=xyz")
        with pytest.raises(OAuthProtocolError, match="missing state"):
            await server.wait_for_callback(expected_state="abc")

    @pytest.mark.asyncio
    async def test_provider_error(self):
        server = _make_server()
        await server.start()

        await _hit(f"{server.redirect_uri}?error=access_denied&error_description=User+said+no")
        with pytest.raises(OAuthProtocolError, match="access_denied. User said no"):
            await server.wait_for_callback()

    @pytest.mark.asyncio
    async def test_timeout_fails_and_stops(self):
        server = _make_server(timeout_seconds=0.05)
        await server.start()

        with pytest.raises(OAuthProtocolError, match="Timed out"):
            await server.wait_for_callback(expected_state="abc")
        assert not server.is_running

    @pytest.mark.asyncio
    async def test_stop_fails_pending_wait(self):
        server = _make_server()
        await server.start()

        waiter = asyncio.create_task(server.wait_for_callback(expected_state="abc"))
        await asyncio.sleep(0.01)
        await server.stop()

        with pytest.raises(OAuthProtocolError, match="stopped before callback"):
            await waiter

    @pytest.mark.asyncio
    async def test_wait_after_completion_fails(self):
        server = _make_server()
        await server.start()

        await _hit(f"{server.redirect_uri}?code=xyz&state=abc")
        await server.wait_for_callback(expected_state="abc")

        with pytest.raises(OAuthProtocolError, match="already completed"):
            await server.wait_for_callback(expected_state="abc")
