"""
OAuth Callback Server - receives the authorization redirect on loopback.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. One server instance serves exactly one OAuth flow:
the first request to the callback path settles the wait, later requests get
410 Gone, and the listener is torn down as soon as the wait settles.
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from types import TracebackType

from aiohttp import web

from reins_auth.config import (
    DEFAULT_CALLBACK_HOST,
    DEFAULT_CALLBACK_PATH,
    DEFAULT_CALLBACK_TIMEOUT_SECONDS,
)
from reins_auth.errors import OAuthProtocolError
from reins_auth.oauth.models import OAuthCallbackParameters, parse_callback_parameters


CALLBACK_RECEIVED_TEXT = "OAuth callback received. You can return to Reins."
CALLBACK_GONE_TEXT = "This sign-in link has already been used. Restart sign-in from Reins."


@dataclass
class CallbackServerConfig:
    """Configuration for the OAuth callback listener."""

    host: str = DEFAULT_CALLBACK_HOST
    port: int = 0  # 0 = ephemeral
    callback_path: str = DEFAULT_CALLBACK_PATH
    timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class OAuthCallbackServer:
    """
    Embedded loopback HTTP server for a single authorization redirect.

    Lifecycle:
        server = OAuthCallbackServer(config)
        await server.start()
        url = flow.get_authorization_url(state, redirect_uri=server.redirect_uri)
        params = await server.wait_for_callback(expected_state=state)
        # server is already stopped here
    """

    def __init__(
        self,
        config: CallbackServerConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        self._config = config or CallbackServerConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._callback: asyncio.Future[dict[str, str]] | None = None
        self._waiting = False
        self._settled = False

    async def start(self) -> None:
        """
        Bind the listener.

        Raises:
            OAuthProtocolError: non-loopback host, already started, or bind failure.
        """
        if not _is_loopback(self._config.host):
            raise OAuthProtocolError(
                f"OAuth callback listener must bind a loopback address, got {self._config.host}"
            )
        if self._runner is not None or self._settled:
            raise OAuthProtocolError("OAuth callback listener already started")

        self._callback = asyncio.get_running_loop().create_future()
        self._app = web.Application()
        self._app.router.add_get(self._config.callback_path, self._handle_callback)

        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        try:
            await self._site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            self._callback = None
            raise OAuthProtocolError(
                f"Unable to start OAuth callback listener on "
                f"{self._config.host}:{self._config.port}: {e}",
                e,
            ) from e

        self._logger.info(
            f"OAuth callback listener started on {self.redirect_uri}",
            extra={"event": "oauth_listener_started"},
        )

    async def wait_for_callback(
        self,
        expected_state: str | None = None,
        timeout: float | None = None,
    ) -> OAuthCallbackParameters:
        """
        Suspend until the redirect arrives, then stop the listener.

        Args:
            expected_state: ``state`` issued at initiate time; a different
                value raises ``OAuthStateMismatchError``.
            timeout: Seconds to wait (defaults to the configured timeout).

        Raises:
            OAuthProtocolError: timeout, listener stopped, provider error,
                missing code/state, or the session already completed.
        """
        if self._settled or self._waiting:
            raise OAuthProtocolError("OAuth callback session already completed")
        if self._callback is None or self._callback.cancelled():
            raise OAuthProtocolError("OAuth callback listener is not running")

        self._waiting = True
        wait_seconds = self._config.timeout_seconds if timeout is None else timeout
        try:
            query = await asyncio.wait_for(self._callback, wait_seconds)
        except TimeoutError as e:
            self._logger.warning(
                "Timed out waiting for OAuth callback",
                extra={"event": "oauth_callback_timeout"},
            )
            raise OAuthProtocolError(
                "Timed out waiting for OAuth callback. Restart sign-in and try again.", e
            ) from e
        finally:
            self._settled = True
            await self.stop()

        return parse_callback_parameters(query, expected_state)

    async def stop(self) -> None:
        """Stop the listener. Idempotent; a pending wait fails."""
        self._settled = True
        if self._callback is not None and not self._callback.done():
            if self._waiting:
                self._callback.set_exception(
                    OAuthProtocolError("OAuth callback listener stopped before callback was received")
                )
            else:
                self._callback.cancel()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            self._logger.info(
                "OAuth callback listener stopped",
                extra={"event": "oauth_listener_stopped"},
            )

    async def _handle_callback(self, request: web.Request) -> web.Response:
        """Record the first redirect; reject any later one."""
        if self._callback is None or self._callback.done():
            return web.Response(status=410, text=CALLBACK_GONE_TEXT)

        self._callback.set_result(dict(request.query))
        self._logger.info(
            "OAuth callback received",
            extra={"event": "oauth_callback_received"},
        )
        return web.Response(text=CALLBACK_RECEIVED_TEXT, content_type="text/plain")

    async def __aenter__(self) -> "OAuthCallbackServer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    @property
    def is_running(self) -> bool:
        """Check if the listener is bound."""
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    @property
    def redirect_uri(self) -> str:
        """Loopback URL to register as the OAuth ``redirect_uri``."""
        port = self.port if self.port is not None else self._config.port
        return f"http://{self._config.host}:{port}{self._config.callback_path}"


async def start_callback_server(
    config: CallbackServerConfig | None = None,
    logger: logging.Logger | None = None,
) -> OAuthCallbackServer:
    """Create and start a callback listener in one call."""
    server = OAuthCallbackServer(config, logger=logger)
    await server.start()
    return server
