"""
OAuth token keepalive - refreshes an access token shortly before it expires.

The loop sleeps until ``expires_at - buffer`` (the moment the token starts
reading as expired), calls the refresh callable, then reschedules from the
new expiry. Failed refreshes are retried with a capped backoff of
1m, 2m, 5m, 10m, then every 30m.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from reins_auth.credentials.models import utc_now
from reins_auth.errors import AuthError
from reins_auth.oauth.models import EXPIRY_BUFFER, OAuthTokens

RETRY_DELAYS_SECONDS: tuple[float, ...] = (60.0, 120.0, 300.0, 600.0, 1800.0)


class OAuthTokenKeepalive:
    """
    Background task that keeps one provider's OAuth token fresh.

    Lifecycle:
        keepalive = service.create_keepalive("anthropic")
        await keepalive.start()
        ...
        await keepalive.stop()
    """

    def __init__(
        self,
        provider: str,
        refresh: Callable[[], Awaitable[str]],
        load_tokens: Callable[[], Awaitable[OAuthTokens | None]],
        refresh_buffer: timedelta = EXPIRY_BUFFER,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            provider: Provider id, used for logging only.
            refresh: Returns a fresh access token, refreshing and persisting
                when the stored token is inside the buffer. Raises on failure.
            load_tokens: Reads the stored tokens without refreshing.
            refresh_buffer: Lead time before expiry; must match the buffer the
                refresh callable uses so the scheduled call really refreshes.
            clock: Current time source.
            sleep: Awaitable sleep; tests inject a fake.
            logger: Log sink; defaults to this module's logger.
        """
        self.provider = provider
        self._refresh = refresh
        self._load_tokens = load_tokens
        self._refresh_buffer = refresh_buffer
        self._clock = clock
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)
        self._task: asyncio.Task[None] | None = None
        self.retry_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop. No-op if already running."""
        if self.is_running:
            return
        self.retry_count = 0
        self._task = asyncio.create_task(self._run(), name=f"oauth-keepalive-{self.provider}")
        self._logger.info(
            f"OAuth keepalive started for {self.provider}",
            extra={"event": "oauth_keepalive_started", "provider": self.provider},
        )

    async def stop(self) -> None:
        """Cancel the background loop. No-op if not running."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._logger.info(
            f"OAuth keepalive stopped for {self.provider}",
            extra={"event": "oauth_keepalive_stopped", "provider": self.provider},
        )

    async def next_delay(self) -> float | None:
        """Seconds until the next scheduled refresh, or None if nothing can be refreshed."""
        try:
            tokens = await self._load_tokens()
        except AuthError as e:
            self._logger.warning(
                f"Keepalive could not load tokens for {self.provider}: {e.message}",
                extra={"event": "oauth_keepalive_load_failed", "provider": self.provider},
            )
            return None

        if tokens is None or tokens.refresh_token is None:
            self._logger.debug(
                f"Keepalive has nothing to refresh for {self.provider}",
                extra={"event": "oauth_keepalive_idle", "provider": self.provider},
            )
            return None

        refresh_at = tokens.expires_at - self._refresh_buffer
        return max(0.0, (refresh_at - self._clock()).total_seconds())

    async def _run(self) -> None:
        delay = await self.next_delay()
        while delay is not None:
            await self._sleep(delay)
            if await self._refresh_once():
                delay = await self.next_delay()
            else:
                delay = self._retry_delay()

    async def _refresh_once(self) -> bool:
        self._logger.info(
            f"Keepalive refreshing token for {self.provider}",
            extra={"event": "oauth_keepalive_refresh", "provider": self.provider},
        )
        try:
            await self._refresh()
        except AuthError as e:
            self._logger.warning(
                f"Keepalive refresh failed for {self.provider} "
                f"(attempt {self.retry_count + 1}): {e.message}",
                extra={"event": "oauth_keepalive_refresh_failed", "provider": self.provider},
            )
            return False
        self.retry_count = 0
        return True

    def _retry_delay(self) -> float:
        index = min(self.retry_count, len(RETRY_DELAYS_SECONDS) - 1)
        self.retry_count += 1
        return RETRY_DELAYS_SECONDS[index]
