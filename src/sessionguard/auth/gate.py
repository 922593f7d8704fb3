"""Single-flight token refresh coordinator.

When many in-flight requests learn at once that the access token expired,
exactly one of them drives a refresh; the others park on the gate until that
refresh settles. Each caller then replays its own request once with the new
token, or fails with the refresh error.

The gate belongs to one event loop. Its state check and mutation never
straddle an ``await``, which is what makes them atomic.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

import httpx

from ..errors import ApiError, RefreshError, SessionClosedError
from .refresh import RefreshClient
from .session import SessionController
from .storage import TokenStore

if TYPE_CHECKING:
    from ..api.pipeline import RequestDescriptor

logger = logging.getLogger(__name__)

Replay = Callable[["RequestDescriptor"], Awaitable[httpx.Response]]


class GateState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class AuthGate:
    """Coordinates token refresh across concurrent callers.

    Usage:
        gate = AuthGate(store, refresher, controller)

        # from a request that got 401 + TOKEN_EXPIRED
        response = await gate.handle_auth_failure(descriptor, error, replay)

        # on shutdown
        gate.dispose()
    """

    def __init__(
        self,
        store: TokenStore,
        refresher: RefreshClient,
        controller: SessionController,
    ):
        self.store = store
        self.refresher = refresher
        self.controller = controller
        self.state = GateState.IDLE
        self.refresh_count = 0
        self._waiters: deque[asyncio.Future[str]] = deque()
        self._refresh_task: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of callers parked on the current refresh."""
        return len(self._waiters)

    @property
    def closed(self) -> bool:
        return self._closed

    async def handle_auth_failure(
        self,
        descriptor: "RequestDescriptor",
        error: ApiError,
        replay: Replay,
    ) -> httpx.Response:
        """Refresh (or wait for the refresh in flight) and replay the request.

        Only called for a 401 carrying TOKEN_EXPIRED on a request that has
        not been replayed yet.

        Raises:
            RefreshError: If the refresh failed; the session is already ended
            SessionClosedError: If the gate was disposed while waiting
        """
        descriptor.retried = True

        current = self.store.access_token
        if (
            self.state is GateState.IDLE
            and current
            and descriptor.sent_token
            and current != descriptor.sent_token
        ):
            # Another caller already refreshed after this request left.
            logger.debug("Token already rotated, replaying %s %s", descriptor.method, descriptor.url)
            return await replay(descriptor)

        logger.debug(
            "Auth expired for %s %s (%s), waiting for refresh",
            descriptor.method,
            descriptor.url,
            error.code,
        )
        await self._wait_for_token()
        return await replay(descriptor)

    async def refresh_now(self) -> str:
        """Force a refresh, joining one already in flight.

        Returns:
            The new access token
        """
        return await self._wait_for_token()

    async def _wait_for_token(self) -> str:
        if self._closed:
            raise SessionClosedError("Client is closed", code="SESSION_CLOSED")

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[str] = loop.create_future()
        self._waiters.append(waiter)

        if self.state is GateState.IDLE:
            self.state = GateState.REFRESHING
            self._refresh_task = loop.create_task(self._run_refresh())

        try:
            return await waiter
        except asyncio.CancelledError:
            # Caller gave up; the refresh and other waiters carry on.
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass
            raise

    async def _run_refresh(self) -> None:
        self.refresh_count += 1
        logouts = self.controller.logout_count
        logger.info("Refreshing access token (%d waiting)", len(self._waiters))
        try:
            result = await self.refresher.refresh(self.store.refresh_token)
        except asyncio.CancelledError:
            self._settle(error=SessionClosedError("Client is closed", code="SESSION_CLOSED"))
            raise
        except RefreshError as e:
            error = e
        except Exception as e:
            error = RefreshError(f"Token refresh failed: {e}", code="REFRESH_FAILED")
            error.__cause__ = e
        else:
            if self.controller.logout_count != logouts:
                # Session ended while the refresh was in flight; the new
                # tokens must not bring it back.
                logger.info("Session ended during refresh, discarding new tokens")
                self._settle(
                    error=RefreshError("Session ended during token refresh", code="SESSION_ENDED")
                )
                return
            self.store.save(result.tokens, result.user)
            logger.info("Access token refreshed")
            self._settle(token=result.tokens.access_token)
            return

        logger.warning("Token refresh failed: %s", error.message)
        self._settle(error=error)
        self.controller.force_logout(error.code or "refresh_failed")

    def _settle(self, token: str | None = None, error: ApiError | None = None) -> None:
        """Settle every parked waiter with one outcome and go back to IDLE."""
        waiters = list(self._waiters)
        self._waiters.clear()
        self.state = GateState.IDLE
        self._refresh_task = None

        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    def dispose(self) -> None:
        """Reject parked callers and stop any refresh in flight."""
        self._closed = True
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
        self._settle(error=SessionClosedError("Client is closed", code="SESSION_CLOSED"))
