"""Proactive refresh ahead of token expiry."""

from __future__ import annotations

import asyncio
import logging

from ..errors import ApiError
from .gate import AuthGate
from .storage import DEFAULT_SOON_WINDOW_MS, TokenStore

logger = logging.getLogger(__name__)

# Floor for the delay after a refresh, so short-lived tokens never spin.
MIN_REARM_DELAY_SECONDS = 1.0


class RefreshScheduler:
    """Refreshes the access token shortly before it expires.

    Goes through the gate, so a scheduled refresh and a reactive one
    triggered by a 401 never run at the same time. Re-arms after every
    successful refresh and stops after a failed one.

    A token whose whole lifetime fits inside the refresh-ahead window is
    refreshed at half its remaining lifetime when re-arming.
    """

    def __init__(
        self,
        gate: AuthGate,
        store: TokenStore,
        refresh_ahead_ms: int = DEFAULT_SOON_WINDOW_MS,
    ):
        self.gate = gate
        self.store = store
        self.refresh_ahead_ms = refresh_ahead_ms
        self._task: asyncio.Task | None = None

    @property
    def scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def delay_seconds(self, rearm: bool = False) -> float | None:
        """Seconds until the next refresh, or None when nothing to refresh.

        Args:
            rearm: True right after a refresh; a fresh token already inside
                the window then waits for half its remaining lifetime instead
                of refreshing again at once
        """
        remaining = self.store.time_until_expiry_ms()
        if remaining <= 0:
            return None
        if remaining > self.refresh_ahead_ms:
            return (remaining - self.refresh_ahead_ms) / 1000
        if not rearm:
            return 0
        return max(MIN_REARM_DELAY_SECONDS, remaining / 2000)

    def schedule(self, rearm: bool = False) -> bool:
        """Arm (or re-arm) the timer. Returns False if the token already expired."""
        self.cancel()
        delay = self.delay_seconds(rearm)
        if delay is None:
            logger.info("Token already expired, not scheduling refresh")
            return False
        logger.info("Token refresh scheduled in %.0fs", delay)
        self._task = asyncio.get_running_loop().create_task(self._run(delay))
        return True

    async def _run(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.gate.refresh_now()
        except ApiError as e:
            logger.warning("Scheduled token refresh failed: %s", e.message)
            return
        self._task = None
        self.schedule(rearm=True)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
