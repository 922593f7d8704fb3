"""Session lifecycle: login and idempotent forced logout."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from .storage import DEFAULT_SKEW_MS, TokenSet, TokenStore

logger = logging.getLogger(__name__)

SessionEndedCallback = Callable[[str | None], None]


class SessionController:
    """Owns the session's terminal failure path.

    ``force_logout`` may be hit by many callers at once, e.g. every request
    parked on a refresh that failed. Only the first one since the last
    login clears the store and fires the callback; the rest are no-ops.
    """

    def __init__(
        self,
        store: TokenStore,
        on_session_ended: SessionEndedCallback | None = None,
        skew_ms: int = DEFAULT_SKEW_MS,
    ):
        self.store = store
        self.skew_ms = skew_ms
        self._callback = on_session_ended
        self._lock = threading.Lock()
        self._ended = False
        self.logout_count = 0

    def register_callback(self, callback: SessionEndedCallback | None) -> None:
        """Replace the "session ended" callback."""
        self._callback = callback

    @property
    def ended(self) -> bool:
        return self._ended

    def login(self, tokens: dict[str, Any], user: dict[str, Any]) -> TokenSet:
        """Store a freshly issued session and re-arm forced logout."""
        token_set = TokenSet.from_response(tokens, skew_ms=self.skew_ms)
        with self._lock:
            self.store.save(token_set, user)
            self._ended = False
        logger.info("Session started")
        return token_set

    def force_logout(self, reason: str | None = None) -> bool:
        """Clear the session and signal the host application once.

        Returns:
            True if this call ended the session, False if it was already ended
        """
        with self._lock:
            if self._ended:
                return False
            self._ended = True
            self.store.clear()
            self.logout_count += 1

        logger.warning("Session ended: %s", reason or "logout")
        if self._callback is not None:
            try:
                self._callback(reason)
            except Exception:
                logger.exception("Session-ended callback failed")
        return True
