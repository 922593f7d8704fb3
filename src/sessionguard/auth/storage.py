"""Token storage for the authenticated session.

Holds the current token set and the cached user profile behind a pluggable
backend (in-memory or a JSON file). All reads and writes are serialized by a
lock so no caller ever observes a half-written token set.

Note: File-backed tokens are stored in plaintext and protected by file
permissions (0o600).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

# Safety margin subtracted from the server-declared lifetime
DEFAULT_SKEW_MS = 5 * 60 * 1000
# "Expiring soon" window used for proactive refresh
DEFAULT_SOON_WINDOW_MS = 10 * 60 * 1000
# Lifetime assumed when the server omits expiresIn (seconds)
DEFAULT_EXPIRES_IN = 3600


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class TokenSet:
    """Access/refresh token pair with a precomputed expiry."""

    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds, skew already applied

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_at=int(data["expires_at"]),
        )

    @classmethod
    def from_response(
        cls,
        tokens: dict[str, Any],
        previous_refresh_token: str | None = None,
        issued_at: int | None = None,
        skew_ms: int = DEFAULT_SKEW_MS,
    ) -> "TokenSet":
        """Build a token set from a login/refresh payload.

        The refresh token is replaced only if the server issued a new one.

        Raises:
            KeyError: If ``accessToken`` is missing
        """
        issued_at = now_ms() if issued_at is None else issued_at
        expires_in = int(tokens.get("expiresIn", DEFAULT_EXPIRES_IN))
        return cls(
            access_token=tokens["accessToken"],
            refresh_token=tokens.get("refreshToken") or previous_refresh_token or "",
            expires_at=issued_at + expires_in * 1000 - skew_ms,
        )


class StorageBackend(Protocol):
    """Medium holding the persisted session record."""

    def read(self) -> dict[str, Any] | None: ...

    def write(self, record: dict[str, Any]) -> None: ...

    def delete(self) -> None: ...


class MemoryBackend:
    """Process-local storage."""

    def __init__(self, record: dict[str, Any] | None = None):
        self._record = dict(record) if record else None

    def read(self) -> dict[str, Any] | None:
        return dict(self._record) if self._record else None

    def write(self, record: dict[str, Any]) -> None:
        self._record = dict(record)

    def delete(self) -> None:
        self._record = None


class FileBackend:
    """JSON file storage with restrictive permissions.

    Writes go to a temporary sibling first and are moved into place, so a
    crash mid-write never leaves a truncated file behind.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load tokens from %s: %s", self.path, e)
            return None
        return data if isinstance(data, dict) else None

    def write(self, record: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(record, indent=2), encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    def delete(self) -> None:
        if self.path.exists():
            self.path.unlink()


class TokenStore:
    """Durable holder of the current token set and cached user.

    Usage:
        store = TokenStore()                       # in-memory
        store = TokenStore(FileBackend(path))      # persisted

        store.save(token_set, user)                # login
        store.save(new_token_set)                  # refresh, keeps user
        if store.is_expired():
            ...
        store.clear()                              # logout
    """

    def __init__(
        self,
        backend: StorageBackend | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.backend = backend or MemoryBackend()
        self._clock = clock
        self._lock = threading.RLock()

    def _read(self) -> dict[str, Any]:
        return self.backend.read() or {}

    def load(self) -> TokenSet | None:
        """Load the current token set, or None when logged out."""
        with self._lock:
            record = self._read()
        tokens = record.get("tokens")
        if not tokens:
            return None
        try:
            return TokenSet.from_dict(tokens)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed stored tokens: %s", e)
            return None

    def save(self, token_set: TokenSet, user: dict[str, Any] | None = None) -> None:
        """Store a token set.

        Args:
            token_set: New tokens
            user: New user profile; the cached one is kept when omitted
        """
        with self._lock:
            record = self._read()
            record["tokens"] = token_set.to_dict()
            if user is not None:
                record["user"] = user
            record["updated_at"] = datetime.now().isoformat()
            self.backend.write(record)

    def clear(self) -> None:
        """Remove tokens and the cached user."""
        with self._lock:
            self.backend.delete()

    def get_user(self) -> dict[str, Any] | None:
        with self._lock:
            return self._read().get("user")

    @property
    def access_token(self) -> str | None:
        tokens = self.load()
        return tokens.access_token if tokens else None

    @property
    def refresh_token(self) -> str | None:
        tokens = self.load()
        return tokens.refresh_token if tokens and tokens.refresh_token else None

    def is_expired(self, skew_ms: int = 0) -> bool:
        """True iff now >= expiry - skew. No tokens counts as expired."""
        tokens = self.load()
        if not tokens:
            return True
        return self._clock() >= tokens.expires_at - skew_ms

    def time_until_expiry_ms(self) -> int:
        tokens = self.load()
        if not tokens:
            return 0
        return max(0, tokens.expires_at - self._clock())

    def is_expiring_soon(self, window_ms: int = DEFAULT_SOON_WINDOW_MS) -> bool:
        remaining = self.time_until_expiry_ms()
        return 0 < remaining <= window_ms

    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.get_user())

    def get_auth_state(self) -> dict[str, Any] | None:
        """Snapshot used to restore a session, or None when incomplete."""
        with self._lock:
            tokens = self.load()
            user = self.get_user()
        if not tokens or not user or not tokens.access_token or not tokens.refresh_token:
            return None
        return {
            "user": user,
            "access_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
            "needs_refresh": self._clock() >= tokens.expires_at,
        }

    def get_status(self) -> dict[str, Any]:
        """Token status summary without exposing secrets."""
        tokens = self.load()
        user = self.get_user()
        status: dict[str, Any] = {
            "has_access_token": bool(tokens and tokens.access_token),
            "has_refresh_token": bool(tokens and tokens.refresh_token),
            "has_user": user is not None,
            "is_expired": self.is_expired(),
            "expiring_soon": self.is_expiring_soon(),
            "expires_at": None,
            "expires_in_seconds": self.time_until_expiry_ms() // 1000,
        }
        if tokens:
            status["expires_at"] = datetime.fromtimestamp(tokens.expires_at / 1000).isoformat()
        return status
