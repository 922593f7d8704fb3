"""Shared test fixtures for the sessionguard test suite."""

import asyncio
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from sessionguard.api.client import ApiClient
from sessionguard.auth.storage import MemoryBackend, TokenSet, TokenStore, now_ms
from sessionguard.config import ClientSettings

BASE_URL = "http://api.test/api"
REFRESH_PATH = "/api/auth/refresh"

OLD_ACCESS_TOKEN = "access_old"
NEW_ACCESS_TOKEN = "access_new"
OLD_REFRESH_TOKEN = "refresh_old"
NEW_REFRESH_TOKEN = "refresh_new"

SAMPLE_USER = {"id": "user_123", "email": "actor@example.com", "role": "user"}
SAMPLE_PAYLOAD = {"success": True, "scripts": [{"id": "script_1", "title": "Hamlet"}]}


# ============================================================================
# Response helpers
# ============================================================================

def json_response(status: int, body: dict[str, Any]) -> httpx.Response:
    return httpx.Response(status, json=body)


def token_expired_response() -> httpx.Response:
    return json_response(401, {"success": False, "code": "TOKEN_EXPIRED", "message": "Token expired"})


def invalid_token_response() -> httpx.Response:
    return json_response(401, {"success": False, "code": "INVALID_TOKEN", "message": "Invalid token"})


# ============================================================================
# Fake backend
# ============================================================================

class FakeServer:
    """In-process stand-in for the auth-issuing backend.

    Requests carrying the current access token succeed; the previous token
    earns 401 TOKEN_EXPIRED; anything else earns 401 INVALID_TOKEN.
    """

    def __init__(self):
        self.valid_token = NEW_ACCESS_TOKEN
        self.expired_tokens = {OLD_ACCESS_TOKEN}
        self.refresh_ok = True
        self.issue_refresh_token: str | None = NEW_REFRESH_TOKEN
        self.refresh_calls = 0
        self.refresh_bodies: list[bytes] = []
        # When set, refresh blocks until the event fires.
        self.refresh_release: asyncio.Event | None = None
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == REFRESH_PATH:
            return await self._refresh(request)

        if path in self.routes:
            return self.routes[path](request)

        auth = request.headers.get("Authorization")
        if auth is None:
            return json_response(401, {"success": False, "code": "MISSING_TOKEN", "message": "Token required"})
        token = auth.removeprefix("Bearer ")
        if token in self.expired_tokens:
            return token_expired_response()
        if token != self.valid_token:
            return invalid_token_response()
        return json_response(200, SAMPLE_PAYLOAD)

    async def _refresh(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        self.refresh_bodies.append(request.content)
        if self.refresh_release is not None:
            await self.refresh_release.wait()
        if not self.refresh_ok:
            return json_response(
                401,
                {"success": False, "code": "INVALID_REFRESH_TOKEN", "message": "Invalid refresh token"},
            )
        tokens = {"accessToken": self.valid_token, "expiresIn": 3600}
        if self.issue_refresh_token:
            tokens["refreshToken"] = self.issue_refresh_token
        return json_response(200, {"success": True, "tokens": tokens})


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    return ClientSettings(
        base_url=BASE_URL,
        max_attempts=3,
        retry_base_delay_seconds=0.5,
        token_file=None,
    )


@pytest.fixture
def expired_store():
    """Store holding an access token the server considers expired."""
    store = TokenStore(MemoryBackend())
    store.save(
        TokenSet(
            access_token=OLD_ACCESS_TOKEN,
            refresh_token=OLD_REFRESH_TOKEN,
            expires_at=now_ms() - 1000,
        ),
        SAMPLE_USER,
    )
    return store


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def session_ended():
    """Records every reason passed to the session-ended callback."""
    return []


@pytest.fixture
def fake_sleep():
    return AsyncMock()


@pytest_asyncio.fixture
async def api(settings, expired_store, server, session_ended, fake_sleep):
    """ApiClient wired to the fake server, with an expired access token."""
    client = ApiClient(
        settings,
        store=expired_store,
        on_session_ended=session_ended.append,
        transport=httpx.MockTransport(server),
        sleep=fake_sleep,
    )
    async with client:
        yield client
