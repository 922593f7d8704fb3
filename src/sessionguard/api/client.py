"""Authenticated API client.

Request flow:
    caller -> RetryPolicy -> RequestPipeline (attach token) -> transport
           -> 401 TOKEN_EXPIRED -> AuthGate (refresh or wait) -> replay
           -> unrecoverable auth failure -> SessionController.force_logout
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from ..auth.gate import AuthGate
from ..auth.refresh import RefreshClient
from ..auth.scheduler import RefreshScheduler
from ..auth.session import SessionController, SessionEndedCallback
from ..auth.storage import FileBackend, MemoryBackend, TokenSet, TokenStore
from ..config import ClientSettings
from ..errors import (
    ApiError,
    AuthExpiredError,
    AuthInvalidError,
    classify_response,
    network_error,
)
from .pipeline import RequestDescriptor, RequestPipeline
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class ApiClient:
    """API client with bearer auth, single-flight refresh and retries.

    Usage:
        async with ApiClient(on_session_ended=go_to_login) as api:
            await api.login({"email": "a@example.com", "password": "..."})
            scripts = await api.request_json("GET", "/scripts")

    One instance owns its own gate, so independent clients never share
    refresh state.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        store: TokenStore | None = None,
        on_session_ended: SessionEndedCallback | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or ClientSettings()
        if store is None:
            backend = (
                FileBackend(self.settings.token_file)
                if self.settings.token_file
                else MemoryBackend()
            )
            store = TokenStore(backend)
        self.store = store
        self.session = SessionController(
            self.store,
            on_session_ended=on_session_ended,
            skew_ms=self.settings.expiry_skew_ms,
        )
        self.retry = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.retry_base_delay_seconds,
            strategy=self.settings.backoff_strategy,
            retry_unsafe_methods=self.settings.retry_unsafe_methods,
            sleep=sleep,
        )
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._pipeline: RequestPipeline | None = None
        self._gate: AuthGate | None = None
        self._scheduler: RefreshScheduler | None = None

    async def __aenter__(self) -> "ApiClient":
        self.open()
        return self

    async def __aexit__(self, *args):
        await self.close()

    def open(self) -> None:
        """Create the HTTP client and the auth machinery."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/plain, */*",
            },
            transport=self._transport,
        )
        self._pipeline = RequestPipeline(self._http, self.store)
        refresher = RefreshClient(
            self._http,
            self.settings.refresh_url,
            skew_ms=self.settings.expiry_skew_ms,
        )
        self._gate = AuthGate(self.store, refresher, self.session)
        self._scheduler = RefreshScheduler(
            self._gate, self.store, refresh_ahead_ms=self.settings.refresh_ahead_ms
        )

    async def close(self) -> None:
        """Reject parked requests and close the HTTP client."""
        if self._scheduler:
            self._scheduler.cancel()
        if self._gate:
            self._gate.dispose()
        if self._http:
            await self._http.aclose()
        self._http = None

    @property
    def gate(self) -> AuthGate:
        if not self._gate:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._gate

    @property
    def pipeline(self) -> RequestPipeline:
        if not self._pipeline:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._pipeline

    @property
    def scheduler(self) -> RefreshScheduler:
        if not self._scheduler:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._scheduler

    # Requests

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        auth: bool = True,
    ) -> httpx.Response:
        """Send a request and return the successful response.

        Raises:
            ApiError: Typed failure (see sessionguard.errors)
        """
        descriptor = RequestDescriptor(
            method=method,
            url=url,
            headers=dict(headers or {}),
            params=params,
            json=json,
            content=content,
            timeout=timeout,
            auth=auth,
        )
        return await self.send(descriptor)

    async def send(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            return await self._run(descriptor)
        except AuthExpiredError as e:
            if descriptor.retried or not descriptor.auth:
                # A credential exchange carries no token; the session is untouched.
                if descriptor.authenticated:
                    self.session.force_logout(e.code)
                raise
            return await self.gate.handle_auth_failure(descriptor, e, self._replay)

    async def _replay(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            return await self._run(descriptor)
        except AuthExpiredError as e:
            # The fresh token was rejected too; no second refresh.
            self.session.force_logout(e.code)
            raise

    async def _run(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            return await self.retry.run(
                lambda: self._attempt(descriptor),
                method=descriptor.method,
                headers=descriptor.headers,
            )
        except AuthInvalidError as e:
            if descriptor.authenticated:
                self.session.force_logout(e.code or "auth_invalid")
            raise

    async def _attempt(self, descriptor: RequestDescriptor) -> httpx.Response:
        try:
            response = await self.pipeline.send(descriptor)
        except httpx.TransportError as e:
            raise network_error(e) from e

        error = classify_response(response)
        if error is not None:
            logger.debug("%s %s failed: %s", descriptor.method, descriptor.url, error.message)
            raise error
        return response

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and decode its JSON body."""
        response = await self.request(method, url, **kwargs)
        return response.json() if response.content else {}

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # Session

    async def login(self, credentials: dict[str, Any], path: str | None = None) -> dict[str, Any]:
        """Exchange credentials for a session.

        Expects ``{"success": true, "tokens": {...}, "user": {...}}``.

        Returns:
            The user profile

        Raises:
            AuthInvalidError: If the credentials are rejected
            ApiError: If the response carries no tokens
        """
        data = await self.request_json(
            "POST",
            path or self.settings.login_path,
            json=credentials,
            auth=False,
        )
        tokens = data.get("tokens") if isinstance(data, dict) else None
        user = data.get("user") if isinstance(data, dict) else None
        if not isinstance(tokens, dict) or not tokens.get("accessToken"):
            raise ApiError("Login response did not include tokens", code="INVALID_RESPONSE")
        self.session.login(tokens, user or {})
        return user or {}

    async def logout(self, path: str | None = None) -> None:
        """Tell the server (best effort) and end the local session."""
        if self.store.access_token:
            try:
                await self.request(
                    "POST",
                    path or self.settings.logout_path,
                    json={"refreshToken": self.store.refresh_token},
                )
            except ApiError as e:
                logger.info("Server logout failed, clearing local session: %s", e.message)
        self.session.force_logout("logout")

    async def refresh(self) -> TokenSet | None:
        """Force a refresh now (single-flight with reactive refreshes)."""
        await self.gate.refresh_now()
        return self.store.load()

    def schedule_refresh(self) -> bool:
        """Start proactive refresh ahead of expiry."""
        return self.scheduler.schedule()
