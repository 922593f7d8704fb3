"""Outbound request preparation.

Attaches the stored bearer token to every request. Staleness is left to the
server: a token that expired locally is still sent, and the 401 it earns is
what triggers a refresh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..auth.storage import TokenStore

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = {"password", "refreshToken", "refresh_token", "accessToken", "access_token", "token"}


@dataclass
class RequestDescriptor:
    """Everything needed to (re)send one logical request."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None
    content: bytes | str | None = None
    timeout: float | None = None
    # False for credential exchanges such as login.
    auth: bool = True
    # One-shot: a request gets at most one refresh-and-replay cycle.
    retried: bool = False
    # Bearer token the last attempt was sent with.
    sent_token: str | None = None

    def __post_init__(self):
        self.method = self.method.upper()

    @property
    def authenticated(self) -> bool:
        return self.sent_token is not None


def redact(data: Any) -> Any:
    """Hide credential fields in a request body for logging."""
    if isinstance(data, dict):
        return {
            k: ("[HIDDEN]" if k in SENSITIVE_FIELDS and v else redact(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [redact(v) for v in data]
    return data


class RequestPipeline:
    """Decorates outbound calls with the current access token."""

    def __init__(self, http: httpx.AsyncClient, store: TokenStore):
        self._http = http
        self.store = store

    def prepare(self, descriptor: RequestDescriptor) -> httpx.Request:
        headers = {k: v for k, v in descriptor.headers.items() if k.lower() != "authorization"}

        token = self.store.access_token if descriptor.auth else None
        descriptor.sent_token = token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        return self._http.build_request(
            descriptor.method,
            descriptor.url,
            params=descriptor.params,
            json=descriptor.json,
            content=descriptor.content,
            headers=headers,
            timeout=(
                descriptor.timeout
                if descriptor.timeout is not None
                else httpx.USE_CLIENT_DEFAULT
            ),
        )

    async def send(self, descriptor: RequestDescriptor) -> httpx.Response:
        """Send the request once with whatever token is stored right now.

        Raises:
            httpx.TransportError: If no response was received
        """
        request = self.prepare(descriptor)
        logger.debug(
            "%s %s auth=%s body=%s",
            descriptor.method,
            descriptor.url,
            descriptor.authenticated,
            redact(descriptor.json) if descriptor.json is not None else None,
        )
        response = await self._http.send(request)
        logger.debug("%s %s -> %d", descriptor.method, descriptor.url, response.status_code)
        return response
