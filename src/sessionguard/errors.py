"""Typed errors raised by the API client.

Every error carries the HTTP status (when a response was received), the
machine-readable ``code`` from the response body, and a human-readable
message the caller can render.
"""

from __future__ import annotations

from typing import Any

import httpx

TOKEN_EXPIRED = "TOKEN_EXPIRED"


class ApiError(Exception):
    """Base exception for API errors."""

    transient = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        response: httpx.Response | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            "code": self.code,
        }


class NetworkError(ApiError):
    """No response was received (timeout, connection reset, DNS failure)."""

    transient = True


class ServerError(ApiError):
    """The server answered with a 5xx status."""

    transient = True


class AuthExpiredError(ApiError):
    """401 carrying the TOKEN_EXPIRED code; refreshable."""

    pass


class AuthInvalidError(ApiError):
    """Any other 401 (bad credentials, missing or revoked token)."""

    pass


class ClientError(ApiError):
    """A 4xx other than 401. The original response is kept unchanged."""

    pass


class RefreshError(ApiError):
    """The refresh endpoint rejected the refresh token or was unreachable."""

    pass


class SessionClosedError(ApiError):
    """The client was closed while the request waited for a token refresh."""

    pass


def _body(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text[:500]}
    return data if isinstance(data, dict) else {}


def classify_response(response: httpx.Response) -> ApiError | None:
    """Map a response to its error category, or None when it succeeded.

    The 401 discriminator is the ``code`` field of the body: only
    ``TOKEN_EXPIRED`` is refreshable, whatever the status code alone says.
    """
    status = response.status_code
    if status < 400:
        return None

    body = _body(response)
    code = body.get("code") if isinstance(body.get("code"), str) else None
    message = body.get("message") or body.get("error") or f"API error: {status}"
    if not isinstance(message, str):
        message = f"API error: {status}"

    if status >= 500:
        return ServerError(message, status, code, response)
    if status == 401:
        if code == TOKEN_EXPIRED:
            return AuthExpiredError(message, status, code, response)
        return AuthInvalidError(message, status, code, response)
    return ClientError(message, status, code, response)


def network_error(exc: httpx.TransportError) -> NetworkError:
    """Wrap an httpx transport failure."""
    detail = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(f"Request timed out: {detail}", code="TIMEOUT")
    return NetworkError(f"Network error: {detail}", code="NETWORK_ERROR")
