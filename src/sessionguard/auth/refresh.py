"""Client for the token refresh endpoint.

POST {refresh_url} {"refreshToken": ...}
    -> {"success": true, "tokens": {"accessToken", "refreshToken"?, "expiresIn"}, "user"?}

Anything else is a failed refresh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import RefreshError
from .storage import DEFAULT_SKEW_MS, TokenSet

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    tokens: TokenSet
    user: dict[str, Any] | None = None


class RefreshClient:
    """Exchanges a refresh token for a new token set.

    The call is made once; a failed refresh is never retried.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        refresh_url: str,
        skew_ms: int = DEFAULT_SKEW_MS,
        timeout: float = 30.0,
    ):
        self._http = http
        self.refresh_url = refresh_url
        self.skew_ms = skew_ms
        self.timeout = timeout

    async def refresh(self, refresh_token: str | None) -> RefreshResult:
        """Refresh the access token.

        Raises:
            RefreshError: If no refresh token is stored or the server rejects it
        """
        if not refresh_token:
            raise RefreshError("No refresh token available", code="MISSING_REFRESH_TOKEN")

        try:
            response = await self._http.post(
                self.refresh_url,
                json={"refreshToken": refresh_token},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise RefreshError(f"Token refresh failed: {e}", code="NETWORK_ERROR") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {"message": response.text[:500]}
        if not isinstance(data, dict):
            data = {}

        if response.status_code != 200 or not data.get("success"):
            raise RefreshError(
                data.get("message") or f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
                code=data.get("code") or "REFRESH_FAILED",
                response=response,
            )

        tokens = data.get("tokens")
        if not isinstance(tokens, dict) or not tokens.get("accessToken"):
            raise RefreshError(
                "Invalid refresh response: missing tokens",
                status_code=response.status_code,
                code="INVALID_RESPONSE",
                response=response,
            )

        user = data.get("user") if isinstance(data.get("user"), dict) else None
        return RefreshResult(
            tokens=TokenSet.from_response(tokens, refresh_token, skew_ms=self.skew_ms),
            user=user,
        )
