"""Client configuration via pydantic-settings."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    base_url: str = "http://localhost:10000/api"
    refresh_path: str = "/auth/refresh"
    login_path: str = "/auth/login"
    logout_path: str = "/auth/logout"

    # Per-request timeout; expiry is treated as a transient failure.
    timeout_seconds: float = 120.0

    max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    backoff_strategy: str = "linear"
    # POST/PATCH without an Idempotency-Key are not retried unless enabled.
    retry_unsafe_methods: bool = False

    # Subtracted from the server-declared lifetime when computing expiry.
    expiry_skew_seconds: int = 300
    refresh_ahead_seconds: int = 600

    token_file: Path | None = None
    log_level: str = "INFO"

    model_config = {"env_prefix": "SESSIONGUARD_", "env_file": ".env", "extra": "ignore"}

    @property
    def expiry_skew_ms(self) -> int:
        return self.expiry_skew_seconds * 1000

    @property
    def refresh_ahead_ms(self) -> int:
        return self.refresh_ahead_seconds * 1000

    @property
    def refresh_url(self) -> str:
        return self.base_url.rstrip("/") + self.refresh_path


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging for CLI use."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
