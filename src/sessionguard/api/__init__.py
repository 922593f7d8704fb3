"""API client module.

Usage:
    from sessionguard.api import ApiClient

    async with ApiClient(on_session_ended=lambda reason: redirect("/login")) as api:
        await api.login({"email": "a@example.com", "password": "secret"})
        scripts = await api.request_json("GET", "/scripts")
"""

from .client import ApiClient
from .pipeline import RequestDescriptor, RequestPipeline
from .retry import RetryPolicy, backoff_delay, is_transient, with_retry

__all__ = [
    "ApiClient",
    "RequestDescriptor",
    "RequestPipeline",
    "RetryPolicy",
    "backoff_delay",
    "is_transient",
    "with_retry",
]
