"""sessionguard - resilient authenticated API client."""

from .api import ApiClient, RequestDescriptor, RetryPolicy
from .auth import FileBackend, MemoryBackend, TokenSet, TokenStore
from .config import ClientSettings
from .errors import (
    ApiError,
    AuthExpiredError,
    AuthInvalidError,
    ClientError,
    NetworkError,
    RefreshError,
    ServerError,
    SessionClosedError,
)

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "RequestDescriptor",
    "RetryPolicy",
    "FileBackend",
    "MemoryBackend",
    "TokenSet",
    "TokenStore",
    "ClientSettings",
    "ApiError",
    "AuthExpiredError",
    "AuthInvalidError",
    "ClientError",
    "NetworkError",
    "RefreshError",
    "ServerError",
    "SessionClosedError",
]
