"""Authentication module.

Token storage, single-flight refresh and session lifecycle.

Usage:
    from sessionguard.auth import TokenStore, FileBackend

    store = TokenStore(FileBackend("~/.sessionguard/tokens.json"))
    if store.is_expired():
        ...
"""

from .gate import AuthGate, GateState
from .refresh import RefreshClient, RefreshResult
from .scheduler import RefreshScheduler
from .session import SessionController
from .storage import FileBackend, MemoryBackend, StorageBackend, TokenSet, TokenStore

__all__ = [
    "AuthGate",
    "GateState",
    "RefreshClient",
    "RefreshResult",
    "RefreshScheduler",
    "SessionController",
    "FileBackend",
    "MemoryBackend",
    "StorageBackend",
    "TokenSet",
    "TokenStore",
]
