"""
Storage package for the session client.

- backends: memory, JSON file and Redis persistence
- token_store: TokenStore, the single writer-facing API over a backend
"""

from .backends import FileBackend, MemoryBackend, PersistenceBackend, RedisBackend
from .token_store import TokenStore

__all__ = [
    "FileBackend",
    "MemoryBackend",
    "PersistenceBackend",
    "RedisBackend",
    "TokenStore",
]
