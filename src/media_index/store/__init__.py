"""Remote content store contracts and implementations."""

from media_index.store.http_store import HttpContentStore
from media_index.store.interfaces import ContentStore, EntryKind, StoreEntry
from media_index.store.memory import InMemoryContentStore

__all__ = [
    "ContentStore",
    "EntryKind",
    "HttpContentStore",
    "InMemoryContentStore",
    "StoreEntry",
]
