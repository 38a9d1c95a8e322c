from cliper.store.backends import InMemoryBackend, SQLiteBackend
from cliper.store.record_store import RecordStore, StoreEvent

__all__ = ["InMemoryBackend", "SQLiteBackend", "RecordStore", "StoreEvent"]
