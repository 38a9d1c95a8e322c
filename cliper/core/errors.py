"""
Cliper exceptions.
"""

from __future__ import annotations

from typing import Optional


class CliperError(RuntimeError):
    """Base class for engine errors."""


class StorageError(CliperError):
    """Raised when the durable medium cannot be read or written."""


class RecordNotFoundError(CliperError):
    """Raised when a typed lookup targets an id that is not stored."""

    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record not found: {record_id}")


class LockedMemoryError(CliperError):
    """Raised when a caller tries to change the content of a locked memory."""

    def __init__(self, memory_id: str, fields: Optional[list] = None) -> None:
        self.memory_id = memory_id
        self.fields = list(fields or [])
        hint = f" ({', '.join(self.fields)})" if self.fields else ""
        super().__init__(f"Memory {memory_id} is locked{hint}")


class ImportFormatError(CliperError):
    """Raised when an import document is not a recognised export."""


class QueueItemError(CliperError):
    """Raised by a queue handler when an item cannot be processed."""
