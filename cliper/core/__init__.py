# Lazy imports to avoid pulling the store and server stack on simple type imports
from cliper.core.types import Memory, MemoryDomain, MemoryStatus, MemoryType, QueueItem

__all__ = ["CliperEngine", "Memory", "MemoryDomain", "MemoryStatus", "MemoryType", "QueueItem"]


def __getattr__(name):
    if name == "CliperEngine":
        from cliper.core.engine import CliperEngine
        return CliperEngine
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
