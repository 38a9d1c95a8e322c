"""
Cliper: Local-First Memory Engine
"""

from cliper.core.errors import (
    CliperError,
    ImportFormatError,
    LockedMemoryError,
    RecordNotFoundError,
    StorageError,
)
from cliper.version import __version__

__all__ = [
    "__version__",
    "CliperEngine",
    "CliperConfig",
    "CliperError",
    "StorageError",
    "LockedMemoryError",
    "RecordNotFoundError",
    "ImportFormatError",
]


def __getattr__(name):
    if name == "CliperEngine":
        from cliper.core.engine import CliperEngine
        return CliperEngine
    if name == "CliperConfig":
        from cliper.core.config import CliperConfig
        return CliperConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
