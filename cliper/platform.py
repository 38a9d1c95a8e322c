"""
Cliper Platform Abstraction
---------------------------
Cross-platform data and log directory resolution.

Each directory resolves from its ``CLIPER_*`` environment variable when
set, otherwise through platformdirs (XDG on Linux, Application Support on
macOS, LOCALAPPDATA on Windows).
"""

import os
import sys
import logging
from pathlib import Path
from typing import Dict, Any

import platformdirs

logger = logging.getLogger("Cliper.Platform")

IS_WINDOWS = sys.platform == "win32"
IS_MACOS = sys.platform == "darwin"
IS_LINUX = sys.platform.startswith("linux")

_APP_NAME = "cliper"
_APP_AUTHOR = "Cliper"


def _resolve_dir(env_var: str, platformdirs_fn: str) -> Path:
    """
    Resolve a directory path with priority:
    1. Environment variable override
    2. platformdirs convention for the current OS
    """
    env_val = os.environ.get(env_var)
    if env_val:
        return Path(env_val)
    fn = getattr(platformdirs, platformdirs_fn)
    return Path(fn(_APP_NAME, _APP_AUTHOR))


def get_data_dir() -> Path:
    """
    Get the Cliper data directory.

    Priority: CLIPER_DATA_DIR env var > platformdirs.
    Contains: cliper.db, exports/
    """
    return _resolve_dir("CLIPER_DATA_DIR", "user_data_dir")


def get_log_dir() -> Path:
    """
    Get the Cliper log directory.

    Priority: CLIPER_LOG_DIR env var > platformdirs.
    """
    return _resolve_dir("CLIPER_LOG_DIR", "user_log_dir")


def get_platform_info() -> Dict[str, Any]:
    """Return platform diagnostic information for health endpoints."""
    return {
        "os": sys.platform,
        "python": sys.version,
        "is_windows": IS_WINDOWS,
        "is_macos": IS_MACOS,
        "is_linux": IS_LINUX,
        "data_dir": str(get_data_dir()),
        "log_dir": str(get_log_dir()),
    }
