import os
import secrets
import logging
from typing import Optional

logger = logging.getLogger("Cliper.security")

_GLOBAL_AUTH_TOKEN: Optional[str] = None
_GLOBAL_AUTH_TOKEN_SOURCE: str = "unset"  # 'env', 'configured', 'unset'


def initialize_security(configured_token: Optional[str] = None) -> Optional[str]:
    """Initialize the HTTP auth token from configuration or the environment.

    Unlike a networked service, a local engine with no configured token
    stays open on loopback; a warning is logged so the operator knows.
    """
    global _GLOBAL_AUTH_TOKEN, _GLOBAL_AUTH_TOKEN_SOURCE

    env_token = os.environ.get("CLIPER_AUTH_TOKEN")

    if configured_token:
        _GLOBAL_AUTH_TOKEN = configured_token
        _GLOBAL_AUTH_TOKEN_SOURCE = "configured"
        logger.info("Security initialized with configured token.")
    elif env_token:
        _GLOBAL_AUTH_TOKEN = env_token
        _GLOBAL_AUTH_TOKEN_SOURCE = "env"
        logger.info("Security initialized with CLIPER_AUTH_TOKEN from environment.")
    else:
        _GLOBAL_AUTH_TOKEN = None
        _GLOBAL_AUTH_TOKEN_SOURCE = "unset"
        logger.warning("No CLIPER_AUTH_TOKEN configured; HTTP API accepts unauthenticated requests.")

    return _GLOBAL_AUTH_TOKEN


def get_token_source() -> str:
    return _GLOBAL_AUTH_TOKEN_SOURCE


def is_security_enabled() -> bool:
    """Check if authentication is globally enabled."""
    if os.environ.get("CLIPER_NO_AUTH") == "1":
        return False
    return _GLOBAL_AUTH_TOKEN is not None


def verify_token(token: Optional[str]) -> bool:
    """Verify a bearer token against the active auth token."""
    if not is_security_enabled():
        return True
    if token is None:
        return False
    return secrets.compare_digest(token, _GLOBAL_AUTH_TOKEN)


def reset_security() -> None:
    """Forget the active token."""
    global _GLOBAL_AUTH_TOKEN, _GLOBAL_AUTH_TOKEN_SOURCE
    _GLOBAL_AUTH_TOKEN = None
    _GLOBAL_AUTH_TOKEN_SOURCE = "unset"
