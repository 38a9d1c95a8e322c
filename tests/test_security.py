import os
from unittest.mock import patch

import pytest

from cliper.core import security


@pytest.fixture(autouse=True)
def _reset():
    security.reset_security()
    yield
    security.reset_security()


class TestInitializeSecurity:
    def test_configured_token_wins(self):
        with patch.dict(os.environ, {"CLIPER_AUTH_TOKEN": "from-env"}):
            assert security.initialize_security("configured") == "configured"
        assert security.get_token_source() == "configured"

    def test_env_token(self):
        with patch.dict(os.environ, {"CLIPER_AUTH_TOKEN": "from-env"}):
            assert security.initialize_security() == "from-env"
        assert security.get_token_source() == "env"

    def test_unset_leaves_api_open(self, caplog):
        with patch.dict(os.environ, {}, clear=True):
            assert security.initialize_security() is None
            assert security.is_security_enabled() is False
            assert security.verify_token(None) is True
        assert "unauthenticated" in caplog.text


class TestVerifyToken:
    def test_matches_active_token(self):
        with patch.dict(os.environ, {}, clear=True):
            security.initialize_security("s3cret")
            assert security.verify_token("s3cret") is True
            assert security.verify_token("wrong") is False
            assert security.verify_token(None) is False

    def test_no_auth_override(self):
        security.initialize_security("s3cret")
        with patch.dict(os.environ, {"CLIPER_NO_AUTH": "1"}):
            assert security.is_security_enabled() is False
            assert security.verify_token(None) is True
