"""Tests for cliper.platform: directory resolution."""

import os
from pathlib import Path
from unittest.mock import patch

from cliper import platform


class TestDataDir:
    def test_env_override(self, tmp_path):
        with patch.dict(os.environ, {"CLIPER_DATA_DIR": str(tmp_path)}):
            assert platform.get_data_dir() == tmp_path

    def test_default_uses_platformdirs(self, monkeypatch, tmp_path):
        monkeypatch.delenv("CLIPER_DATA_DIR", raising=False)
        with patch("cliper.platform.platformdirs.user_data_dir", return_value=str(tmp_path)) as fn:
            assert platform.get_data_dir() == tmp_path
        fn.assert_called_once_with("cliper", "Cliper")

    def test_default_is_path(self, monkeypatch):
        monkeypatch.delenv("CLIPER_DATA_DIR", raising=False)
        result = platform.get_data_dir()
        assert isinstance(result, Path)
        assert "cliper" in str(result).lower()


class TestLogDir:
    def test_env_override(self, tmp_path):
        with patch.dict(os.environ, {"CLIPER_LOG_DIR": str(tmp_path / "logs")}):
            assert platform.get_log_dir() == tmp_path / "logs"

    def test_default_uses_platformdirs(self, monkeypatch, tmp_path):
        monkeypatch.delenv("CLIPER_LOG_DIR", raising=False)
        with patch("cliper.platform.platformdirs.user_log_dir", return_value=str(tmp_path)) as fn:
            assert platform.get_log_dir() == tmp_path
        fn.assert_called_once_with("cliper", "Cliper")


def test_platform_info_keys():
    info = platform.get_platform_info()
    assert set(info) >= {"os", "python", "data_dir", "log_dir"}
    assert sum([info["is_windows"], info["is_macos"], info["is_linux"]]) <= 1
