"""Shared fixtures."""

import pytest

from mcp_pkce_oauth.config import CONFIG_DIR_ENV
from mcp_pkce_oauth.token_store import TokenStore


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Point the config directory at a temporary path."""
    path = tmp_path / "config"
    monkeypatch.setenv(CONFIG_DIR_ENV, str(path))
    return path


@pytest.fixture
def token_store(config_dir):
    """Provide a TokenStore backed by the temporary config directory."""
    return TokenStore()
