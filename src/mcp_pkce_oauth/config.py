# mcp_pkce_oauth/config.py
"""Default settings and config-directory resolution."""

import os
from pathlib import Path

DEFAULT_CALLBACK_PORT = 19877
MAX_PORT_ATTEMPTS = 20
CALLBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/oauth/callback"
CALLBACK_TIMEOUT_SECONDS = 5 * 60

STORAGE_FILE_NAME = "mcp-oauth.json"
CONFIG_DIR_ENV = "MCP_OAUTH_CONFIG_DIR"

DEFAULT_CLIENT_NAME = "mcp-pkce-oauth"
HTTP_TIMEOUT_SECONDS = 30.0


def get_config_dir() -> Path:
    """
    Resolve the directory holding OAuth state.

    Resolution order:
    1. ``$MCP_OAUTH_CONFIG_DIR`` (used by tests)
    2. ``$XDG_CONFIG_HOME/mcp-oauth``
    3. ``~/.config/mcp-oauth``
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config).expanduser() / "mcp-oauth"

    return Path.home() / ".config" / "mcp-oauth"


def get_storage_path() -> Path:
    """Get path to the shared token file."""
    return get_config_dir() / STORAGE_FILE_NAME
