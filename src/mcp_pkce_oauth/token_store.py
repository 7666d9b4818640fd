# mcp_pkce_oauth/token_store.py
"""Token storage keyed by server host and resource."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from pydantic import ValidationError

from .config import get_storage_path
from .oauth_config import OAuthTokenData

logger = logging.getLogger(__name__)


def normalize_host(server_host: str) -> str:
    """
    Reduce a host, origin or URL to a bare lowercase host name.

    Strips scheme, path and port. IPv6 literals keep their brackets so that
    ``https://[::1]:8443`` and ``[::1]`` map to the same key.
    """
    host = server_host.strip()
    if not host:
        return host

    if "://" in host:
        netloc = urlsplit(host).netloc
        host = netloc.rsplit("@", 1)[-1]
    else:
        host = host.split("/")[0]

    if host.startswith("["):
        closing = host.find("]")
        if closing != -1:
            host = host[: closing + 1]
        return host.lower()

    if ":" in host:
        host = host.split(":")[0]

    return host.lower()


def normalize_resource(resource: str) -> str:
    """
    Normalize the resource part of a storage key.

    A full URL is reduced to its host (and port) plus path, so a provider that
    uses its server URL for both halves of the key stores under
    ``"mcp.example.com/mcp.example.com"``.
    """
    resource = resource.strip()
    if "://" in resource:
        parts = urlsplit(resource)
        resource = parts.netloc.lower() + parts.path.rstrip("/")
    return resource.lstrip("/")


def build_key(server_host: str, resource: str) -> str:
    """Build the ``"{host}/{resource}"`` key of a token record."""
    return f"{normalize_host(server_host)}/{normalize_resource(resource)}"


class TokenStore:
    """
    Persists OAuth token records in a single JSON file.

    The file maps ``"{host}/{resource}"`` keys to token records and is only
    readable by the current user. Corrupt or missing files read as empty.

    Concurrent processes are not locked against each other; each write replaces
    the whole file atomically, so the last writer wins.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        """
        Initialize token store.

        Args:
            storage_path: Token file path (default: resolved from the config dir
                          on every access, so ``MCP_OAUTH_CONFIG_DIR`` changes apply)
        """
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Path:
        """Path of the backing JSON file."""
        if self._storage_path is not None:
            return self._storage_path
        return get_storage_path()

    def read_store(self) -> Optional[Dict[str, Any]]:
        """
        Read the raw token mapping.

        Returns:
            Mapping of key to raw record, or None if the file is missing or corrupt
        """
        path = self.storage_path
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token file {path}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning(f"Ignoring token file {path}: expected a JSON object")
            return None
        return data

    def _write_store(self, store: Dict[str, Any]) -> None:
        path = self.storage_path
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            # mkstemp creates the file with 0600 already
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(store, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        # Set file permissions to user-only read/write
        os.chmod(path, 0o600)

    @staticmethod
    def _parse_record(key: str, raw: Any) -> Optional[OAuthTokenData]:
        try:
            return OAuthTokenData.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed token record {key}: {e}")
            return None

    def save(self, server_host: str, resource: str, token: OAuthTokenData) -> None:
        """
        Save a token record, replacing any previous one for the same key.

        Args:
            server_host: Server host, origin or URL
            resource: Resource identifier or URL
            token: Token record to persist
        """
        store = self.read_store() or {}
        key = build_key(server_host, resource)
        store[key] = token.to_storage()
        self._write_store(store)
        logger.debug(f"Saved token for {key}")

    def load(self, server_host: str, resource: str) -> Optional[OAuthTokenData]:
        """
        Load a token record.

        Returns:
            Token record if found and readable, None otherwise
        """
        store = self.read_store()
        if not store:
            return None

        key = build_key(server_host, resource)
        if key not in store:
            return None
        return self._parse_record(key, store[key])

    def delete(self, server_host: str, resource: str) -> bool:
        """
        Delete a token record. Removes the file once it holds no records.

        Returns:
            True, also when the record did not exist
        """
        store = self.read_store()
        if store is None:
            return True

        key = build_key(server_host, resource)
        if key not in store:
            return True

        del store[key]

        if not store:
            self.storage_path.unlink(missing_ok=True)
            logger.debug(f"Deleted last token ({key}), removed {self.storage_path}")
            return True

        self._write_store(store)
        logger.debug(f"Deleted token for {key}")
        return True

    def list_by_host(self, server_host: str) -> Dict[str, OAuthTokenData]:
        """Get all token records stored for a host."""
        prefix = f"{normalize_host(server_host)}/"
        return {
            key: token
            for key, token in self.list_all().items()
            if key.startswith(prefix)
        }

    def list_all(self) -> Dict[str, OAuthTokenData]:
        """Get every readable token record."""
        store = self.read_store() or {}
        result: Dict[str, OAuthTokenData] = {}
        for key, raw in store.items():
            token = self._parse_record(key, raw)
            if token is not None:
                result[key] = token
        return result
