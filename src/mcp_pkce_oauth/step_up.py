# mcp_pkce_oauth/step_up.py
"""Detection of insufficient-scope challenges (step-up authorization)."""

import re
from typing import Any, Iterable, List, Mapping, Optional

from .oauth_config import StepUpInfo

_BEARER_PREFIX = re.compile(r"^bearer(?:\s+|$)", re.IGNORECASE)
_AUTH_PARAM = re.compile(r'([A-Za-z_][\w-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,]+))')


def _parse_auth_params(params: str) -> dict:
    result = {}
    for match in _AUTH_PARAM.finditer(params):
        name = match.group(1).lower()
        quoted, token = match.group(2), match.group(3)
        value = re.sub(r"\\(.)", r"\1", quoted) if quoted is not None else token
        result.setdefault(name, value)
    return result


def parse_www_authenticate(header: str) -> Optional[StepUpInfo]:
    """
    Parse a Bearer ``WWW-Authenticate`` challenge for required scopes.

    Args:
        header: Header value, e.g. ``Bearer error="insufficient_scope", scope="admin"``

    Returns:
        Step-up info, or None for other schemes or when no scope is named
    """
    header = header.strip()
    prefix = _BEARER_PREFIX.match(header)
    if not prefix:
        return None

    params = _parse_auth_params(header[prefix.end():])
    scopes = (params.get("scope") or "").split()
    if not scopes:
        return None

    return StepUpInfo(
        required_scopes=scopes,
        error=params.get("error"),
        error_description=params.get("error_description"),
    )


def _get_header(headers: Mapping[str, Any], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def is_step_up_required(
    status_code: int, headers: Mapping[str, Any]
) -> Optional[StepUpInfo]:
    """
    Check whether a response asks for broader scopes.

    Only ``403`` responses carrying a Bearer challenge with a ``scope``
    parameter qualify. Header names are matched case-insensitively.
    """
    if status_code != 403:
        return None

    header = _get_header(headers, "www-authenticate")
    if not header:
        return None

    return parse_www_authenticate(header)


def merge_scopes(existing: Iterable[str], required: Iterable[str]) -> List[str]:
    """Union of scopes keeping ``existing`` order, then new ``required`` ones."""
    merged: List[str] = []
    for scope in [*existing, *required]:
        if scope not in merged:
            merged.append(scope)
    return merged
