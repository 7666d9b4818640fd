# mcp_pkce_oauth/oauth_config.py
"""OAuth data models."""

import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OAuthServerMetadata(BaseModel):
    """Endpoints of the authorization server protecting a resource."""

    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None

    # The resource URL discovery was started from
    resource: str

    model_config = {"frozen": True}


class ClientCredentials(BaseModel):
    """OAuth client credentials, either registered dynamically or configured."""

    client_id: str = Field(alias="clientId")
    client_secret: Optional[str] = Field(default=None, alias="clientSecret")

    model_config = {"populate_by_name": True}


class OAuthTokenData(BaseModel):
    """Token record persisted per (host, resource)."""

    access_token: str = Field(alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")
    expires_at: Optional[int] = Field(default=None, alias="expiresAt")  # Unix seconds
    client_info: Optional[ClientCredentials] = Field(default=None, alias="clientInfo")

    model_config = {"populate_by_name": True}

    def is_expired(self, skew_seconds: int = 0) -> bool:
        """Check if token is expired. Records without expiry never expire."""
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at - skew_seconds

    def get_authorization_header(self) -> str:
        """Get the Authorization header value."""
        return f"Bearer {self.access_token}"

    def to_storage(self) -> Dict[str, Any]:
        """Serialize using the camelCase keys of the token file."""
        return self.model_dump(by_alias=True, exclude_none=True)


class StepUpInfo(BaseModel):
    """Scopes demanded by a 403 insufficient-scope challenge."""

    required_scopes: List[str]
    error: Optional[str] = None
    error_description: Optional[str] = None


class CallbackResult(BaseModel):
    """Authorization code and state delivered to the local callback server."""

    code: str
    state: str


class AuthorizationCodeResult(BaseModel):
    """Authorization code paired with the PKCE verifier that must redeem it."""

    code: str
    verifier: str
