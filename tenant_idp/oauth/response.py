"""
Response models for OAuth2/OIDC endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class ClientResponse(BaseModel):
    """Response model for an OAuth client (never includes the secret hash)."""

    model_config = ConfigDict(from_attributes=True)

    client_id: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    homepage_url: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str]
    allowed_grant_types: List[str]
    access_token_ttl: int
    refresh_token_ttl: int
    is_active: bool
    is_first_party: bool
    logout_url: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class ClientCreationResponse(ClientResponse):
    """Response model when registering a client (includes the plain secret, once)."""

    client_secret: str


class ClientSecretRegenerateResponse(BaseModel):
    client_id: str
    client_secret: str


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str
    id_token: Optional[str] = None


class OpenIDConfiguration(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    jwks_uri: str
    introspection_endpoint: str
    revocation_endpoint: str
    end_session_endpoint: str
    scopes_supported: List[str]
    response_types_supported: List[str]
    grant_types_supported: List[str]
    subject_types_supported: List[str]
    id_token_signing_alg_values_supported: List[str]
    token_endpoint_auth_methods_supported: List[str]
    code_challenge_methods_supported: List[str]
    claims_supported: List[str]
