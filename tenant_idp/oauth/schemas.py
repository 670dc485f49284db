"""
OAuth2/OIDC records and request models.

Scope Format:
-------------
Scopes are space-delimited strings. The OpenID Connect scopes below are always known;
tenants may register additional custom scopes on their clients (e.g. "grades:read"),
which are granted verbatim and described generically on the consent page.

- "openid" - issue an ID token alongside the access token
- "profile" - name, picture and updated_at in userinfo
- "email" - email address
- "phone" - phone number
"""

import re
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenant_idp.constants import (
    DEFAULT_ACCESS_TOKEN_TTL,
    DEFAULT_REFRESH_TOKEN_TTL,
    MAX_REFRESH_TOKEN_TTL,
    SUPPORTED_GRANT_TYPES,
)

OAUTH_SCOPES = {
    "openid": "Sign you in with your account (OpenID Connect)",
    "profile": "Read your profile (name, avatar)",
    "email": "Read your email address",
    "phone": "Read your phone number",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_scopes(scope: Optional[str]) -> List[str]:
    """Split a space-delimited scope string, dropping empties."""
    return [s for s in (scope or "").split(" ") if s]


def scopes_allowed(requested: List[str], allowed: List[str]) -> bool:
    """True when every requested scope is in the allowed set."""
    allowed_set = set(allowed or [])
    return all(scope in allowed_set for scope in requested)


def get_scope_description(scope: str) -> str:
    """
    Human-readable description for the consent page.
    """
    if scope in OAUTH_SCOPES:
        return OAUTH_SCOPES[scope]
    parts = scope.split(":")
    if len(parts) == 2:
        resource, action = parts
        verbs = {"read": "Read", "write": "Update", "delete": "Delete"}
        return f"{verbs.get(action, action.capitalize())} {resource.replace('_', ' ')}"
    return f"Access: {scope}"


def get_scope_descriptions(scopes: List[str]) -> List[str]:
    return [get_scope_description(s) for s in scopes]


def _validate_redirect_uris(uris: List[str]) -> List[str]:
    if not uris:
        raise ValueError("At least one redirect URI is required")
    if len(uris) > 10:
        raise ValueError("Maximum 10 redirect URIs allowed")
    for uri in uris:
        if not uri.startswith(("http://", "https://")):
            raise ValueError(f"Invalid redirect URI: {uri}")
        if "#" in uri:
            raise ValueError(f"Redirect URI must not contain a fragment: {uri}")
    return uris


def _validate_grant_types(grant_types: List[str]) -> List[str]:
    for grant_type in grant_types:
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise ValueError(f"Unsupported grant type: {grant_type}")
    return grant_types


def _validate_name(name: str) -> str:
    if not name or len(name) < 3 or len(name) > 64:
        raise ValueError("Name must be between 3 and 64 characters")
    if not re.match(r"^[\w\s\-\.]+$", name):
        raise ValueError("Name can only contain letters, numbers, spaces, hyphens, and periods")
    return name


class Client(BaseModel):
    """Registered OAuth client application."""

    client_id: str
    client_secret_hash: str
    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    homepage_url: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str] = Field(default_factory=list)
    allowed_grant_types: List[str] = Field(default_factory=lambda: list(SUPPORTED_GRANT_TYPES))
    access_token_ttl: int = DEFAULT_ACCESS_TOKEN_TTL
    refresh_token_ttl: int = DEFAULT_REFRESH_TOKEN_TTL
    is_active: bool = True
    is_first_party: bool = False
    logout_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """Exact match against the registered redirect URIs."""
        return uri in self.redirect_uris

    @property
    def effective_logout_url(self) -> Optional[str]:
        """Single-logout callback, falling back to the first redirect URI."""
        if self.logout_url:
            return self.logout_url
        return self.redirect_uris[0] if self.redirect_uris else None


class AuthorizationCode(BaseModel):
    """
    One-time authorization code, consumed by the token endpoint.
    """

    code: str
    user_id: str
    client_id: str
    tenant_id: str
    redirect_uri: str
    scope: str
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class AccessToken(BaseModel):
    """
    Server-side access token record; `token` is the opaque revocation handle and is
    also the `jti` of the signed bearer token handed to the client.
    """

    id: str
    token: str
    user_id: str
    client_id: str
    tenant_id: str
    scope: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and (now or utcnow()) < self.expires_at


class RefreshToken(BaseModel):
    """
    Refresh token, minted together with exactly one access token. The grant fields
    are copied from that access token so rotation needs a single lookup.
    """

    id: str
    token: str
    access_token_id: str
    user_id: str
    client_id: str
    tenant_id: str
    scope: str
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class UserConsent(BaseModel):
    user_id: str
    client_id: str
    tenant_id: str
    scopes: List[str] = Field(default_factory=list)
    granted_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def covers(self, requested: List[str], now: Optional[datetime] = None) -> bool:
        """Valid, unexpired consent that includes every requested scope."""
        if self.expires_at and self.expires_at <= (now or utcnow()):
            return False
        return scopes_allowed(requested, self.scopes)


class UserProfile(BaseModel):
    """
    A user as seen through one active tenant membership (directory collaborator).
    """

    user_id: str
    tenant_id: str
    tenant_name: str
    email: str
    email_verified: bool = False
    name: Optional[str] = None
    picture: Optional[str] = None
    phone_number: Optional[str] = None
    updated_at: Optional[datetime] = None
    role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class ClientCreateRequest(BaseModel):
    """Request model for registering an OAuth client."""

    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str] = None
    logo_url: Optional[str] = None
    homepage_url: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str] = Field(default_factory=lambda: ["openid", "profile", "email"])
    allowed_grant_types: List[str] = Field(default_factory=lambda: list(SUPPORTED_GRANT_TYPES))
    access_token_ttl: int = DEFAULT_ACCESS_TOKEN_TTL
    refresh_token_ttl: int = DEFAULT_REFRESH_TOKEN_TTL
    is_first_party: bool = False
    logout_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _validate_name(v)

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        return _validate_redirect_uris(v)

    @field_validator("allowed_grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        return _validate_grant_types(v)

    @field_validator("access_token_ttl")
    @classmethod
    def validate_access_token_ttl(cls, v):
        if v < 60 or v > 24 * 60 * 60:
            raise ValueError("Access token lifetime must be between 60 seconds and 24 hours")
        return v

    @field_validator("refresh_token_ttl")
    @classmethod
    def validate_refresh_token_ttl(cls, v):
        if v < 60 * 60 or v > MAX_REFRESH_TOKEN_TTL:
            raise ValueError("Refresh token lifetime must be between 1 hour and 90 days")
        return v


class ClientUpdateRequest(BaseModel):
    """
    Request model for updating an OAuth client. There is deliberately no client_id
    field, and unknown fields are rejected, so the identifier cannot be changed.
    """

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    homepage_url: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    allowed_scopes: Optional[List[str]] = None
    allowed_grant_types: Optional[List[str]] = None
    access_token_ttl: Optional[int] = None
    refresh_token_ttl: Optional[int] = None
    is_active: Optional[bool] = None
    is_first_party: Optional[bool] = None
    logout_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is not None:
            return _validate_name(v)
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if v is not None:
            return _validate_redirect_uris(v)
        return v

    @field_validator("allowed_grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        if v is not None:
            return _validate_grant_types(v)
        return v


class AuthorizeRequest(BaseModel):
    """OAuth2 authorization request parameters (query string or form)."""

    response_type: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def requested_scopes(self) -> List[str]:
        return parse_scopes(self.scope)


class TokenRequest(BaseModel):
    """OAuth2 token request parameters."""

    grant_type: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    session_token: Optional[str] = None
