"""
Unit test fixtures: an in-memory store seeded with one user in two tenants, and the
services wired the way the application factory wires them.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from tenant_idp.oauth.codec import CodecConfig, TokenCodec
from tenant_idp.oauth.introspection import IntrospectionService
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.schemas import AuthorizeRequest, ClientCreateRequest, UserProfile
from tenant_idp.oauth.service import CodeIssued, OAuthService
from tenant_idp.sso.service import SessionService
from tenant_idp.store.memory import MemoryStore

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
TEST_ISSUER = "https://idp.example.com"
USER_ID = "user-ada"
OTHER_USER_ID = "user-grace"
TENANT_ID = "tenant-acme"
SECOND_TENANT_ID = "tenant-globex"
REDIRECT_URI = "https://grades.example.com/callback"
LOGOUT_URL = "https://grades.example.com/sso/logout"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def codec():
    return TokenCodec(CodecConfig(secret_key=TEST_SECRET, issuer=TEST_ISSUER))


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_membership(
        UserProfile(
            user_id=USER_ID,
            tenant_id=TENANT_ID,
            tenant_name="Acme Academy",
            email="ada@acme.example.com",
            email_verified=True,
            name="Ada Lovelace",
            picture="https://cdn.example.com/ada.png",
            phone_number="+15550100",
            updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            role="teacher",
            permissions=["grades:read", "grades:write"],
        )
    )
    store.add_membership(
        UserProfile(
            user_id=USER_ID,
            tenant_id=SECOND_TENANT_ID,
            tenant_name="Globex Institute",
            email="ada@globex.example.com",
            role="student",
        )
    )
    store.add_membership(
        UserProfile(
            user_id=OTHER_USER_ID,
            tenant_id=TENANT_ID,
            tenant_name="Acme Academy",
            email="grace@acme.example.com",
        )
    )
    return store


@pytest.fixture
def registry(store, codec):
    return ClientRegistry(store, codec)


@pytest.fixture
def sessions(store, codec):
    return SessionService(store, codec)


@pytest.fixture
def oauth(store, codec, registry, sessions):
    return OAuthService(store, codec, registry, sessions)


@pytest.fixture
def introspection(store, codec, registry):
    return IntrospectionService(store, codec, registry)


@pytest.fixture
def make_client(registry):
    """Register a client; returns (client, plain_secret)."""

    async def _make(**overrides):
        values = {
            "name": "Grade Book",
            "redirect_uris": [REDIRECT_URI],
            "allowed_scopes": ["openid", "profile", "email", "phone", "grades:read"],
            "logout_url": LOGOUT_URL,
        }
        values.update(overrides)
        return await registry.create(ClientCreateRequest(**values))

    return _make


@pytest_asyncio.fixture
async def oauth_client(make_client):
    return await make_client()


@pytest_asyncio.fixture
async def sso_session(sessions):
    """An active SSO session for USER_ID in TENANT_ID; returns (session, token)."""
    return await sessions.create(USER_ID, TENANT_ID, ip_address="10.0.0.1", user_agent=CHROME_UA)


@pytest.fixture
def issue_code(oauth):
    """Approve an authorization request and return the issued code."""

    async def _issue(client, session, scope="openid profile email", **params):
        request = AuthorizeRequest(
            response_type="code",
            client_id=client.client_id,
            redirect_uri=REDIRECT_URI,
            scope=scope,
            state="xyz",
            **params,
        )
        result = await oauth.approve(request, session)
        assert isinstance(result, CodeIssued), result
        return result.code

    return _issue
