"""SQL store tests against a temporary SQLite database (aiosqlite)."""

import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from tenant_idp.database import create_engine, create_session_factory, create_tables
from tenant_idp.oauth.schemas import (
    AccessToken,
    AuthorizationCode,
    Client,
    RefreshToken,
    UserConsent,
    utcnow,
)
from tenant_idp.sso.schemas import ActivityType, ConnectedApp, SessionActivity, SSOSession
from tenant_idp.store.orms import (
    AccessTokenRow,
    RolePermissionRow,
    RoleRow,
    TenantRow,
    UserProfileRow,
    UserTenantRow,
)
from tenant_idp.store.sql import SQLStore, code_key, hash_token

from conftest import REDIRECT_URI, TENANT_ID, USER_ID


class FakeRedis:
    """The handful of redis commands the store uses, backed by a dict."""

    def __init__(self):
        self.data = {}
        self.expiry = {}

    async def set(self, key, value, ex=None):
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.expiry[key] = ex
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'idp.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def sql_store(engine, redis_client):
    return SQLStore(create_session_factory(engine), redis_client)


def _client(client_id="client_sql", **overrides):
    values = {
        "client_id": client_id,
        "client_secret_hash": "hash",
        "name": "Grade Book",
        "redirect_uris": [REDIRECT_URI],
        "allowed_scopes": ["openid", "email"],
    }
    values.update(overrides)
    return Client(**values)


def _sso_session(token_char="a", user_id=USER_ID, expires_in=3600):
    now = utcnow()
    return SSOSession(
        id=str(uuid.uuid4()),
        session_token="sso_" + token_char * 48,
        user_id=user_id,
        tenant_id=TENANT_ID,
        ip_address="10.0.0.1",
        user_agent="agent",
        device_name="Chrome on Windows",
        expires_at=now + timedelta(seconds=expires_in),
        last_activity_at=now,
        created_at=now,
    )


def _tokens(client_id="client_sql", expires_in=3600):
    now = utcnow()
    access = AccessToken(
        id=str(uuid.uuid4()),
        token="access-" + uuid.uuid4().hex,
        user_id=USER_ID,
        client_id=client_id,
        tenant_id=TENANT_ID,
        scope="openid email",
        expires_at=now + timedelta(seconds=expires_in),
    )
    refresh = RefreshToken(
        id=str(uuid.uuid4()),
        token="refresh-" + uuid.uuid4().hex,
        access_token_id=access.id,
        user_id=USER_ID,
        client_id=client_id,
        tenant_id=TENANT_ID,
        scope="openid email",
        expires_at=now + timedelta(seconds=expires_in),
    )
    return access, refresh


@pytest.mark.asyncio
async def test_client_crud(sql_store):
    await sql_store.create_client(_client())
    await sql_store.create_client(_client("client_other", is_first_party=True, is_active=False))

    loaded = await sql_store.get_client("client_sql")
    assert loaded.redirect_uris == [REDIRECT_URI]
    assert loaded.created_at.tzinfo is not None

    updated = await sql_store.update_client(
        "client_sql", {"description": "Grades", "client_id": "client_hijacked"}
    )
    assert updated.client_id == "client_sql"
    assert updated.description == "Grades"
    assert await sql_store.update_client("client_missing", {"name": "x"}) is None

    assert [c.client_id for c in await sql_store.list_clients(is_active=True)] == ["client_sql"]
    assert [c.client_id for c in await sql_store.list_clients(is_first_party=True)] == [
        "client_other"
    ]
    assert await sql_store.delete_client("client_other")
    assert not await sql_store.delete_client("client_other")
    assert await sql_store.get_client("client_other") is None


@pytest.mark.asyncio
async def test_codes_live_in_redis(sql_store, redis_client):
    now = utcnow()
    code = AuthorizationCode(
        code="plain-code-value",
        user_id=USER_ID,
        client_id="client_sql",
        tenant_id=TENANT_ID,
        redirect_uri=REDIRECT_URI,
        scope="openid",
        code_challenge="challenge",
        code_challenge_method="S256",
        expires_at=now + timedelta(seconds=600),
        created_at=now,
    )
    await sql_store.create_code(code)
    key = code_key("plain-code-value")
    assert "plain-code-value" not in key
    assert 590 <= redis_client.expiry[key] <= 600

    loaded = await sql_store.get_code("plain-code-value")
    assert loaded.code_challenge == "challenge"
    assert loaded.expires_at == code.expires_at

    assert await sql_store.delete_code("plain-code-value")
    assert not await sql_store.delete_code("plain-code-value")
    assert await sql_store.get_code("plain-code-value") is None


@pytest.mark.asyncio
async def test_tokens_are_hashed_and_revoked_once(sql_store, engine):
    await sql_store.create_client(_client())
    access, refresh = _tokens()
    await sql_store.create_access_token(access)
    await sql_store.create_refresh_token(refresh)

    async with create_session_factory(engine)() as session:
        rows = (await session.execute(select(AccessTokenRow))).scalars().all()
    assert [row.token_hash for row in rows] == [hash_token(access.token)]

    loaded = await sql_store.get_access_token(access.token)
    assert loaded.id == access.id
    assert loaded.is_active()
    assert (await sql_store.get_refresh_token(refresh.token)).access_token_id == access.id
    assert await sql_store.get_access_token("unknown") is None
    assert await sql_store.get_refresh_token("") is None

    now = utcnow()
    assert await sql_store.revoke_access_token(access.token, now)
    assert not await sql_store.revoke_access_token(access.token, now)
    assert not (await sql_store.get_access_token(access.token)).is_active()

    assert await sql_store.revoke_refresh_token(refresh.token, now)
    assert not await sql_store.revoke_refresh_token(refresh.token, now)
    assert (await sql_store.get_refresh_token(refresh.token)).revoked_at is not None


@pytest.mark.asyncio
async def test_consent_upsert(sql_store):
    await sql_store.create_client(_client())
    consent = UserConsent(
        user_id=USER_ID, client_id="client_sql", tenant_id=TENANT_ID, scopes=["openid"]
    )
    await sql_store.upsert_consent(consent)
    await sql_store.upsert_consent(consent.model_copy(update={"scopes": ["openid", "email"]}))
    loaded = await sql_store.get_consent(USER_ID, "client_sql", TENANT_ID)
    assert loaded.scopes == ["openid", "email"]
    assert loaded.covers(["email"])
    assert await sql_store.get_consent(USER_ID, "client_sql", "tenant-other") is None


@pytest.mark.asyncio
async def test_session_lifecycle(sql_store):
    first = await sql_store.create_session(_sso_session("a"))
    second = await sql_store.create_session(_sso_session("b"))
    await sql_store.create_session(_sso_session("c", user_id="user-other"))

    loaded = await sql_store.get_session(first.session_token)
    assert loaded.id == first.id
    assert loaded.device_name == "Chrome on Windows"
    assert (await sql_store.get_session_by_id(second.id)).session_token == second.session_token

    later = utcnow() + timedelta(seconds=5)
    previous = await sql_store.touch_session(first.session_token, later, "10.0.0.9", "new-agent")
    assert previous.ip_address == "10.0.0.1"
    touched = await sql_store.get_session(first.session_token)
    assert touched.ip_address == "10.0.0.9"
    assert touched.user_agent == "new-agent"
    assert await sql_store.touch_session("sso_" + "z" * 48, later) is None

    active = await sql_store.list_active_sessions(USER_ID, utcnow())
    assert [s.id for s in active] == [first.id, second.id]

    now = utcnow()
    assert await sql_store.revoke_session(second.session_token, now)
    assert not await sql_store.revoke_session(second.session_token, now)
    assert not (await sql_store.get_session(second.session_token)).is_active()

    revoked = await sql_store.revoke_user_sessions(USER_ID, utcnow())
    assert [s.id for s in revoked] == [first.id]
    assert await sql_store.list_active_sessions(USER_ID, utcnow()) == []
    assert len(await sql_store.list_active_sessions("user-other", utcnow())) == 1


@pytest.mark.asyncio
async def test_connected_apps(sql_store):
    session = await sql_store.create_session(_sso_session())
    now = utcnow()
    app = ConnectedApp(
        id=str(uuid.uuid4()),
        sso_session_id=session.id,
        client_id="client_sql",
        logout_url="https://grades.example.com/logout",
        connected_at=now,
        last_seen_at=now,
    )
    assert await sql_store.upsert_connected_app(app)
    again = app.model_copy(
        update={"id": str(uuid.uuid4()), "app_session_token": "app-1", "last_seen_at": utcnow()}
    )
    assert not await sql_store.upsert_connected_app(again)

    apps = await sql_store.list_connected_apps(session.id)
    assert len(apps) == 1
    assert apps[0].id == app.id
    assert apps[0].app_session_token == "app-1"
    assert apps[0].logout_url == "https://grades.example.com/logout"

    assert await sql_store.delete_connected_app(session.id, "client_sql")
    assert not await sql_store.delete_connected_app(session.id, "client_sql")


@pytest.mark.asyncio
async def test_activity_log(sql_store):
    session = await sql_store.create_session(_sso_session())
    base = utcnow()
    for offset, activity_type in enumerate(
        [ActivityType.LOGIN, ActivityType.APP_CONNECT, ActivityType.LOGOUT]
    ):
        await sql_store.append_activity(
            SessionActivity(
                id=str(uuid.uuid4()),
                sso_session_id=session.id,
                activity_type=activity_type,
                metadata={"step": offset, "remember_me": False},
                created_at=base + timedelta(seconds=offset),
            )
        )
    events = await sql_store.list_activity(session.id, limit=2)
    assert [e.activity_type for e in events] == [ActivityType.LOGOUT, ActivityType.APP_CONNECT]
    assert events[0].metadata == {"step": 2, "remember_me": False}
    assert await sql_store.count_activity(session.id) == 3


@pytest.mark.asyncio
async def test_directory(sql_store, engine):
    async with create_session_factory(engine)() as session:
        session.add_all(
            [
                TenantRow(id=TENANT_ID, name="Acme Academy"),
                TenantRow(id="tenant-closed", name="Closed", is_active=False),
                UserProfileRow(
                    user_id=USER_ID,
                    email="ada@acme.example.com",
                    email_verified=True,
                    full_name="Ada Lovelace",
                    updated_at=datetime(2024, 1, 1),
                ),
                RoleRow(id="role-teacher", tenant_id=TENANT_ID, name="teacher"),
                RolePermissionRow(role_id="role-teacher", permission="grades:write"),
                RolePermissionRow(role_id="role-teacher", permission="grades:read"),
                UserTenantRow(
                    user_id=USER_ID,
                    tenant_id=TENANT_ID,
                    role_id="role-teacher",
                    created_at=datetime(2024, 1, 2),
                ),
                UserTenantRow(
                    user_id=USER_ID, tenant_id="tenant-closed", created_at=datetime(2024, 1, 1)
                ),
            ]
        )
        await session.commit()

    assert await sql_store.get_default_tenant(USER_ID) == TENANT_ID
    assert await sql_store.get_default_tenant("user-nobody") is None

    profile = await sql_store.get_user_profile(USER_ID, TENANT_ID)
    assert profile.tenant_name == "Acme Academy"
    assert profile.name == "Ada Lovelace"
    assert profile.role == "teacher"
    assert profile.permissions == ["grades:read", "grades:write"]
    assert profile.updated_at.tzinfo is not None
    assert await sql_store.get_user_profile(USER_ID, "tenant-closed") is None


@pytest.mark.asyncio
async def test_purge_expired(sql_store):
    await sql_store.create_client(_client())
    live_access, live_refresh = _tokens()
    dead_access, dead_refresh = _tokens(expires_in=-60)
    for access, refresh in ((live_access, live_refresh), (dead_access, dead_refresh)):
        await sql_store.create_access_token(access)
        await sql_store.create_refresh_token(refresh)

    live = await sql_store.create_session(_sso_session("a"))
    dead = await sql_store.create_session(_sso_session("b", expires_in=-60))
    now = utcnow()
    await sql_store.upsert_connected_app(
        ConnectedApp(id=str(uuid.uuid4()), sso_session_id=dead.id, client_id="client_sql")
    )
    await sql_store.append_activity(
        SessionActivity(
            id=str(uuid.uuid4()), sso_session_id=dead.id, activity_type=ActivityType.LOGIN
        )
    )

    counts = await sql_store.purge_expired(now)
    assert counts == {"codes": 0, "refresh_tokens": 1, "access_tokens": 1, "sessions": 1}
    assert await sql_store.get_access_token(dead_access.token) is None
    assert await sql_store.get_refresh_token(dead_refresh.token) is None
    assert await sql_store.get_access_token(live_access.token) is not None
    assert await sql_store.get_session(live.session_token) is not None
    assert await sql_store.get_session(dead.session_token) is None
    assert await sql_store.list_connected_apps(dead.id) == []
    # The audit trail survives the purge.
    assert await sql_store.count_activity(dead.id) == 1
