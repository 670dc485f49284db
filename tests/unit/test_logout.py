"""Unit tests for single logout, against a local aiohttp receiver."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from tenant_idp.oauth.schemas import Client
from tenant_idp.sso.logout import LogoutNotifier, SingleLogoutService
from tenant_idp.sso.schemas import ActivityType, ConnectedApp

UNREACHABLE_URL = "http://127.0.0.1:1/logout"


@pytest_asyncio.fixture
async def receiver():
    """Local app endpoints: /logout accepts, /broken answers 500, /slow hangs."""
    received = []

    async def accept(request):
        received.append(await request.json())
        return web.json_response({"ok": True})

    async def broken(request):
        return web.Response(status=500)

    async def slow(request):
        await asyncio.sleep(1)
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_post("/logout", accept)
    app.router.add_post("/broken", broken)
    app.router.add_post("/slow", slow)
    server = TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


@pytest.fixture
def slo(sessions):
    return SingleLogoutService(sessions, LogoutNotifier(timeout=1.0))


async def _connect(sessions, session, client_id, logout_url):
    await sessions.connect_app(
        session,
        Client(
            client_id=client_id,
            client_secret_hash="unused",
            name=client_id,
            redirect_uris=["https://apps.example.com/callback"],
            logout_url=logout_url,
        ),
    )


@pytest.mark.asyncio
async def test_logout_notifies_connected_apps(slo, sessions, store, sso_session, receiver):
    session, token = sso_session
    await _connect(sessions, session, "client_ok", str(receiver.make_url("/logout")))
    await _connect(sessions, session, "client_broken", str(receiver.make_url("/broken")))
    await _connect(sessions, session, "client_down", UNREACHABLE_URL)

    result = await slo.logout(token, ip_address="10.0.0.1")

    assert result.success == ["client_ok"]
    failures = {f.client_id: f.error for f in result.failed}
    assert set(failures) == {"client_broken", "client_down"}
    assert failures["client_broken"] == "HTTP 500"
    assert failures["client_down"]

    assert len(receiver.received) == 1
    payload = receiver.received[0]
    assert payload["event"] == "sso.logout"
    assert payload["session_token"] == token
    assert payload["timestamp"]

    assert await sessions.get_active(token) is None
    events = await store.list_activity(session.id)
    assert events[0].activity_type == ActivityType.LOGOUT
    assert events[0].metadata == {"apps_notified": 3}
    assert events[0].ip_address == "10.0.0.1"


@pytest.mark.asyncio
async def test_logout_is_idempotent(slo, sessions, store, sso_session, receiver):
    session, token = sso_session
    await _connect(sessions, session, "client_ok", str(receiver.make_url("/logout")))
    first = await slo.logout(token)
    second = await slo.logout(token)
    assert first.success == ["client_ok"]
    assert second.success == [] and second.failed == []
    assert len(receiver.received) == 1
    types = [a.activity_type for a in await store.list_activity(session.id)]
    assert types.count(ActivityType.LOGOUT) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "garbage", "sso_" + "z" * 48])
async def test_logout_without_session(slo, token):
    result = await slo.logout(token)
    assert result.success == [] and result.failed == []


@pytest.mark.asyncio
async def test_logout_without_notifications(slo, sessions, sso_session, receiver):
    session, token = sso_session
    await _connect(sessions, session, "client_ok", str(receiver.make_url("/logout")))
    result = await slo.logout(token, notify_apps=False)
    assert result.success == [] and result.failed == []
    assert receiver.received == []
    assert await sessions.get_active(token) is None


@pytest.mark.asyncio
async def test_slow_app_times_out(sessions, sso_session, receiver):
    session, token = sso_session
    slo = SingleLogoutService(sessions, LogoutNotifier(timeout=0.2))
    await _connect(sessions, session, "client_slow", str(receiver.make_url("/slow")))
    await _connect(sessions, session, "client_ok", str(receiver.make_url("/logout")))
    result = await slo.logout(token)
    assert result.success == ["client_ok"]
    assert [f.client_id for f in result.failed] == ["client_slow"]


@pytest.mark.asyncio
async def test_apps_without_logout_url_are_skipped(receiver):
    notifier = LogoutNotifier(timeout=1.0)
    apps = [
        ConnectedApp(id="a1", sso_session_id="s1", client_id="client_silent", logout_url=None),
        ConnectedApp(
            id="a2",
            sso_session_id="s1",
            client_id="client_ok",
            logout_url=str(receiver.make_url("/logout")),
        ),
    ]
    result = await notifier.notify_all(apps, "sso_" + "a" * 48)
    assert result.success == ["client_ok"]
    assert result.failed == []
    empty = await notifier.notify_all([apps[0]], "sso_" + "a" * 48)
    assert empty.success == [] and empty.failed == []
