"""Unit tests for the OAuth client registry and client request models."""

import pytest
from pydantic import ValidationError

from tenant_idp.oauth.errors import INVALID_CLIENT, OAuthError
from tenant_idp.oauth.schemas import ClientCreateRequest, ClientUpdateRequest

from conftest import REDIRECT_URI


class TestClientCreateRequest:
    def test_defaults(self):
        request = ClientCreateRequest(name="Grade Book", redirect_uris=[REDIRECT_URI])
        assert request.allowed_scopes == ["openid", "profile", "email"]
        assert request.allowed_grant_types == ["authorization_code", "refresh_token"]
        assert request.access_token_ttl == 3600
        assert request.refresh_token_ttl == 30 * 24 * 60 * 60

    @pytest.mark.parametrize(
        "overrides",
        [
            {"name": "ab"},
            {"name": "Grade<Book>"},
            {"redirect_uris": []},
            {"redirect_uris": ["ftp://grades.example.com"]},
            {"redirect_uris": ["https://grades.example.com/cb#frag"]},
            {"redirect_uris": [f"https://grades.example.com/{i}" for i in range(11)]},
            {"allowed_grant_types": ["password"]},
            {"access_token_ttl": 30},
            {"access_token_ttl": 2 * 24 * 60 * 60},
            {"refresh_token_ttl": 60},
            {"refresh_token_ttl": 91 * 24 * 60 * 60},
            {"client_id": "client_chosen"},
        ],
    )
    def test_rejected(self, overrides):
        values = {"name": "Grade Book", "redirect_uris": [REDIRECT_URI], **overrides}
        with pytest.raises(ValidationError):
            ClientCreateRequest(**values)

    def test_update_cannot_change_client_id(self):
        with pytest.raises(ValidationError):
            ClientUpdateRequest(client_id="client_other")

    def test_update_validates_present_fields(self):
        with pytest.raises(ValidationError):
            ClientUpdateRequest(redirect_uris=["not-a-url"])
        assert ClientUpdateRequest(description="x").model_dump(exclude_unset=True) == {
            "description": "x"
        }


class TestClientRegistry:
    @pytest.mark.asyncio
    async def test_create(self, registry, make_client, store):
        client, secret = await make_client()
        assert client.client_id.startswith("client_")
        assert len(client.client_id) == len("client_") + 24
        assert len(secret) == 48
        stored = store.clients[client.client_id]
        assert stored.client_secret_hash != secret
        assert secret not in stored.model_dump_json()

    @pytest.mark.asyncio
    async def test_authenticate(self, registry, oauth_client):
        client, secret = oauth_client
        authenticated = await registry.authenticate(client.client_id, secret)
        assert authenticated.client_id == client.client_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "client_id,secret",
        [
            (None, "x"),
            ("", ""),
            ("client_unknown", "x"),
        ],
    )
    async def test_authenticate_unknown(self, registry, client_id, secret):
        with pytest.raises(OAuthError) as exc_info:
            await registry.authenticate(client_id, secret)
        assert exc_info.value.error == INVALID_CLIENT
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_authenticate_wrong_secret(self, registry, oauth_client):
        client, secret = oauth_client
        with pytest.raises(OAuthError) as exc_info:
            await registry.authenticate(client.client_id, secret[:-1])
        assert exc_info.value.error == INVALID_CLIENT

    @pytest.mark.asyncio
    async def test_inactive_client(self, registry, oauth_client):
        client, secret = oauth_client
        updated = await registry.update(client.client_id, ClientUpdateRequest(is_active=False))
        assert updated.is_active is False
        assert await registry.get(client.client_id) is None
        assert (await registry.get_any(client.client_id)).client_id == client.client_id
        with pytest.raises(OAuthError):
            await registry.authenticate(client.client_id, secret)

    @pytest.mark.asyncio
    async def test_update_only_touches_given_fields(self, registry, oauth_client):
        client, _ = oauth_client
        updated = await registry.update(
            client.client_id, ClientUpdateRequest(description="Grades and reports")
        )
        assert updated.description == "Grades and reports"
        assert updated.name == client.name
        assert updated.redirect_uris == client.redirect_uris
        assert updated.client_secret_hash == client.client_secret_hash

    @pytest.mark.asyncio
    async def test_update_unknown(self, registry):
        assert await registry.update("client_missing", ClientUpdateRequest(name="Nope")) is None

    @pytest.mark.asyncio
    async def test_regenerate_secret(self, registry, oauth_client):
        client, old_secret = oauth_client
        new_secret = await registry.regenerate_secret(client.client_id)
        assert new_secret and new_secret != old_secret
        await registry.authenticate(client.client_id, new_secret)
        with pytest.raises(OAuthError):
            await registry.authenticate(client.client_id, old_secret)
        assert await registry.regenerate_secret("client_missing") is None

    @pytest.mark.asyncio
    async def test_list_and_delete(self, registry, make_client):
        first, _ = await make_client(name="First Party", is_first_party=True)
        second, _ = await make_client(name="Third Party")
        assert [c.client_id for c in await registry.list()] == [first.client_id, second.client_id]
        assert [c.client_id for c in await registry.list(is_first_party=True)] == [first.client_id]
        assert await registry.delete(first.client_id)
        assert not await registry.delete(first.client_id)
        assert [c.client_id for c in await registry.list()] == [second.client_id]
