"""Unit tests for token introspection and revocation."""

from datetime import timedelta

import pytest

from tenant_idp.oauth.errors import INVALID_CLIENT, INVALID_REQUEST, OAuthError
from tenant_idp.oauth.schemas import TokenRequest, utcnow

from conftest import REDIRECT_URI, TENANT_ID, USER_ID


@pytest.fixture
def grant_tokens(oauth, issue_code):
    """Run a full code exchange; returns the token response."""

    async def _grant(client, secret, session, scope="openid email"):
        code = await issue_code(client, session, scope=scope)
        return await oauth.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id=client.client_id,
                client_secret=secret,
                code=code,
                redirect_uri=REDIRECT_URI,
            )
        )

    return _grant


class TestIntrospect:
    @pytest.mark.asyncio
    async def test_active_token(self, introspection, oauth_client, sso_session, grant_tokens):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        result = await introspection.introspect(tokens.access_token, client.client_id, secret)
        assert result["active"] is True
        assert result["scope"] == "openid email"
        assert result["client_id"] == client.client_id
        assert result["token_type"] == "Bearer"
        assert result["sub"] == USER_ID
        assert result["tenant_id"] == TENANT_ID
        assert result["exp"] - result["iat"] == client.access_token_ttl

    @pytest.mark.asyncio
    async def test_any_authenticated_client_may_introspect(
        self, introspection, make_client, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        resource_server, rs_secret = await make_client(name="Resource Server")
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        result = await introspection.introspect(
            tokens.access_token, resource_server.client_id, rs_secret
        )
        assert result["active"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    async def test_unusable_tokens(self, introspection, oauth_client, token):
        client, secret = oauth_client
        assert await introspection.introspect(token, client.client_id, secret) == {
            "active": False
        }

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(
        self, introspection, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        result = await introspection.introspect(tokens.refresh_token, client.client_id, secret)
        assert result == {"active": False}

    @pytest.mark.asyncio
    async def test_expired_record(
        self, introspection, store, codec, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        jti = codec.verify_signed_token(tokens.access_token)["jti"]
        store.access_tokens[jti].expires_at = utcnow() - timedelta(seconds=1)
        result = await introspection.introspect(tokens.access_token, client.client_id, secret)
        assert result == {"active": False}

    @pytest.mark.asyncio
    async def test_requires_client_authentication(self, introspection, oauth_client):
        client, _ = oauth_client
        with pytest.raises(OAuthError) as exc_info:
            await introspection.introspect("garbage", client.client_id, "wrong")
        assert exc_info.value.error == INVALID_CLIENT


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_access_token(
        self, introspection, oauth, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        await introspection.revoke(tokens.access_token, "access_token", client.client_id, secret)
        result = await introspection.introspect(tokens.access_token, client.client_id, secret)
        assert result == {"active": False}
        # The refresh token minted alongside stays usable.
        refreshed = await oauth.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id=client.client_id,
                client_secret=secret,
                refresh_token=tokens.refresh_token,
            )
        )
        assert refreshed.access_token

    @pytest.mark.asyncio
    async def test_revoke_expired_access_token(
        self, introspection, store, codec, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        claims = codec.verify_signed_token(tokens.access_token)
        expired = codec.sign_access_token(claims, -10, jti=claims["jti"])
        await introspection.revoke(expired, None, client.client_id, secret)
        assert store.access_tokens[claims["jti"]].revoked_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("hint", ["refresh_token", "access_token", None])
    async def test_revoke_refresh_token(
        self, introspection, oauth, store, oauth_client, sso_session, grant_tokens, hint
    ):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        await introspection.revoke(tokens.refresh_token, hint, client.client_id, secret)
        assert store.refresh_tokens[tokens.refresh_token].revoked_at is not None
        with pytest.raises(OAuthError):
            await oauth.token(
                TokenRequest(
                    grant_type="refresh_token",
                    client_id=client.client_id,
                    client_secret=secret,
                    refresh_token=tokens.refresh_token,
                )
            )

    @pytest.mark.asyncio
    async def test_only_owner_can_revoke(
        self, introspection, store, make_client, oauth_client, sso_session, grant_tokens
    ):
        client, secret = oauth_client
        other, other_secret = await make_client(name="Other App")
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        await introspection.revoke(tokens.access_token, None, other.client_id, other_secret)
        await introspection.revoke(tokens.refresh_token, None, other.client_id, other_secret)
        result = await introspection.introspect(tokens.access_token, client.client_id, secret)
        assert result["active"] is True
        assert store.refresh_tokens[tokens.refresh_token].revoked_at is None

    @pytest.mark.asyncio
    async def test_unknown_token_is_silent(self, introspection, oauth_client):
        client, secret = oauth_client
        assert await introspection.revoke("no-such-token", None, client.client_id, secret) is None

    @pytest.mark.asyncio
    async def test_revoke_twice(self, introspection, oauth_client, sso_session, grant_tokens):
        client, secret = oauth_client
        session, _ = sso_session
        tokens = await grant_tokens(client, secret, session)
        for _ in range(2):
            await introspection.revoke(tokens.refresh_token, None, client.client_id, secret)

    @pytest.mark.asyncio
    async def test_missing_token(self, introspection, oauth_client):
        client, secret = oauth_client
        with pytest.raises(OAuthError) as exc_info:
            await introspection.revoke(None, None, client.client_id, secret)
        assert exc_info.value.error == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_requires_client_authentication(self, introspection):
        with pytest.raises(OAuthError) as exc_info:
            await introspection.revoke("token", None, "client_unknown", "secret")
        assert exc_info.value.error == INVALID_CLIENT
