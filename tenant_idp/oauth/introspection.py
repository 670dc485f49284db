"""
Token introspection (RFC 7662) and revocation (RFC 7009).
"""

from typing import Optional

from loguru import logger

from tenant_idp.oauth.codec import TokenCodec
from tenant_idp.oauth.errors import INVALID_REQUEST, InvalidTokenError, OAuthError
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.schemas import utcnow
from tenant_idp.store.base import DataStore

INACTIVE = {"active": False}


class IntrospectionService:
    def __init__(self, store: DataStore, codec: TokenCodec, registry: ClientRegistry):
        self.store = store
        self.codec = codec
        self.registry = registry

    async def introspect(
        self, token: Optional[str], client_id: Optional[str], client_secret: Optional[str]
    ) -> dict:
        """
        Only the active flag is ever disclosed for unusable tokens. Client
        authentication failures raise OAuthError (invalid_client).
        """
        await self.registry.authenticate(client_id, client_secret)
        if not token:
            return dict(INACTIVE)
        try:
            claims = self.codec.verify_signed_token(token)
        except InvalidTokenError:
            return dict(INACTIVE)
        record = await self.store.get_access_token(claims.get("jti") or "")
        if not record or not record.is_active():
            return dict(INACTIVE)
        return {
            "active": True,
            "scope": record.scope,
            "client_id": record.client_id,
            "token_type": "Bearer",
            "exp": claims.get("exp"),
            "iat": claims.get("iat"),
            "sub": record.user_id,
            "tenant_id": record.tenant_id,
        }

    async def _revoke_access(self, token: str, client_id: str) -> bool:
        handle = token
        try:
            # Expired bearer tokens are still revocable.
            handle = self.codec.verify_signed_token(token, verify_exp=False).get("jti") or token
        except InvalidTokenError:
            pass
        record = await self.store.get_access_token(handle)
        if not record or record.client_id != client_id:
            return False
        return await self.store.revoke_access_token(handle, utcnow())

    async def _revoke_refresh(self, token: str, client_id: str) -> bool:
        record = await self.store.get_refresh_token(token)
        if not record or record.client_id != client_id:
            return False
        return await self.store.revoke_refresh_token(token, utcnow())

    async def revoke(
        self,
        token: Optional[str],
        token_type_hint: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> None:
        """
        Revoke an access or refresh token issued to the calling client. Anything
        past client authentication is swallowed: callers learn nothing about whether
        the token existed.
        """
        if not token:
            raise OAuthError(INVALID_REQUEST, "Token is required")
        client = await self.registry.authenticate(client_id, client_secret)
        try:
            if token_type_hint == "refresh_token":
                if not await self._revoke_refresh(token, client.client_id):
                    await self._revoke_access(token, client.client_id)
                return
            if not await self._revoke_access(token, client.client_id):
                await self._revoke_refresh(token, client.client_id)
        except Exception as exc:
            logger.error(f"Token revocation failed: {exc}")
