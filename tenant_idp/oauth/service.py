"""
OAuth2/OIDC protocol engine: authorization requests, consent, code exchange,
refresh rotation and userinfo.
"""

import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from loguru import logger

from tenant_idp.constants import (
    AUTH_CODE_EXPIRY_SECONDS,
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    PKCE_METHODS,
    SUPPORTED_GRANT_TYPES,
)
from tenant_idp.oauth.codec import TokenCodec
from tenant_idp.oauth.errors import (
    ACCESS_DENIED,
    INVALID_CLIENT,
    INVALID_GRANT,
    INVALID_REQUEST,
    INVALID_SCOPE,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_GRANT_TYPE,
    ErrorDelivery,
    InvalidTokenError,
    OAuthError,
    append_query,
)
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.response import TokenResponse
from tenant_idp.oauth.schemas import (
    AccessToken,
    AuthorizationCode,
    AuthorizeRequest,
    Client,
    RefreshToken,
    TokenRequest,
    UserConsent,
    parse_scopes,
    scopes_allowed,
    utcnow,
)
from tenant_idp.sso.schemas import ActivityType, SSOSession
from tenant_idp.sso.service import SessionService
from tenant_idp.store.base import DataStore


class AuthorizeError:
    """Terminal failure of an authorization request, with its delivery channel."""

    def __init__(self, error: OAuthError, delivery: ErrorDelivery):
        self.error = error
        self.delivery = delivery

    def __repr__(self):
        return f"AuthorizeError({self.error!r}, {self.delivery!r})"


class LoginRequired:
    """No authenticated SSO session; the user agent must log in first."""


class ConsentRequired:
    def __init__(
        self, client: Client, scopes: List[str], tenant_id: str, request: AuthorizeRequest
    ):
        self.client = client
        self.scopes = scopes
        self.tenant_id = tenant_id
        self.request = request


class CodeIssued:
    def __init__(self, redirect_to: str, code: str):
        self.redirect_to = redirect_to
        self.code = code


class NonCritical:
    """
    Outcome of a best-effort side operation; failures are reported, never raised.
    """

    def __init__(self, ok: bool, detail: Optional[str] = None):
        self.ok = ok
        self.detail = detail

    @classmethod
    def done(cls) -> "NonCritical":
        return cls(True)

    @classmethod
    def skipped(cls, reason: str) -> "NonCritical":
        return cls(True, reason)

    @classmethod
    def failed(cls, reason: str) -> "NonCritical":
        return cls(False, reason)


class _Validated:
    def __init__(self, client: Client, scopes: List[str], tenant_id: str):
        self.client = client
        self.scopes = scopes
        self.tenant_id = tenant_id


class OAuthService:
    def __init__(
        self,
        store: DataStore,
        codec: TokenCodec,
        registry: ClientRegistry,
        sessions: SessionService,
    ):
        self.store = store
        self.codec = codec
        self.registry = registry
        self.sessions = sessions

    async def _validate(
        self, request: AuthorizeRequest, session: Optional[SSOSession]
    ):
        """
        Steps shared by the initial request and the consent submission. Returns an
        AuthorizeError, LoginRequired, or the validated client/scopes/tenant.
        """
        state = request.state
        client = await self.registry.get(request.client_id)
        redirect_verified = bool(
            client and request.redirect_uri and client.is_valid_redirect_uri(request.redirect_uri)
        )

        def fail(error: str, description: str, status_code: Optional[int] = None):
            exc = OAuthError(error, description, state=state, status_code=status_code)
            if redirect_verified:
                delivery = ErrorDelivery.redirect(request.redirect_uri)
            else:
                delivery = ErrorDelivery.json(exc.status_code)
            logger.warning(f"Authorization request rejected: {error} ({description})")
            return AuthorizeError(exc, delivery)

        if request.response_type != "code":
            return fail(INVALID_REQUEST, "response_type must be 'code'")
        for field in ("client_id", "redirect_uri", "scope"):
            if not getattr(request, field):
                return fail(INVALID_REQUEST, f"{field} is required")
        if request.code_challenge and (request.code_challenge_method or "S256") not in PKCE_METHODS:
            return fail(INVALID_REQUEST, "code_challenge_method must be 'plain' or 'S256'")
        if not client:
            return fail(INVALID_CLIENT, "Client not found or inactive")
        if not redirect_verified:
            return fail(INVALID_REQUEST, "Invalid redirect_uri")

        scopes = request.requested_scopes
        if not scopes_allowed(scopes, client.allowed_scopes):
            return fail(INVALID_SCOPE, "One or more requested scopes are not allowed")

        if not session or not session.is_active():
            return LoginRequired()

        tenant_id = request.tenant_id or await self.store.get_default_tenant(session.user_id)
        if not tenant_id:
            return fail(INVALID_REQUEST, "No tenant associated with user")
        if not await self.store.get_user_profile(session.user_id, tenant_id):
            return fail(INVALID_REQUEST, "User is not an active member of the requested tenant")
        return _Validated(client, scopes, tenant_id)

    async def authorize(self, request: AuthorizeRequest, session: Optional[SSOSession]):
        """
        Handle an authorization request: issue a code when stored consent covers
        the requested scopes, otherwise ask for consent.
        """
        validated = await self._validate(request, session)
        if not isinstance(validated, _Validated):
            return validated

        consent = await self.store.get_consent(
            session.user_id, validated.client.client_id, validated.tenant_id
        )
        if consent and consent.covers(validated.scopes):
            return await self._issue_code(request, session, validated)
        return ConsentRequired(validated.client, validated.scopes, validated.tenant_id, request)

    async def approve(self, request: AuthorizeRequest, session: Optional[SSOSession]):
        """Consent approved: re-validate, record consent and issue a code."""
        validated = await self._validate(request, session)
        if not isinstance(validated, _Validated):
            return validated
        await self.store.upsert_consent(
            UserConsent(
                user_id=session.user_id,
                client_id=validated.client.client_id,
                tenant_id=validated.tenant_id,
                scopes=validated.scopes,
            )
        )
        return await self._issue_code(request, session, validated)

    async def deny(self, request: AuthorizeRequest, session: Optional[SSOSession]):
        """
        Consent denied. The redirect URI still has to be verified before the error
        can be sent there.
        """
        validated = await self._validate(request, session)
        if not isinstance(validated, _Validated):
            return validated
        logger.info(f"User {session.user_id} denied consent for {validated.client.client_id}")
        return AuthorizeError(
            OAuthError(ACCESS_DENIED, "User denied consent", state=request.state),
            ErrorDelivery.redirect(request.redirect_uri),
        )

    async def _issue_code(
        self, request: AuthorizeRequest, session: SSOSession, validated: _Validated
    ) -> CodeIssued:
        now = utcnow()
        code = self.codec.generate_opaque_token()
        method = None
        if request.code_challenge:
            method = request.code_challenge_method or "S256"
        await self.store.create_code(
            AuthorizationCode(
                code=code,
                user_id=session.user_id,
                client_id=validated.client.client_id,
                tenant_id=validated.tenant_id,
                redirect_uri=request.redirect_uri,
                scope=request.scope,
                code_challenge=request.code_challenge or None,
                code_challenge_method=method,
                expires_at=now + timedelta(seconds=AUTH_CODE_EXPIRY_SECONDS),
                created_at=now,
            )
        )
        logger.info(
            f"Issued authorization code for user {session.user_id} to {validated.client.client_id}"
        )
        return CodeIssued(
            append_query(request.redirect_uri, {"code": code, "state": request.state}), code
        )

    async def token(
        self, request: TokenRequest, sso_session_token: Optional[str] = None
    ) -> TokenResponse:
        """
        Token endpoint; raises OAuthError on any protocol failure.
        """
        if not request.grant_type:
            raise OAuthError(INVALID_REQUEST, "grant_type is required")
        if request.grant_type not in SUPPORTED_GRANT_TYPES:
            raise OAuthError(
                UNSUPPORTED_GRANT_TYPE, f'grant_type "{request.grant_type}" is not supported'
            )
        if request.grant_type == GRANT_AUTHORIZATION_CODE:
            if not request.code:
                raise OAuthError(INVALID_REQUEST, "code is required for authorization_code grant")
            if not request.redirect_uri:
                raise OAuthError(
                    INVALID_REQUEST, "redirect_uri is required for authorization_code grant"
                )
        elif not request.refresh_token:
            raise OAuthError(INVALID_REQUEST, "refresh_token is required for refresh_token grant")

        client = await self.registry.authenticate(request.client_id, request.client_secret)
        if request.grant_type not in client.allowed_grant_types:
            raise OAuthError(
                UNAUTHORIZED_CLIENT,
                f'Grant type "{request.grant_type}" not allowed for this client',
            )

        session_token = request.session_token or sso_session_token
        if request.grant_type == GRANT_AUTHORIZATION_CODE:
            return await self._exchange_code(client, request, session_token)
        if request.grant_type == GRANT_REFRESH_TOKEN:
            return await self._refresh(client, request, session_token)
        raise OAuthError(UNSUPPORTED_GRANT_TYPE, "Grant type not supported")

    async def _exchange_code(
        self, client: Client, request: TokenRequest, session_token: Optional[str]
    ) -> TokenResponse:
        auth_code = await self.store.get_code(request.code)
        if not auth_code:
            raise OAuthError(INVALID_GRANT, "Authorization code not found or expired")
        if auth_code.client_id != client.client_id:
            raise OAuthError(INVALID_GRANT, "Authorization code was issued to another client")
        if auth_code.redirect_uri != request.redirect_uri:
            raise OAuthError(INVALID_GRANT, "Redirect URI does not match")
        if auth_code.is_expired():
            await self.store.delete_code(request.code)
            raise OAuthError(INVALID_GRANT, "Authorization code not found or expired")
        if auth_code.code_challenge:
            if not request.code_verifier:
                raise OAuthError(INVALID_GRANT, "Code verifier required for PKCE")
            if not self.codec.verify_pkce_challenge(
                request.code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
            ):
                raise OAuthError(INVALID_GRANT, "Invalid code verifier")

        # Only the caller that actually removes the code may redeem it.
        if not await self.store.delete_code(request.code):
            raise OAuthError(INVALID_GRANT, "Authorization code not found or expired")

        response = await self._issue_tokens(
            client, auth_code.user_id, auth_code.tenant_id, auth_code.scope
        )
        if session_token:
            outcome = await self._connect_app(session_token, client, auth_code.user_id)
            if not outcome.ok:
                logger.warning(
                    f"Failed to connect {client.client_id} to SSO session: {outcome.detail}"
                )
        return response

    async def _refresh(
        self, client: Client, request: TokenRequest, session_token: Optional[str]
    ) -> TokenResponse:
        now = utcnow()
        record = await self.store.get_refresh_token(request.refresh_token)
        if not record or record.revoked_at is not None:
            raise OAuthError(INVALID_GRANT, "Refresh token not found or revoked")
        if record.client_id != client.client_id:
            raise OAuthError(INVALID_GRANT, "Refresh token was issued to another client")
        if record.is_expired(now):
            await self.store.revoke_refresh_token(request.refresh_token, now)
            raise OAuthError(INVALID_GRANT, "Refresh token has expired")

        # Rotation: whoever revokes the presented token first gets the new pair.
        if not await self.store.revoke_refresh_token(request.refresh_token, now):
            raise OAuthError(INVALID_GRANT, "Refresh token not found or revoked")

        response = await self._issue_tokens(client, record.user_id, record.tenant_id, record.scope)
        if session_token:
            outcome = await self._connect_app(
                session_token, client, record.user_id, refreshed=True
            )
            if not outcome.ok:
                logger.warning(
                    f"Failed to record token refresh on SSO session: {outcome.detail}"
                )
        return response

    async def _issue_tokens(
        self, client: Client, user_id: str, tenant_id: str, scope: str
    ) -> TokenResponse:
        """
        Mint an access token (opaque handle + signed JWT), its refresh token and,
        for openid requests, an ID token.
        """
        now = utcnow()
        handle = self.codec.generate_opaque_token()
        signed_access = self.codec.sign_access_token(
            {"sub": user_id, "client_id": client.client_id, "tenant_id": tenant_id, "scope": scope},
            client.access_token_ttl,
            jti=handle,
        )
        id_token = None
        if "openid" in parse_scopes(scope):
            id_token = await self._sign_id_token(client, user_id, tenant_id)

        access = AccessToken(
            id=str(uuid.uuid4()),
            token=handle,
            user_id=user_id,
            client_id=client.client_id,
            tenant_id=tenant_id,
            scope=scope,
            expires_at=now + timedelta(seconds=client.access_token_ttl),
            created_at=now,
        )
        await self.store.create_access_token(access)
        refresh = RefreshToken(
            id=str(uuid.uuid4()),
            token=self.codec.generate_opaque_token(),
            access_token_id=access.id,
            user_id=user_id,
            client_id=client.client_id,
            tenant_id=tenant_id,
            scope=scope,
            expires_at=now + timedelta(seconds=client.refresh_token_ttl),
            created_at=now,
        )
        await self.store.create_refresh_token(refresh)
        logger.info(f"Issued tokens for user {user_id} to {client.client_id}")
        return TokenResponse(
            access_token=signed_access,
            expires_in=client.access_token_ttl,
            refresh_token=refresh.token,
            scope=scope,
            id_token=id_token,
        )

    async def _sign_id_token(self, client: Client, user_id: str, tenant_id: str) -> str:
        claims = {"sub": user_id, "aud": client.client_id, "tenant_id": tenant_id}
        profile = await self.store.get_user_profile(user_id, tenant_id)
        if profile:
            claims.update(
                {
                    "email": profile.email,
                    "email_verified": profile.email_verified,
                    "name": profile.name,
                    "picture": profile.picture,
                    "tenant_name": profile.tenant_name,
                    "role": profile.role,
                }
            )
        return self.codec.sign_id_token(claims, client.access_token_ttl)

    async def _connect_app(
        self, session_token: str, client: Client, user_id: str, refreshed: bool = False
    ) -> NonCritical:
        """
        Attach the client to the caller's SSO session so it takes part in single
        logout. Sessions belonging to another user are ignored.
        """
        try:
            session = await self.sessions.get_active(session_token)
            if not session:
                return NonCritical.skipped("no active SSO session")
            if session.user_id != user_id:
                return NonCritical.skipped("SSO session belongs to another user")
            await self.sessions.connect_app(session, client)
            if refreshed:
                await self.sessions.log_activity(
                    session.id,
                    ActivityType.TOKEN_REFRESH,
                    client_id=client.client_id,
                    metadata={"client_id": client.client_id},
                )
            return NonCritical.done()
        except Exception as exc:
            return NonCritical.failed(str(exc))

    async def resolve_access_token(self, bearer: Optional[str]) -> Dict:
        """
        Verify a presented bearer JWT and its server-side record; returns the claims.
        Raises InvalidTokenError when the token is invalid, revoked or expired.
        """
        claims = self.codec.verify_signed_token(bearer)
        record = await self.store.get_access_token(claims.get("jti") or "")
        if not record or not record.is_active():
            raise InvalidTokenError("Invalid or expired token")
        return claims

    async def userinfo(self, bearer: Optional[str]) -> Dict:
        """
        Claims about the token's subject, gated by the granted scopes.
        """
        claims = await self.resolve_access_token(bearer)
        profile = await self.store.get_user_profile(claims["sub"], claims.get("tenant_id") or "")
        if not profile:
            raise InvalidTokenError("Invalid or expired token")
        scopes = parse_scopes(claims.get("scope"))
        info = {
            "sub": profile.user_id,
            "email": profile.email,
            "email_verified": profile.email_verified,
        }
        if "profile" in scopes:
            info["name"] = profile.name
            info["picture"] = profile.picture
            info["updated_at"] = int(profile.updated_at.timestamp()) if profile.updated_at else None
        if "phone" in scopes:
            info["phone_number"] = profile.phone_number
        info.update(
            {
                "tenant_id": profile.tenant_id,
                "tenant_name": profile.tenant_name,
                "role": profile.role,
                "permissions": profile.permissions,
            }
        )
        return info
