"""
OAuth2/OIDC router: authorization, token, userinfo, introspection, revocation,
discovery and client administration endpoints.
"""

import base64
from typing import Optional, Tuple
from urllib.parse import unquote_plus, urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger
from pydantic import ValidationError

from tenant_idp.config import Settings
from tenant_idp.constants import PKCE_METHODS, SUPPORTED_GRANT_TYPES
from tenant_idp.dependencies import (
    get_introspection_service,
    get_oauth_service,
    get_registry,
    get_session_token,
    get_settings,
    get_sso_session,
    require_admin,
)
from tenant_idp.oauth.errors import (
    INVALID_CLIENT,
    INVALID_REQUEST,
    SERVER_ERROR,
    InvalidTokenError,
    OAuthError,
    append_query,
)
from tenant_idp.oauth.introspection import IntrospectionService
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.response import (
    ClientCreationResponse,
    ClientResponse,
    ClientSecretRegenerateResponse,
    OpenIDConfiguration,
)
from tenant_idp.oauth.schemas import (
    OAUTH_SCOPES,
    AuthorizeRequest,
    ClientCreateRequest,
    ClientUpdateRequest,
    TokenRequest,
    get_scope_descriptions,
)
from tenant_idp.oauth.service import (
    AuthorizeError,
    CodeIssued,
    ConsentRequired,
    LoginRequired,
    OAuthService,
)
from tenant_idp.oauth.templater import consent_page
from tenant_idp.sso.schemas import SSOSession

router = APIRouter()
admin_router = APIRouter(dependencies=[Depends(require_admin)])

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}
PUBLIC_CACHE = {"Cache-Control": "public, max-age=3600"}

_AUTHORIZE_FIELDS = tuple(AuthorizeRequest.model_fields)


def _error_response(exc: OAuthError, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


def _server_error() -> JSONResponse:
    return _error_response(OAuthError(SERVER_ERROR, "Internal server error"))


def _authorize_request(params) -> AuthorizeRequest:
    """Build an authorization request; blank values count as absent."""
    values = {}
    for field in _AUTHORIZE_FIELDS:
        value = params.get(field)
        if isinstance(value, str) and value:
            values[field] = value
    return AuthorizeRequest(**values)


async def _read_params(request: Request) -> dict:
    """
    Read a JSON or form-encoded body.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError(INVALID_REQUEST, "Malformed JSON body")
        if not isinstance(body, dict):
            raise OAuthError(INVALID_REQUEST, "Request body must be an object")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _basic_credentials(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Client credentials from an HTTP Basic authorization header (RFC 6749 2.3.1)."""
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic" or not value:
        return None, None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode()
    except (ValueError, UnicodeDecodeError):
        raise OAuthError(INVALID_CLIENT, "Malformed client credentials")
    client_id, separator, client_secret = decoded.partition(":")
    if not separator:
        raise OAuthError(INVALID_CLIENT, "Malformed client credentials")
    return unquote_plus(client_id), unquote_plus(client_secret)


async def _read_client_params(request: Request) -> dict:
    params = await _read_params(request)
    client_id, client_secret = _basic_credentials(request)
    if client_id is not None:
        params.setdefault("client_id", client_id)
        params.setdefault("client_secret", client_secret)
    return params


def _render_authorize(result, request: Request, settings: Settings, return_to: str):
    if isinstance(result, AuthorizeError):
        if result.delivery.is_redirect:
            return RedirectResponse(url=result.delivery.location(result.error), status_code=302)
        return _error_response(result.error)
    if isinstance(result, LoginRequired):
        return RedirectResponse(
            url=append_query(settings.login_url, {"redirect": return_to}), status_code=302
        )
    if isinstance(result, ConsentRequired):
        return HTMLResponse(
            content=consent_page(
                result.client,
                result.request,
                result.tenant_id,
                get_scope_descriptions(result.scopes),
                action_url=request.url.path,
            ),
            headers=NO_STORE,
        )
    if isinstance(result, CodeIssued):
        return RedirectResponse(url=result.redirect_to, status_code=302)
    raise TypeError(f"Unexpected authorization result: {result!r}")


@router.get("/authorize")
async def authorize(
    request: Request,
    session: Optional[SSOSession] = Depends(get_sso_session),
    settings: Settings = Depends(get_settings),
    oauth: OAuthService = Depends(get_oauth_service),
):
    """
    OAuth2 authorization endpoint. Issues a code directly when the user already
    consented to the requested scopes, otherwise renders the consent page.
    """
    try:
        auth_request = _authorize_request(request.query_params)
        result = await oauth.authorize(auth_request, session)
        return _render_authorize(result, request, settings, str(request.url))
    except Exception as exc:
        logger.error(f"Authorization error: {exc}")
        return _server_error()


@router.post("/authorize")
async def authorize_submit(
    request: Request,
    session: Optional[SSOSession] = Depends(get_sso_session),
    settings: Settings = Depends(get_settings),
    oauth: OAuthService = Depends(get_oauth_service),
):
    """
    Consent submission (action=approve|deny); a POST without an action is treated
    as a form-encoded authorization request.
    """
    try:
        form = await request.form()
        auth_request = _authorize_request(form)
        action = form.get("action")
        if action == "approve":
            result = await oauth.approve(auth_request, session)
        elif action == "deny":
            result = await oauth.deny(auth_request, session)
        else:
            result = await oauth.authorize(auth_request, session)
        return_to = str(
            request.url.replace(query=urlencode(auth_request.model_dump(exclude_none=True)))
        )
        return _render_authorize(result, request, settings, return_to)
    except Exception as exc:
        logger.error(f"Authorization submission error: {exc}")
        return _server_error()


@router.post("/token")
async def token(
    request: Request,
    session_token: Optional[str] = Depends(get_session_token),
    oauth: OAuthService = Depends(get_oauth_service),
):
    """
    OAuth2 token endpoint (authorization_code and refresh_token grants).
    """
    try:
        params = await _read_client_params(request)
        try:
            token_request = TokenRequest(**{k: params.get(k) for k in TokenRequest.model_fields})
        except ValidationError:
            raise OAuthError(INVALID_REQUEST, "Malformed token request")
        response = await oauth.token(token_request, sso_session_token=session_token)
        return JSONResponse(response.model_dump(exclude_none=True), headers=NO_STORE)
    except OAuthError as exc:
        logger.warning(f"Token request rejected: {exc.error} ({exc.description})")
        return _error_response(exc, headers=NO_STORE)
    except Exception as exc:
        logger.error(f"Token endpoint error: {exc}")
        return _server_error()


async def _userinfo(request: Request, oauth: OAuthService):
    header = request.headers.get("authorization", "")
    scheme, _, bearer = header.partition(" ")
    if scheme.lower() != "bearer" or not bearer.strip():
        return _error_response(
            OAuthError(INVALID_REQUEST, "Missing or invalid Authorization header", status_code=401),
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return JSONResponse(await oauth.userinfo(bearer.strip()))
    except InvalidTokenError:
        return JSONResponse(
            {"error": "invalid_token", "error_description": "Invalid or expired access token"},
            status_code=401,
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    except Exception as exc:
        logger.error(f"Userinfo error: {exc}")
        return _server_error()


@router.get("/userinfo")
async def userinfo(request: Request, oauth: OAuthService = Depends(get_oauth_service)):
    """OpenID Connect userinfo endpoint."""
    return await _userinfo(request, oauth)


@router.post("/userinfo")
async def userinfo_post(request: Request, oauth: OAuthService = Depends(get_oauth_service)):
    return await _userinfo(request, oauth)


@router.post("/introspect")
async def introspect(
    request: Request,
    introspection: IntrospectionService = Depends(get_introspection_service),
):
    """
    Token introspection (RFC 7662). Unusable tokens only ever yield {"active": false}.
    """
    try:
        params = await _read_client_params(request)
        token = params.get("token")
        result = await introspection.introspect(
            token if isinstance(token, str) else None,
            params.get("client_id"),
            params.get("client_secret"),
        )
        return JSONResponse(result, headers=NO_STORE)
    except OAuthError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.error(f"Introspection error: {exc}")
        return JSONResponse({"active": False}, headers=NO_STORE)


@router.post("/revoke")
async def revoke(
    request: Request,
    introspection: IntrospectionService = Depends(get_introspection_service),
):
    """
    Token revocation (RFC 7009). Answers 200 with an empty body whether or not the
    token existed.
    """
    try:
        params = await _read_params(request)
    except OAuthError as exc:
        logger.warning(f"Unreadable revocation request: {exc.description}")
        return Response(status_code=200)
    try:
        client_id, client_secret = _basic_credentials(request)
        if client_id is not None:
            params.setdefault("client_id", client_id)
            params.setdefault("client_secret", client_secret)
        token = params.get("token")
        await introspection.revoke(
            token if isinstance(token, str) else None,
            params.get("token_type_hint"),
            params.get("client_id"),
            params.get("client_secret"),
        )
    except OAuthError as exc:
        return _error_response(exc)
    except Exception as exc:
        logger.error(f"Revocation error: {exc}")
    return Response(status_code=200)


@router.get("/.well-known/openid-configuration", response_model=OpenIDConfiguration)
async def openid_configuration(settings: Settings = Depends(get_settings)):
    issuer = settings.issuer.rstrip("/")
    config = OpenIDConfiguration(
        issuer=settings.issuer,
        authorization_endpoint=f"{issuer}/authorize",
        token_endpoint=f"{issuer}/token",
        userinfo_endpoint=f"{issuer}/userinfo",
        jwks_uri=f"{issuer}/.well-known/jwks.json",
        introspection_endpoint=f"{issuer}/introspect",
        revocation_endpoint=f"{issuer}/revoke",
        end_session_endpoint=f"{issuer}/auth/logout",
        scopes_supported=list(OAUTH_SCOPES),
        response_types_supported=["code"],
        grant_types_supported=list(SUPPORTED_GRANT_TYPES),
        subject_types_supported=["public"],
        id_token_signing_alg_values_supported=[settings.jwt_algorithm],
        token_endpoint_auth_methods_supported=["client_secret_post", "client_secret_basic"],
        code_challenge_methods_supported=list(PKCE_METHODS),
        claims_supported=[
            "sub",
            "iss",
            "aud",
            "exp",
            "iat",
            "email",
            "email_verified",
            "name",
            "picture",
            "phone_number",
            "tenant_id",
            "tenant_name",
            "role",
            "permissions",
        ],
    )
    return JSONResponse(config.model_dump(), headers=PUBLIC_CACHE)


@router.get("/.well-known/jwks.json")
async def jwks():
    """Tokens are signed with a symmetric key, so there are no public keys to publish."""
    return JSONResponse({"keys": []}, headers=PUBLIC_CACHE)


@admin_router.get("/oauth/clients", response_model=list[ClientResponse])
async def list_clients(
    is_active: Optional[bool] = None,
    is_first_party: Optional[bool] = None,
    registry: ClientRegistry = Depends(get_registry),
):
    clients = await registry.list(is_active=is_active, is_first_party=is_first_party)
    return [ClientResponse.model_validate(client, from_attributes=True) for client in clients]


@admin_router.post(
    "/oauth/clients",
    response_model=ClientCreationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_client(
    args: ClientCreateRequest,
    registry: ClientRegistry = Depends(get_registry),
):
    """
    Register a client. The secret is only returned in this response.
    """
    client, client_secret = await registry.create(args)
    return ClientCreationResponse(
        **ClientResponse.model_validate(client, from_attributes=True).model_dump(),
        client_secret=client_secret,
    )


async def _load_client(client_id: str, registry: ClientRegistry):
    client = await registry.get_any(client_id)
    if not client:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="OAuth client not found",
        )
    return client


@admin_router.get("/oauth/clients/{client_id}", response_model=ClientResponse)
async def get_client(client_id: str, registry: ClientRegistry = Depends(get_registry)):
    client = await _load_client(client_id, registry)
    return ClientResponse.model_validate(client, from_attributes=True)


@admin_router.patch("/oauth/clients/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    args: ClientUpdateRequest,
    registry: ClientRegistry = Depends(get_registry),
):
    await _load_client(client_id, registry)
    client = await registry.update(client_id, args)
    return ClientResponse.model_validate(client, from_attributes=True)


@admin_router.delete("/oauth/clients/{client_id}")
async def delete_client(client_id: str, registry: ClientRegistry = Depends(get_registry)):
    await _load_client(client_id, registry)
    await registry.delete(client_id)
    return {"client_id": client_id, "deleted": True}


@admin_router.post(
    "/oauth/clients/{client_id}/regenerate-secret",
    response_model=ClientSecretRegenerateResponse,
)
async def regenerate_client_secret(
    client_id: str, registry: ClientRegistry = Depends(get_registry)
):
    """
    Replace the client secret; the previous one stops working immediately.
    """
    await _load_client(client_id, registry)
    client_secret = await registry.regenerate_secret(client_id)
    return ClientSecretRegenerateResponse(client_id=client_id, client_secret=client_secret)
