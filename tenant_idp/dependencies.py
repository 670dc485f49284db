"""
FastAPI dependencies: services attached to app.state and the caller's SSO session.
"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from tenant_idp.config import Settings
from tenant_idp.oauth.introspection import IntrospectionService
from tenant_idp.oauth.registry import ClientRegistry
from tenant_idp.oauth.service import OAuthService
from tenant_idp.sso.logout import SingleLogoutService
from tenant_idp.sso.schemas import SSOSession
from tenant_idp.sso.service import SessionService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ClientRegistry:
    return request.app.state.registry


def get_oauth_service(request: Request) -> OAuthService:
    return request.app.state.oauth


def get_introspection_service(request: Request) -> IntrospectionService:
    return request.app.state.introspection


def get_session_service(request: Request) -> SessionService:
    return request.app.state.sessions


def get_logout_service(request: Request) -> SingleLogoutService:
    return request.app.state.logout


def get_client_ip(request: Request) -> Optional[str]:
    """Client address, preferring proxy headers."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def get_session_token(
    request: Request, settings: Settings = Depends(get_settings)
) -> Optional[str]:
    return request.cookies.get(settings.session_cookie_name)


async def get_sso_session(
    token: Optional[str] = Depends(get_session_token),
    sessions: SessionService = Depends(get_session_service),
) -> Optional[SSOSession]:
    """The caller's active SSO session, if any."""
    return await sessions.get_active(token)


async def require_sso_session(
    session: Optional[SSOSession] = Depends(get_sso_session),
) -> SSOSession:
    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="SSO session not found or expired",
        )
    return session


def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for client administration endpoints."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Client administration is disabled",
        )
    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode(), settings.admin_api_key.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
