"""
SSO session and single logout endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger
from pydantic import ValidationError

from tenant_idp.config import Settings
from tenant_idp.dependencies import (
    get_client_ip,
    get_logout_service,
    get_session_service,
    get_session_token,
    get_settings,
    require_sso_session,
)
from tenant_idp.oauth.errors import append_query
from tenant_idp.sso.logout import SingleLogoutService
from tenant_idp.sso.schemas import SessionCreateRequest, SSOSession
from tenant_idp.sso.service import SessionService

router = APIRouter()


def _set_session_cookie(response, settings: Settings, token: str, max_age: int) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


@router.post("/auth/session")
async def create_session(
    request: Request,
    settings: Settings = Depends(get_settings),
    sessions: SessionService = Depends(get_session_service),
):
    """
    Create an SSO session after the login front-end authenticated the user, who is
    identified by a trusted header set by that front-end.
    """
    user_id = request.headers.get(settings.authenticated_user_header)
    if not user_id:
        return JSONResponse({"error": "Not authenticated"}, status_code=401)
    try:
        body = await request.json() if await request.body() else {}
        args = SessionCreateRequest(**(body if isinstance(body, dict) else {}))
    except (ValueError, ValidationError):
        return JSONResponse({"error": "Invalid request body"}, status_code=400)

    try:
        tenant_id = args.tenant_id or await sessions.store.get_default_tenant(user_id)
        if not tenant_id or not await sessions.store.get_user_profile(user_id, tenant_id):
            return JSONResponse({"error": "No tenant associated with user"}, status_code=400)
        session, token = await sessions.create(
            user_id,
            tenant_id,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            remember_me=args.remember_me,
        )
    except Exception as exc:
        logger.error(f"Create SSO session error: {exc}")
        return JSONResponse({"error": "Failed to create SSO session"}, status_code=500)

    response = JSONResponse(
        {
            "success": True,
            "session": {
                "id": session.id,
                "expires_at": session.expires_at.isoformat(),
                "device_type": session.device_type.value,
                "device_name": session.device_name,
            },
        }
    )
    _set_session_cookie(response, settings, token, sessions.ttl_for(args.remember_me))
    return response


@router.get("/auth/session")
async def get_session(
    request: Request,
    token: Optional[str] = Depends(get_session_token),
    sessions: SessionService = Depends(get_session_service),
):
    """Current SSO session with its connected apps."""
    if not token:
        return JSONResponse({"error": "No active SSO session"}, status_code=404)
    details = await sessions.get_details(token)
    if not details:
        return JSONResponse({"error": "SSO session not found or expired"}, status_code=404)
    await sessions.touch(token, get_client_ip(request), request.headers.get("user-agent"))
    return JSONResponse(
        {"session": details.model_dump(mode="json", exclude={"session": {"session_token"}})}
    )


@router.delete("/auth/session")
async def delete_session(
    token: Optional[str] = Depends(get_session_token),
    settings: Settings = Depends(get_settings),
    sessions: SessionService = Depends(get_session_service),
):
    """Revoke the current SSO session without notifying connected apps."""
    response = JSONResponse({"success": True})
    try:
        if token:
            await sessions.revoke(token)
    except Exception as exc:
        logger.error(f"Revoke SSO session error: {exc}")
        response = JSONResponse({"error": "Failed to revoke SSO session"}, status_code=500)
    _clear_session_cookie(response, settings)
    return response


@router.get("/auth/session/activity")
async def session_activity(
    limit: int = 50,
    token: Optional[str] = Depends(get_session_token),
    session: SSOSession = Depends(require_sso_session),
    sessions: SessionService = Depends(get_session_service),
):
    events = await sessions.list_activity(token, limit=max(1, min(limit, 200)))
    return {"activity": [event.model_dump(mode="json") for event in events]}


@router.delete("/auth/session/apps/{client_id}")
async def disconnect_app(
    client_id: str,
    session: SSOSession = Depends(require_sso_session),
    sessions: SessionService = Depends(get_session_service),
):
    """Detach a client so it is no longer notified on logout."""
    removed = await sessions.disconnect_app(session, client_id)
    return {"client_id": client_id, "disconnected": removed}


@router.get("/auth/sessions")
async def list_sessions(
    session: SSOSession = Depends(require_sso_session),
    sessions: SessionService = Depends(get_session_service),
):
    """Active sessions of the current user across devices."""
    active = await sessions.list_active(session.user_id)
    return {
        "sessions": [
            {
                **s.model_dump(mode="json", exclude={"session_token"}),
                "current": s.id == session.id,
                "idle": SessionService.is_idle(s),
            }
            for s in active
        ]
    }


@router.delete("/auth/sessions")
async def revoke_all_sessions(
    session: SSOSession = Depends(require_sso_session),
    settings: Settings = Depends(get_settings),
    sessions: SessionService = Depends(get_session_service),
):
    """Sign the current user out everywhere."""
    revoked = await sessions.revoke_all(session.user_id)
    response = JSONResponse({"success": True, "revoked": revoked})
    _clear_session_cookie(response, settings)
    return response


async def _read_notify_apps(request: Request) -> bool:
    try:
        body = await request.json() if await request.body() else {}
    except ValueError:
        return True
    if isinstance(body, dict) and isinstance(body.get("notify_apps"), bool):
        return body["notify_apps"]
    return True


@router.post("/auth/logout")
async def logout(
    request: Request,
    token: Optional[str] = Depends(get_session_token),
    settings: Settings = Depends(get_settings),
    slo: SingleLogoutService = Depends(get_logout_service),
):
    """
    Single logout: revoke the SSO session and notify connected apps. Notification
    failures are reported but never fail the logout.
    """
    try:
        result = await slo.logout(
            token,
            notify_apps=await _read_notify_apps(request),
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        response = JSONResponse(
            {
                "success": True,
                "apps_notified": result.success,
                "notification_errors": [f.model_dump() for f in result.failed],
            }
        )
    except Exception as exc:
        logger.error(f"Logout error: {exc}")
        response = JSONResponse({"error": "Logout completed with errors"}, status_code=500)
    _clear_session_cookie(response, settings)
    return response


@router.get("/auth/logout")
async def logout_redirect(
    request: Request,
    token: Optional[str] = Depends(get_session_token),
    settings: Settings = Depends(get_settings),
    slo: SingleLogoutService = Depends(get_logout_service),
):
    """Browser logout: single logout, then back to the login page."""
    try:
        await slo.logout(
            token,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except Exception as exc:
        logger.error(f"Logout error: {exc}")
    response = RedirectResponse(
        url=append_query(settings.login_url, {"logged_out": "true"}), status_code=302
    )
    _clear_session_cookie(response, settings)
    return response
