"""
Single logout: revoke an SSO session and notify every connected application.
"""

import asyncio
from typing import List, Optional, Tuple

import aiohttp
from loguru import logger

from tenant_idp.constants import LOGOUT_EVENT, LOGOUT_NOTIFICATION_TIMEOUT
from tenant_idp.oauth.schemas import utcnow
from tenant_idp.sso.schemas import ActivityType, ConnectedApp, LogoutResult, NotificationFailure
from tenant_idp.sso.service import SessionService


class LogoutNotifier:
    """
    Deliver sso.logout events to connected applications over HTTP.
    """

    def __init__(self, timeout: float = LOGOUT_NOTIFICATION_TIMEOUT):
        self.timeout = timeout

    async def _notify(
        self, http: aiohttp.ClientSession, app: ConnectedApp, payload: dict
    ) -> Optional[str]:
        """POST one notification; returns an error reason, or None on success."""
        try:
            async with http.post(
                app.logout_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status < 200 or response.status >= 300:
                    return f"HTTP {response.status}"
                return None
        except Exception as exc:
            return str(exc) or exc.__class__.__name__

    async def notify_all(self, apps: List[ConnectedApp], session_token: str) -> LogoutResult:
        """
        Notify all apps concurrently; one failure never affects another delivery.
        """
        result = LogoutResult()
        targets = [app for app in apps if app.logout_url]
        if not targets:
            return result
        payload = {
            "event": LOGOUT_EVENT,
            "session_token": session_token,
            "timestamp": utcnow().isoformat(),
        }
        async with aiohttp.ClientSession() as http:
            errors: Tuple[Optional[str], ...] = await asyncio.gather(
                *[self._notify(http, app, payload) for app in targets]
            )
        for app, error in zip(targets, errors):
            if error is None:
                result.success.append(app.client_id)
            else:
                logger.warning(f"Logout notification to {app.client_id} failed: {error}")
                result.failed.append(NotificationFailure(client_id=app.client_id, error=error))
        return result


class SingleLogoutService:
    def __init__(self, sessions: SessionService, notifier: Optional[LogoutNotifier] = None):
        self.sessions = sessions
        self.notifier = notifier or LogoutNotifier()

    async def logout(
        self,
        session_token: Optional[str],
        notify_apps: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LogoutResult:
        """
        Revoke the session and fan out notifications. Unknown, expired or already
        revoked sessions produce an empty result.
        """
        session = await self.sessions.get_active(session_token)
        if not session:
            return LogoutResult()

        apps = []
        if notify_apps:
            apps = await self.sessions.store.list_connected_apps(session.id)

        await self.sessions.revoke(session_token)
        await self.sessions.log_activity(
            session.id,
            ActivityType.LOGOUT,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"apps_notified": len([a for a in apps if a.logout_url])},
        )
        logger.info(f"SSO session {session.id} logged out for user {session.user_id}")

        if not apps:
            return LogoutResult()
        result = await self.notifier.notify_all(apps, session_token)
        if result.failed:
            logger.warning(
                f"Single logout for session {session.id}: {len(result.success)} notified, "
                f"{len(result.failed)} failed"
            )
        return result
