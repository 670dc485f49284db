"""
SSO session lifecycle, connected apps and the session activity log.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from tenant_idp.constants import SSO_IDLE_TIMEOUT, SSO_REMEMBER_ME_TTL, SSO_SESSION_TTL
from tenant_idp.oauth.codec import TokenCodec
from tenant_idp.oauth.schemas import Client, utcnow
from tenant_idp.sso.device import (
    is_valid_session_token,
    parse_user_agent,
    sanitize_device_name,
)
from tenant_idp.sso.schemas import (
    ActivityType,
    ConnectedApp,
    SessionActivity,
    SessionDetails,
    SSOSession,
)
from tenant_idp.store.base import DataStore


class SessionService:
    def __init__(
        self,
        store: DataStore,
        codec: TokenCodec,
        session_ttl: int = SSO_SESSION_TTL,
        remember_me_ttl: int = SSO_REMEMBER_ME_TTL,
    ):
        self.store = store
        self.codec = codec
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl

    def ttl_for(self, remember_me: bool) -> int:
        return self.remember_me_ttl if remember_me else self.session_ttl

    async def create(
        self,
        user_id: str,
        tenant_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> Tuple[SSOSession, str]:
        """
        Start an SSO session and log the login.
        """
        now = utcnow()
        token = self.codec.generate_session_token()
        device = parse_user_agent(user_agent)
        session = SSOSession(
            id=str(uuid.uuid4()),
            session_token=token,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device.device_type,
            device_name=sanitize_device_name(device.device_name),
            remember_me=remember_me,
            expires_at=now + timedelta(seconds=self.ttl_for(remember_me)),
            last_activity_at=now,
            created_at=now,
        )
        await self.store.create_session(session)
        await self.log_activity(
            session.id,
            ActivityType.LOGIN,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"device": device.device_name, "remember_me": remember_me},
        )
        logger.info(f"Created SSO session {session.id} for user {user_id} in tenant {tenant_id}")
        return session, token

    async def get(self, token: Optional[str]) -> Optional[SSOSession]:
        """Look up a session by token, including expired ones."""
        if not is_valid_session_token(token):
            return None
        return await self.store.get_session(token)

    async def get_active(self, token: Optional[str]) -> Optional[SSOSession]:
        session = await self.get(token)
        if not session or not session.is_active():
            return None
        return session

    async def get_by_id(self, session_id: str) -> Optional[SSOSession]:
        return await self.store.get_session_by_id(session_id)

    async def touch(
        self,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Record activity on a session. A change of both IP address and user agent
        is logged as suspicious.
        """
        if not is_valid_session_token(token):
            return False
        previous = await self.store.touch_session(token, utcnow(), ip_address, user_agent)
        if not previous:
            return False
        if (
            ip_address
            and user_agent
            and previous.ip_address
            and previous.user_agent
            and previous.ip_address != ip_address
            and previous.user_agent != user_agent
        ):
            logger.warning(
                f"Suspicious activity on SSO session {previous.id}: "
                f"ip {previous.ip_address} -> {ip_address}"
            )
            await self.log_activity(
                previous.id,
                ActivityType.SUSPICIOUS_ACTIVITY,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={
                    "previous_ip": previous.ip_address,
                    "ip": ip_address,
                    "previous_user_agent": previous.user_agent,
                },
            )
        return True

    async def revoke(self, token: str) -> bool:
        if not is_valid_session_token(token):
            return False
        return await self.store.revoke_session(token, utcnow())

    async def revoke_all(self, user_id: str, reason: str = "all_sessions_revoked") -> int:
        """Soft-expire every active session of a user, one forced_logout event each."""
        affected = await self.store.revoke_user_sessions(user_id, utcnow())
        for session in affected:
            await self.log_activity(
                session.id, ActivityType.FORCED_LOGOUT, metadata={"reason": reason}
            )
        if affected:
            logger.info(f"Revoked {len(affected)} SSO sessions for user {user_id}: {reason}")
        return len(affected)

    async def list_active(self, user_id: str) -> List[SSOSession]:
        return await self.store.list_active_sessions(user_id, utcnow())

    async def connect_app(
        self,
        session: SSOSession,
        client: Client,
        app_session_token: Optional[str] = None,
    ) -> bool:
        """
        Register (or refresh) a client on the session. app_connect is only logged
        the first time a client joins the session.
        """
        now = utcnow()
        logout_url = client.effective_logout_url
        created = await self.store.upsert_connected_app(
            ConnectedApp(
                id=str(uuid.uuid4()),
                sso_session_id=session.id,
                client_id=client.client_id,
                app_session_token=app_session_token,
                logout_url=logout_url,
                connected_at=now,
                last_seen_at=now,
            )
        )
        if created:
            await self.log_activity(
                session.id,
                ActivityType.APP_CONNECT,
                client_id=client.client_id,
                metadata={"logout_url": logout_url},
            )
        return created

    async def disconnect_app(self, session: SSOSession, client_id: str) -> bool:
        removed = await self.store.delete_connected_app(session.id, client_id)
        if removed:
            await self.log_activity(session.id, ActivityType.APP_DISCONNECT, client_id=client_id)
        return removed

    async def list_connected_apps(self, token: str) -> List[ConnectedApp]:
        session = await self.get(token)
        if not session:
            return []
        return await self.store.list_connected_apps(session.id)

    async def log_activity(
        self,
        sso_session_id: str,
        activity_type: ActivityType,
        client_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.store.append_activity(
            SessionActivity(
                id=str(uuid.uuid4()),
                sso_session_id=sso_session_id,
                activity_type=activity_type,
                client_id=client_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=metadata or {},
            )
        )

    async def list_activity(self, token: str, limit: int = 50) -> List[SessionActivity]:
        session = await self.get(token)
        if not session:
            return []
        return await self.store.list_activity(session.id, limit=limit)

    async def get_details(self, token: str) -> Optional[SessionDetails]:
        session = await self.get_active(token)
        if not session:
            return None
        return SessionDetails(
            session=session,
            connected_apps=await self.store.list_connected_apps(session.id),
            activity_count=await self.store.count_activity(session.id),
        )

    @staticmethod
    def is_idle(
        session: SSOSession, timeout: int = SSO_IDLE_TIMEOUT, now: Optional[datetime] = None
    ) -> bool:
        return session.last_activity_at < (now or utcnow()) - timedelta(seconds=timeout)
