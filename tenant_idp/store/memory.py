"""
Dict-backed store for development and tests.

Mutations never await between read and write, so each method is atomic with respect
to other coroutines on the same event loop.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from tenant_idp.oauth.schemas import (
    AccessToken,
    AuthorizationCode,
    Client,
    RefreshToken,
    UserConsent,
    UserProfile,
    utcnow,
)
from tenant_idp.sso.schemas import ConnectedApp, SessionActivity, SSOSession
from tenant_idp.store.base import DataStore


class MemoryStore(DataStore):
    def __init__(self):
        self.clients: Dict[str, Client] = {}
        self.codes: Dict[str, AuthorizationCode] = {}
        self.access_tokens: Dict[str, AccessToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.consents: Dict[Tuple[str, str, str], UserConsent] = {}
        self.sessions: Dict[str, SSOSession] = {}
        self.connected_apps: Dict[Tuple[str, str], ConnectedApp] = {}
        self.activity: List[SessionActivity] = []
        self.memberships: Dict[str, List[UserProfile]] = {}

    def add_membership(self, profile: UserProfile) -> None:
        """Seed the directory with an active tenant membership."""
        self.memberships.setdefault(profile.user_id, []).append(profile)

    async def get_client(self, client_id: str) -> Optional[Client]:
        client = self.clients.get(client_id)
        return client.model_copy(deep=True) if client else None

    async def create_client(self, client: Client) -> Client:
        self.clients[client.client_id] = client.model_copy(deep=True)
        return client

    async def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[Client]:
        client = self.clients.get(client_id)
        if not client:
            return None
        updated = client.model_copy(update={**changes, "updated_at": utcnow()})
        self.clients[client_id] = updated
        return updated.model_copy(deep=True)

    async def delete_client(self, client_id: str) -> bool:
        return self.clients.pop(client_id, None) is not None

    async def list_clients(
        self, is_active: Optional[bool] = None, is_first_party: Optional[bool] = None
    ) -> List[Client]:
        clients = [
            client
            for client in self.clients.values()
            if (is_active is None or client.is_active == is_active)
            and (is_first_party is None or client.is_first_party == is_first_party)
        ]
        return [c.model_copy(deep=True) for c in sorted(clients, key=lambda c: c.created_at)]

    async def create_code(self, code: AuthorizationCode) -> None:
        self.codes[code.code] = code.model_copy(deep=True)

    async def get_code(self, code: str) -> Optional[AuthorizationCode]:
        record = self.codes.get(code)
        return record.model_copy(deep=True) if record else None

    async def delete_code(self, code: str) -> bool:
        return self.codes.pop(code, None) is not None

    async def create_access_token(self, token: AccessToken) -> None:
        self.access_tokens[token.token] = token.model_copy(deep=True)

    async def get_access_token(self, token: str) -> Optional[AccessToken]:
        record = self.access_tokens.get(token)
        return record.model_copy(deep=True) if record else None

    async def revoke_access_token(self, token: str, now: datetime) -> bool:
        record = self.access_tokens.get(token)
        if not record or record.revoked_at is not None:
            return False
        record.revoked_at = now
        return True

    async def create_refresh_token(self, token: RefreshToken) -> None:
        self.refresh_tokens[token.token] = token.model_copy(deep=True)

    async def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        record = self.refresh_tokens.get(token)
        return record.model_copy(deep=True) if record else None

    async def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        record = self.refresh_tokens.get(token)
        if not record or record.revoked_at is not None:
            return False
        record.revoked_at = now
        return True

    async def get_consent(
        self, user_id: str, client_id: str, tenant_id: str
    ) -> Optional[UserConsent]:
        consent = self.consents.get((user_id, client_id, tenant_id))
        return consent.model_copy(deep=True) if consent else None

    async def upsert_consent(self, consent: UserConsent) -> UserConsent:
        key = (consent.user_id, consent.client_id, consent.tenant_id)
        self.consents[key] = consent.model_copy(deep=True)
        return consent

    async def create_session(self, session: SSOSession) -> SSOSession:
        self.sessions[session.session_token] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_token: str) -> Optional[SSOSession]:
        session = self.sessions.get(session_token)
        return session.model_copy(deep=True) if session else None

    async def get_session_by_id(self, session_id: str) -> Optional[SSOSession]:
        for session in self.sessions.values():
            if session.id == session_id:
                return session.model_copy(deep=True)
        return None

    async def touch_session(
        self,
        session_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SSOSession]:
        session = self.sessions.get(session_token)
        if not session:
            return None
        previous = session.model_copy(deep=True)
        session.last_activity_at = now
        if ip_address:
            session.ip_address = ip_address
        if user_agent:
            session.user_agent = user_agent
        return previous

    async def revoke_session(self, session_token: str, now: datetime) -> bool:
        session = self.sessions.get(session_token)
        if not session or session.expires_at <= now:
            return False
        session.expires_at = now
        return True

    async def revoke_user_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        affected = []
        for session in self.sessions.values():
            if session.user_id == user_id and session.expires_at > now:
                session.expires_at = now
                affected.append(session.model_copy(deep=True))
        return affected

    async def list_active_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        active = [
            s for s in self.sessions.values() if s.user_id == user_id and s.expires_at > now
        ]
        active.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [s.model_copy(deep=True) for s in active]

    async def upsert_connected_app(self, app: ConnectedApp) -> bool:
        key = (app.sso_session_id, app.client_id)
        existing = self.connected_apps.get(key)
        if existing:
            existing.last_seen_at = app.last_seen_at
            if app.app_session_token:
                existing.app_session_token = app.app_session_token
            if app.logout_url:
                existing.logout_url = app.logout_url
            return False
        self.connected_apps[key] = app.model_copy(deep=True)
        return True

    async def list_connected_apps(self, sso_session_id: str) -> List[ConnectedApp]:
        apps = [a for a in self.connected_apps.values() if a.sso_session_id == sso_session_id]
        apps.sort(key=lambda a: a.connected_at)
        return [a.model_copy(deep=True) for a in apps]

    async def delete_connected_app(self, sso_session_id: str, client_id: str) -> bool:
        return self.connected_apps.pop((sso_session_id, client_id), None) is not None

    async def append_activity(self, activity: SessionActivity) -> None:
        self.activity.append(activity.model_copy(deep=True))

    async def list_activity(self, sso_session_id: str, limit: int = 50) -> List[SessionActivity]:
        events = [a for a in self.activity if a.sso_session_id == sso_session_id]
        events.reverse()
        return [a.model_copy(deep=True) for a in events[:limit]]

    async def count_activity(self, sso_session_id: str) -> int:
        return sum(1 for a in self.activity if a.sso_session_id == sso_session_id)

    async def get_default_tenant(self, user_id: str) -> Optional[str]:
        memberships = self.memberships.get(user_id)
        return memberships[0].tenant_id if memberships else None

    async def get_user_profile(self, user_id: str, tenant_id: str) -> Optional[UserProfile]:
        for profile in self.memberships.get(user_id, []):
            if profile.tenant_id == tenant_id:
                return profile.model_copy(deep=True)
        return None

    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        expired_codes = [key for key, c in self.codes.items() if c.expires_at <= now]
        for key in expired_codes:
            del self.codes[key]
        expired_refresh = [key for key, t in self.refresh_tokens.items() if t.expires_at <= now]
        for key in expired_refresh:
            del self.refresh_tokens[key]
        # Access tokens still referenced by a live refresh token are kept.
        live_parents = {t.access_token_id for t in self.refresh_tokens.values()}
        expired_access = [
            key
            for key, t in self.access_tokens.items()
            if t.expires_at <= now and t.id not in live_parents
        ]
        for key in expired_access:
            del self.access_tokens[key]
        expired_sessions = [s for s in self.sessions.values() if s.expires_at <= now]
        for session in expired_sessions:
            del self.sessions[session.session_token]
            for key in [k for k in self.connected_apps if k[0] == session.id]:
                del self.connected_apps[key]
        return {
            "codes": len(expired_codes),
            "access_tokens": len(expired_access),
            "refresh_tokens": len(expired_refresh),
            "sessions": len(expired_sessions),
        }
