"""
Data access interface shared by the OAuth and SSO layers.

Implementations must provide the atomic primitives the protocol relies on:
`delete_code` reports whether this caller removed the code, and
`revoke_refresh_token` only transitions an unrevoked token and reports whether it did.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from tenant_idp.oauth.schemas import (
    AccessToken,
    AuthorizationCode,
    Client,
    RefreshToken,
    UserConsent,
    UserProfile,
)
from tenant_idp.sso.schemas import ConnectedApp, SessionActivity, SSOSession


class DataStore(ABC):
    # Clients.
    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[Client]:
        """Load a client regardless of its active flag."""

    @abstractmethod
    async def create_client(self, client: Client) -> Client: ...

    @abstractmethod
    async def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[Client]: ...

    @abstractmethod
    async def delete_client(self, client_id: str) -> bool: ...

    @abstractmethod
    async def list_clients(
        self, is_active: Optional[bool] = None, is_first_party: Optional[bool] = None
    ) -> List[Client]: ...

    # Authorization codes.
    @abstractmethod
    async def create_code(self, code: AuthorizationCode) -> None: ...

    @abstractmethod
    async def get_code(self, code: str) -> Optional[AuthorizationCode]: ...

    @abstractmethod
    async def delete_code(self, code: str) -> bool:
        """Delete-if-exists; True only for the caller that removed it."""

    # Access and refresh tokens.
    @abstractmethod
    async def create_access_token(self, token: AccessToken) -> None: ...

    @abstractmethod
    async def get_access_token(self, token: str) -> Optional[AccessToken]: ...

    @abstractmethod
    async def revoke_access_token(self, token: str, now: datetime) -> bool: ...

    @abstractmethod
    async def create_refresh_token(self, token: RefreshToken) -> None: ...

    @abstractmethod
    async def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    @abstractmethod
    async def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        """Revoke an unrevoked refresh token; True only for the caller that revoked it."""

    # Consents.
    @abstractmethod
    async def get_consent(
        self, user_id: str, client_id: str, tenant_id: str
    ) -> Optional[UserConsent]: ...

    @abstractmethod
    async def upsert_consent(self, consent: UserConsent) -> UserConsent: ...

    # SSO sessions.
    @abstractmethod
    async def create_session(self, session: SSOSession) -> SSOSession: ...

    @abstractmethod
    async def get_session(self, session_token: str) -> Optional[SSOSession]: ...

    @abstractmethod
    async def get_session_by_id(self, session_id: str) -> Optional[SSOSession]: ...

    @abstractmethod
    async def touch_session(
        self,
        session_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SSOSession]:
        """Bump last_activity_at; returns the session as it was before the update."""

    @abstractmethod
    async def revoke_session(self, session_token: str, now: datetime) -> bool: ...

    @abstractmethod
    async def revoke_user_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        """Soft-expire every active session of a user; returns the affected sessions."""

    @abstractmethod
    async def list_active_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        """Active sessions, most recently used first."""

    # Connected apps.
    @abstractmethod
    async def upsert_connected_app(self, app: ConnectedApp) -> bool:
        """Insert or bump last_seen_at; True when the row was newly created."""

    @abstractmethod
    async def list_connected_apps(self, sso_session_id: str) -> List[ConnectedApp]: ...

    @abstractmethod
    async def delete_connected_app(self, sso_session_id: str, client_id: str) -> bool: ...

    # Activity log.
    @abstractmethod
    async def append_activity(self, activity: SessionActivity) -> None: ...

    @abstractmethod
    async def list_activity(self, sso_session_id: str, limit: int = 50) -> List[SessionActivity]:
        """Newest first."""

    @abstractmethod
    async def count_activity(self, sso_session_id: str) -> int: ...

    # Directory collaborator.
    @abstractmethod
    async def get_default_tenant(self, user_id: str) -> Optional[str]:
        """The user's first active tenant membership."""

    @abstractmethod
    async def get_user_profile(self, user_id: str, tenant_id: str) -> Optional[UserProfile]:
        """Profile through an active membership, None when the user is not a member."""

    # Maintenance.
    @abstractmethod
    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        """Delete expired codes, tokens and sessions; returns per-kind counts."""
