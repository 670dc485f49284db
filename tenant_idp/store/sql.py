"""
SQL store (async SQLAlchemy), with authorization codes kept in redis.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_idp.database import session_scope
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
from tenant_idp.store.orms import (
    AccessTokenRow,
    ActivityRow,
    ClientRow,
    ConnectedAppRow,
    ConsentRow,
    RefreshTokenRow,
    RolePermissionRow,
    RoleRow,
    SessionRow,
    TenantRow,
    UserProfileRow,
    UserTenantRow,
)

_CLIENT_FIELDS = tuple(f for f in Client.model_fields)


def hash_token(token: str) -> str:
    """SHA256 for lookup keys (not argon2, tokens are high-entropy)."""
    return hashlib.sha256(token.encode()).hexdigest()


def code_key(code: str) -> str:
    return f"idp:auth_code:{hash_token(code)}"


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _client(row: ClientRow) -> Client:
    return Client(
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        name=row.name,
        description=row.description,
        logo_url=row.logo_url,
        homepage_url=row.homepage_url,
        redirect_uris=list(row.redirect_uris or []),
        allowed_scopes=list(row.allowed_scopes or []),
        allowed_grant_types=list(row.allowed_grant_types or []),
        access_token_ttl=row.access_token_ttl,
        refresh_token_ttl=row.refresh_token_ttl,
        is_active=row.is_active,
        is_first_party=row.is_first_party,
        logout_url=row.logout_url,
        created_at=_aware(row.created_at) or utcnow(),
        updated_at=_aware(row.updated_at) or utcnow(),
    )


def _sso_session(row: SessionRow) -> SSOSession:
    return SSOSession(
        id=row.id,
        session_token=row.session_token,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_type=row.device_type,
        device_name=row.device_name,
        remember_me=row.remember_me,
        expires_at=_aware(row.expires_at),
        last_activity_at=_aware(row.last_activity_at),
        created_at=_aware(row.created_at),
    )


def _connected_app(row: ConnectedAppRow) -> ConnectedApp:
    return ConnectedApp(
        id=row.id,
        sso_session_id=row.sso_session_id,
        client_id=row.client_id,
        app_session_token=row.app_session_token,
        logout_url=row.logout_url,
        connected_at=_aware(row.connected_at),
        last_seen_at=_aware(row.last_seen_at),
    )


class SQLStore(DataStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], redis_client):
        self.session_factory = session_factory
        self.redis_client = redis_client

    def _session(self):
        return session_scope(self.session_factory)

    async def get_client(self, client_id: str) -> Optional[Client]:
        async with self._session() as session:
            row = await session.get(ClientRow, client_id)
            return _client(row) if row else None

    async def create_client(self, client: Client) -> Client:
        values = client.model_dump()
        values["created_at"] = _naive(client.created_at)
        values["updated_at"] = _naive(client.updated_at)
        async with self._session() as session:
            session.add(ClientRow(**values))
            await session.commit()
        return client

    async def update_client(self, client_id: str, changes: Dict[str, Any]) -> Optional[Client]:
        async with self._session() as session:
            row = await session.get(ClientRow, client_id)
            if not row:
                return None
            for key, value in changes.items():
                if key in _CLIENT_FIELDS and key != "client_id":
                    setattr(row, key, value)
            row.updated_at = _naive(utcnow())
            await session.commit()
            await session.refresh(row)
            return _client(row)

    async def delete_client(self, client_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(delete(ClientRow).where(ClientRow.client_id == client_id))
            await session.commit()
            return result.rowcount > 0

    async def list_clients(
        self, is_active: Optional[bool] = None, is_first_party: Optional[bool] = None
    ) -> List[Client]:
        query = select(ClientRow).order_by(ClientRow.created_at)
        if is_active is not None:
            query = query.where(ClientRow.is_active.is_(is_active))
        if is_first_party is not None:
            query = query.where(ClientRow.is_first_party.is_(is_first_party))
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_client(row) for row in rows]

    async def create_code(self, code: AuthorizationCode) -> None:
        ttl = int((code.expires_at - utcnow()).total_seconds())
        await self.redis_client.set(code_key(code.code), code.model_dump_json(), ex=max(ttl, 1))

    async def get_code(self, code: str) -> Optional[AuthorizationCode]:
        data = await self.redis_client.get(code_key(code))
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        return AuthorizationCode.model_validate_json(data)

    async def delete_code(self, code: str) -> bool:
        return await self.redis_client.delete(code_key(code)) == 1

    async def create_access_token(self, token: AccessToken) -> None:
        async with self._session() as session:
            session.add(
                AccessTokenRow(
                    id=token.id,
                    token_hash=hash_token(token.token),
                    user_id=token.user_id,
                    client_id=token.client_id,
                    tenant_id=token.tenant_id,
                    scope=token.scope,
                    expires_at=_naive(token.expires_at),
                    revoked_at=_naive(token.revoked_at),
                    created_at=_naive(token.created_at),
                )
            )
            await session.commit()

    async def get_access_token(self, token: str) -> Optional[AccessToken]:
        if not token:
            return None
        async with self._session() as session:
            row = (
                await session.execute(
                    select(AccessTokenRow).where(AccessTokenRow.token_hash == hash_token(token))
                )
            ).scalar_one_or_none()
            if not row:
                return None
            return AccessToken(
                id=row.id,
                token=token,
                user_id=row.user_id,
                client_id=row.client_id,
                tenant_id=row.tenant_id,
                scope=row.scope,
                expires_at=_aware(row.expires_at),
                revoked_at=_aware(row.revoked_at),
                created_at=_aware(row.created_at),
            )

    async def revoke_access_token(self, token: str, now: datetime) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(AccessTokenRow)
                .where(
                    AccessTokenRow.token_hash == hash_token(token),
                    AccessTokenRow.revoked_at.is_(None),
                )
                .values(revoked_at=_naive(now))
            )
            await session.commit()
            return result.rowcount == 1

    async def create_refresh_token(self, token: RefreshToken) -> None:
        async with self._session() as session:
            session.add(
                RefreshTokenRow(
                    id=token.id,
                    token_hash=hash_token(token.token),
                    access_token_id=token.access_token_id,
                    user_id=token.user_id,
                    client_id=token.client_id,
                    tenant_id=token.tenant_id,
                    scope=token.scope,
                    expires_at=_naive(token.expires_at),
                    revoked_at=_naive(token.revoked_at),
                    created_at=_naive(token.created_at),
                )
            )
            await session.commit()

    async def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        async with self._session() as session:
            row = (
                await session.execute(
                    select(RefreshTokenRow).where(RefreshTokenRow.token_hash == hash_token(token))
                )
            ).scalar_one_or_none()
            if not row:
                return None
            return RefreshToken(
                id=row.id,
                token=token,
                access_token_id=row.access_token_id,
                user_id=row.user_id,
                client_id=row.client_id,
                tenant_id=row.tenant_id,
                scope=row.scope,
                expires_at=_aware(row.expires_at),
                revoked_at=_aware(row.revoked_at),
                created_at=_aware(row.created_at),
            )

    async def revoke_refresh_token(self, token: str, now: datetime) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(RefreshTokenRow)
                .where(
                    RefreshTokenRow.token_hash == hash_token(token),
                    RefreshTokenRow.revoked_at.is_(None),
                )
                .values(revoked_at=_naive(now))
            )
            await session.commit()
            return result.rowcount == 1

    async def get_consent(
        self, user_id: str, client_id: str, tenant_id: str
    ) -> Optional[UserConsent]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ConsentRow).where(
                        ConsentRow.user_id == user_id,
                        ConsentRow.client_id == client_id,
                        ConsentRow.tenant_id == tenant_id,
                    )
                )
            ).scalar_one_or_none()
            if not row:
                return None
            return UserConsent(
                user_id=row.user_id,
                client_id=row.client_id,
                tenant_id=row.tenant_id,
                scopes=list(row.scopes or []),
                granted_at=_aware(row.granted_at),
                expires_at=_aware(row.expires_at),
            )

    async def upsert_consent(self, consent: UserConsent) -> UserConsent:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ConsentRow).where(
                        ConsentRow.user_id == consent.user_id,
                        ConsentRow.client_id == consent.client_id,
                        ConsentRow.tenant_id == consent.tenant_id,
                    )
                )
            ).scalar_one_or_none()
            if row:
                row.scopes = list(consent.scopes)
                row.granted_at = _naive(consent.granted_at)
                row.expires_at = _naive(consent.expires_at)
            else:
                session.add(
                    ConsentRow(
                        user_id=consent.user_id,
                        client_id=consent.client_id,
                        tenant_id=consent.tenant_id,
                        scopes=list(consent.scopes),
                        granted_at=_naive(consent.granted_at),
                        expires_at=_naive(consent.expires_at),
                    )
                )
            await session.commit()
        return consent

    async def create_session(self, sso_session: SSOSession) -> SSOSession:
        async with self._session() as session:
            session.add(
                SessionRow(
                    id=sso_session.id,
                    session_token=sso_session.session_token,
                    user_id=sso_session.user_id,
                    tenant_id=sso_session.tenant_id,
                    ip_address=sso_session.ip_address,
                    user_agent=sso_session.user_agent,
                    device_type=sso_session.device_type.value,
                    device_name=sso_session.device_name,
                    remember_me=sso_session.remember_me,
                    expires_at=_naive(sso_session.expires_at),
                    last_activity_at=_naive(sso_session.last_activity_at),
                    created_at=_naive(sso_session.created_at),
                )
            )
            await session.commit()
        return sso_session

    async def get_session(self, session_token: str) -> Optional[SSOSession]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(SessionRow).where(SessionRow.session_token == session_token)
                )
            ).scalar_one_or_none()
            return _sso_session(row) if row else None

    async def get_session_by_id(self, session_id: str) -> Optional[SSOSession]:
        async with self._session() as session:
            row = await session.get(SessionRow, session_id)
            return _sso_session(row) if row else None

    async def touch_session(
        self,
        session_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SSOSession]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(SessionRow).where(SessionRow.session_token == session_token)
                )
            ).scalar_one_or_none()
            if not row:
                return None
            previous = _sso_session(row)
            row.last_activity_at = _naive(now)
            if ip_address:
                row.ip_address = ip_address
            if user_agent:
                row.user_agent = user_agent
            await session.commit()
            return previous

    async def revoke_session(self, session_token: str, now: datetime) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(SessionRow)
                .where(
                    SessionRow.session_token == session_token,
                    SessionRow.expires_at > _naive(now),
                )
                .values(expires_at=_naive(now))
            )
            await session.commit()
            return result.rowcount == 1

    async def revoke_user_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        async with self._session() as session:
            rows = (
                (
                    await session.execute(
                        select(SessionRow).where(
                            SessionRow.user_id == user_id,
                            SessionRow.expires_at > _naive(now),
                        )
                    )
                )
                .scalars()
                .all()
            )
            for row in rows:
                row.expires_at = _naive(now)
            await session.commit()
            return [_sso_session(row) for row in rows]

    async def list_active_sessions(self, user_id: str, now: datetime) -> List[SSOSession]:
        async with self._session() as session:
            rows = (
                (
                    await session.execute(
                        select(SessionRow)
                        .where(
                            SessionRow.user_id == user_id,
                            SessionRow.expires_at > _naive(now),
                        )
                        .order_by(SessionRow.last_activity_at.desc())
                    )
                )
                .scalars()
                .all()
            )
            return [_sso_session(row) for row in rows]

    async def upsert_connected_app(self, app: ConnectedApp) -> bool:
        async def _bump(session: AsyncSession) -> bool:
            row = (
                await session.execute(
                    select(ConnectedAppRow).where(
                        ConnectedAppRow.sso_session_id == app.sso_session_id,
                        ConnectedAppRow.client_id == app.client_id,
                    )
                )
            ).scalar_one_or_none()
            if not row:
                return False
            row.last_seen_at = _naive(app.last_seen_at)
            if app.app_session_token:
                row.app_session_token = app.app_session_token
            if app.logout_url:
                row.logout_url = app.logout_url
            await session.commit()
            return True

        async with self._session() as session:
            if await _bump(session):
                return False
            session.add(
                ConnectedAppRow(
                    id=app.id,
                    sso_session_id=app.sso_session_id,
                    client_id=app.client_id,
                    app_session_token=app.app_session_token,
                    logout_url=app.logout_url,
                    connected_at=_naive(app.connected_at),
                    last_seen_at=_naive(app.last_seen_at),
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError:
                # Lost the race against a concurrent insert for the same pair.
                await session.rollback()
                await _bump(session)
                return False

    async def list_connected_apps(self, sso_session_id: str) -> List[ConnectedApp]:
        async with self._session() as session:
            rows = (
                (
                    await session.execute(
                        select(ConnectedAppRow)
                        .where(ConnectedAppRow.sso_session_id == sso_session_id)
                        .order_by(ConnectedAppRow.connected_at)
                    )
                )
                .scalars()
                .all()
            )
            return [_connected_app(row) for row in rows]

    async def delete_connected_app(self, sso_session_id: str, client_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(ConnectedAppRow).where(
                    ConnectedAppRow.sso_session_id == sso_session_id,
                    ConnectedAppRow.client_id == client_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def append_activity(self, activity: SessionActivity) -> None:
        async with self._session() as session:
            session.add(
                ActivityRow(
                    id=activity.id,
                    sso_session_id=activity.sso_session_id,
                    activity_type=activity.activity_type.value,
                    client_id=activity.client_id,
                    ip_address=activity.ip_address,
                    user_agent=activity.user_agent,
                    activity_metadata=activity.metadata,
                    created_at=_naive(activity.created_at),
                )
            )
            await session.commit()

    async def list_activity(self, sso_session_id: str, limit: int = 50) -> List[SessionActivity]:
        async with self._session() as session:
            rows = (
                (
                    await session.execute(
                        select(ActivityRow)
                        .where(ActivityRow.sso_session_id == sso_session_id)
                        .order_by(ActivityRow.created_at.desc())
                        .limit(limit)
                    )
                )
                .scalars()
                .all()
            )
            return [
                SessionActivity(
                    id=row.id,
                    sso_session_id=row.sso_session_id,
                    activity_type=row.activity_type,
                    client_id=row.client_id,
                    ip_address=row.ip_address,
                    user_agent=row.user_agent,
                    metadata=row.activity_metadata or {},
                    created_at=_aware(row.created_at),
                )
                for row in rows
            ]

    async def count_activity(self, sso_session_id: str) -> int:
        async with self._session() as session:
            return (
                await session.execute(
                    select(func.count())
                    .select_from(ActivityRow)
                    .where(ActivityRow.sso_session_id == sso_session_id)
                )
            ).scalar_one()

    async def get_default_tenant(self, user_id: str) -> Optional[str]:
        async with self._session() as session:
            return (
                await session.execute(
                    select(UserTenantRow.tenant_id)
                    .join(TenantRow, TenantRow.id == UserTenantRow.tenant_id)
                    .where(
                        UserTenantRow.user_id == user_id,
                        UserTenantRow.is_active.is_(True),
                        TenantRow.is_active.is_(True),
                    )
                    .order_by(UserTenantRow.created_at, UserTenantRow.id)
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def get_user_profile(self, user_id: str, tenant_id: str) -> Optional[UserProfile]:
        async with self._session() as session:
            result = (
                await session.execute(
                    select(UserTenantRow, TenantRow, UserProfileRow, RoleRow)
                    .join(TenantRow, TenantRow.id == UserTenantRow.tenant_id)
                    .join(UserProfileRow, UserProfileRow.user_id == UserTenantRow.user_id)
                    .outerjoin(RoleRow, RoleRow.id == UserTenantRow.role_id)
                    .where(
                        UserTenantRow.user_id == user_id,
                        UserTenantRow.tenant_id == tenant_id,
                        UserTenantRow.is_active.is_(True),
                        TenantRow.is_active.is_(True),
                    )
                )
            ).first()
            if not result:
                return None
            _, tenant, profile, role = result
            permissions = []
            if role:
                permissions = list(
                    (
                        await session.execute(
                            select(RolePermissionRow.permission)
                            .where(RolePermissionRow.role_id == role.id)
                            .order_by(RolePermissionRow.permission)
                        )
                    )
                    .scalars()
                    .all()
                )
            return UserProfile(
                user_id=user_id,
                tenant_id=tenant.id,
                tenant_name=tenant.name,
                email=profile.email,
                email_verified=profile.email_verified,
                name=profile.full_name,
                picture=profile.avatar_url,
                phone_number=profile.phone_number,
                updated_at=_aware(profile.updated_at),
                role=role.name if role else None,
                permissions=permissions,
            )

    async def purge_expired(self, now: datetime) -> Dict[str, int]:
        """
        Codes expire on their own in redis; everything else is deleted here.
        """
        cutoff = _naive(now)
        counts = {"codes": 0}
        async with self._session() as session:
            result = await session.execute(
                delete(RefreshTokenRow).where(RefreshTokenRow.expires_at <= cutoff)
            )
            counts["refresh_tokens"] = result.rowcount
            # Access tokens still referenced by a live refresh token are kept.
            live_parents = select(RefreshTokenRow.access_token_id)
            result = await session.execute(
                delete(AccessTokenRow).where(
                    AccessTokenRow.expires_at <= cutoff,
                    AccessTokenRow.id.not_in(live_parents),
                )
            )
            counts["access_tokens"] = result.rowcount
            expired_sessions = select(SessionRow.id).where(SessionRow.expires_at <= cutoff)
            await session.execute(
                delete(ConnectedAppRow).where(ConnectedAppRow.sso_session_id.in_(expired_sessions))
            )
            result = await session.execute(delete(SessionRow).where(SessionRow.expires_at <= cutoff))
            counts["sessions"] = result.rowcount
            await session.commit()
        return counts
