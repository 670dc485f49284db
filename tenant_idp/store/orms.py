"""
ORM tables backing the SQL store.

Timestamps are stored as naive UTC. Access and refresh tokens are stored as SHA256
hashes; lookups always start from the presented token.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from tenant_idp.database import Base, generate_uuid


class ClientRow(Base):
    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    client_secret_hash = Column(String, nullable=False)
    name = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    logo_url = Column(String, nullable=True)
    homepage_url = Column(String, nullable=True)
    redirect_uris = Column(JSON, nullable=False, default=list)
    allowed_scopes = Column(JSON, nullable=False, default=list)
    allowed_grant_types = Column(JSON, nullable=False, default=list)
    access_token_ttl = Column(Integer, nullable=False)
    refresh_token_ttl = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_first_party = Column(Boolean, default=False, nullable=False)
    logout_url = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class AccessTokenRow(Base):
    __tablename__ = "oauth_access_tokens"

    id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    client_id = Column(
        String, ForeignKey("oauth_clients.client_id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String, nullable=False)
    scope = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class RefreshTokenRow(Base):
    __tablename__ = "oauth_refresh_tokens"

    id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False, unique=True, index=True)
    access_token_id = Column(
        String, ForeignKey("oauth_access_tokens.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, nullable=False)
    client_id = Column(
        String, ForeignKey("oauth_clients.client_id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String, nullable=False)
    scope = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class ConsentRow(Base):
    __tablename__ = "oauth_user_consents"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False)
    client_id = Column(
        String, ForeignKey("oauth_clients.client_id", ondelete="CASCADE"), nullable=False
    )
    tenant_id = Column(String, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    granted_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", "tenant_id", name="constraint_consent_grant"),
    )


class SessionRow(Base):
    __tablename__ = "sso_sessions"

    id = Column(String, primary_key=True, default=generate_uuid)
    session_token = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String, nullable=False, default="unknown")
    device_name = Column(String, nullable=True)
    remember_me = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)


class ConnectedAppRow(Base):
    __tablename__ = "sso_connected_apps"

    id = Column(String, primary_key=True, default=generate_uuid)
    sso_session_id = Column(
        String, ForeignKey("sso_sessions.id", ondelete="CASCADE"), nullable=False
    )
    client_id = Column(String, nullable=False)
    app_session_token = Column(String, nullable=True)
    logout_url = Column(String, nullable=True)
    connected_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("sso_session_id", "client_id", name="constraint_connected_app"),
    )


class ActivityRow(Base):
    __tablename__ = "sso_session_activity"

    id = Column(String, primary_key=True, default=generate_uuid)
    # No foreign key: the audit trail outlives purged sessions.
    sso_session_id = Column(String, nullable=False)
    activity_type = Column(String, nullable=False)
    client_id = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes.
    activity_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_activity_session_created", "sso_session_id", "created_at"),)


# Directory tables, owned by the tenant administration product and read here.
class TenantRow(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class UserProfileRow(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    updated_at = Column(DateTime, nullable=True)


class RoleRow(Base):
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=generate_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)


class RolePermissionRow(Base):
    __tablename__ = "role_permissions"

    role_id = Column(String, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission = Column(String, primary_key=True)


class UserTenantRow(Base):
    __tablename__ = "user_tenants"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    role_id = Column(String, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "tenant_id", name="constraint_user_tenant"),
    )
