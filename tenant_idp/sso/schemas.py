"""
SSO session records.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tenant_idp.oauth.schemas import utcnow


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    UNKNOWN = "unknown"


class ActivityType(str, Enum):
    """
    Session audit events. Recognized metadata keys per type:

    login: device, remember_me
    app_connect: logout_url
    forced_logout: reason
    suspicious_activity: previous_ip, ip, previous_user_agent
    token_refresh: client_id
    """

    LOGIN = "login"
    LOGOUT = "logout"
    APP_CONNECT = "app_connect"
    APP_DISCONNECT = "app_disconnect"
    TOKEN_REFRESH = "token_refresh"
    SESSION_EXPIRED = "session_expired"
    FORCED_LOGOUT = "forced_logout"
    PASSWORD_CHANGED = "password_changed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class DeviceInfo(BaseModel):
    device_type: DeviceType = DeviceType.UNKNOWN
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


class SSOSession(BaseModel):
    """
    Browser login shared across applications. Revocation sets expires_at to now.
    """

    id: str
    session_token: str
    user_id: str
    tenant_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    device_name: Optional[str] = None
    remember_me: bool = False
    expires_at: datetime
    last_activity_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < self.expires_at


class ConnectedApp(BaseModel):
    id: str
    sso_session_id: str
    client_id: str
    app_session_token: Optional[str] = None
    logout_url: Optional[str] = None
    connected_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)


class SessionActivity(BaseModel):
    id: str
    sso_session_id: str
    activity_type: ActivityType
    client_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class NotificationFailure(BaseModel):
    client_id: str
    error: str


class LogoutResult(BaseModel):
    success: List[str] = Field(default_factory=list)
    failed: List[NotificationFailure] = Field(default_factory=list)


class SessionDetails(BaseModel):
    session: SSOSession
    connected_apps: List[ConnectedApp] = Field(default_factory=list)
    activity_count: int = 0


class SessionCreateRequest(BaseModel):
    tenant_id: Optional[str] = None
    remember_me: bool = False
