"""
Protocol constants shared by the OAuth and SSO layers.
"""

AUTH_CODE_EXPIRY_SECONDS = 600
DEFAULT_ACCESS_TOKEN_TTL = 3600
DEFAULT_REFRESH_TOKEN_TTL = 30 * 24 * 60 * 60
MAX_REFRESH_TOKEN_TTL = 90 * 24 * 60 * 60

SSO_SESSION_TTL = 24 * 60 * 60
SSO_REMEMBER_ME_TTL = 30 * 24 * 60 * 60
SSO_IDLE_TIMEOUT = 30 * 60
SSO_TOKEN_PREFIX = "sso_"
SSO_COOKIE_NAME = "sso_session_token"

LOGOUT_NOTIFICATION_TIMEOUT = 5.0
LOGOUT_EVENT = "sso.logout"

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)
PKCE_METHODS = ("plain", "S256")
