"""
OAuth2 error taxonomy (RFC 6749 section 4.1.2.1 / 5.2) and delivery channels.
"""

from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
UNAUTHORIZED_CLIENT = "unauthorized_client"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
INVALID_SCOPE = "invalid_scope"
ACCESS_DENIED = "access_denied"
SERVER_ERROR = "server_error"

ERROR_CODES = (
    INVALID_REQUEST,
    INVALID_CLIENT,
    INVALID_GRANT,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_GRANT_TYPE,
    INVALID_SCOPE,
    ACCESS_DENIED,
    SERVER_ERROR,
)

_DEFAULT_STATUS = {
    INVALID_CLIENT: 401,
    SERVER_ERROR: 500,
}


class OAuthError(Exception):
    """
    Protocol-level failure carrying the RFC 6749 error code.
    """

    def __init__(
        self,
        error: str,
        description: Optional[str] = None,
        state: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        if error not in ERROR_CODES:
            raise ValueError(f"Unknown OAuth error code: {error}")
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.state = state
        self.status_code = status_code or _DEFAULT_STATUS.get(error, 400)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        if self.state:
            body["state"] = self.state
        return body

    def __repr__(self):
        return f"OAuthError(error={self.error!r}, description={self.description!r})"


class SigningError(Exception):
    """Raised when a token cannot be signed (missing key)."""


class InvalidTokenError(Exception):
    """Raised for any signed-token verification failure."""


def append_query(uri: str, params: dict) -> str:
    """
    Add query parameters to a URI, keeping any it already carries.
    """
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


class ErrorDelivery:
    """
    How an authorization error reaches the user agent: a JSON body with a status
    code, or a redirect to an already verified redirect URI.
    """

    JSON = "json"
    REDIRECT = "redirect"

    def __init__(self, kind: str, status_code: int = 400, redirect_uri: Optional[str] = None):
        self.kind = kind
        self.status_code = status_code
        self.redirect_uri = redirect_uri

    @classmethod
    def json(cls, status_code: int = 400) -> "ErrorDelivery":
        return cls(cls.JSON, status_code=status_code)

    @classmethod
    def redirect(cls, redirect_uri: str) -> "ErrorDelivery":
        return cls(cls.REDIRECT, status_code=302, redirect_uri=redirect_uri)

    @property
    def is_redirect(self) -> bool:
        return self.kind == self.REDIRECT

    def location(self, error: OAuthError) -> str:
        return append_query(self.redirect_uri, error.to_dict())

    def __repr__(self):
        if self.is_redirect:
            return f"ErrorDelivery.redirect({self.redirect_uri!r})"
        return f"ErrorDelivery.json({self.status_code})"
