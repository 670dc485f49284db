"""
Token codec: opaque tokens, signed (JWT) access/ID tokens, client secret hashing
and PKCE verification.
"""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional

import jwt
from passlib.hash import argon2
from pydantic import BaseModel

from tenant_idp.constants import SSO_TOKEN_PREFIX
from tenant_idp.oauth.errors import InvalidTokenError, SigningError

ACCESS_TOKEN_CLAIMS = ("sub", "client_id", "tenant_id", "scope")
ID_TOKEN_CLAIMS = (
    "sub",
    "aud",
    "email",
    "email_verified",
    "name",
    "picture",
    "tenant_id",
    "tenant_name",
    "role",
)


class CodecConfig(BaseModel):
    """Signing configuration injected at startup."""

    secret_key: Optional[str] = None
    issuer: str
    algorithm: str = "HS256"


def pkce_s256(verifier: str) -> str:
    """
    RFC 7636: BASE64URL(SHA256(code_verifier)), without padding.
    """
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class TokenCodec:
    def __init__(self, config: CodecConfig):
        self.config = config

    @staticmethod
    def generate_opaque_token(byte_length: int = 32) -> str:
        """Generate a URL-safe random token."""
        return secrets.token_urlsafe(byte_length)

    @classmethod
    def generate_session_token(cls) -> str:
        """SSO session tokens: fixed prefix plus 48 URL-safe characters."""
        return f"{SSO_TOKEN_PREFIX}{cls.generate_opaque_token(36)}"

    def _sign(self, payload: dict, ttl_seconds: int) -> str:
        if not self.config.secret_key:
            raise SigningError("No signing key configured")
        now = int(time.time())
        payload.update(
            {
                "iat": now,
                "exp": now + int(ttl_seconds),
                "iss": self.config.issuer,
            }
        )
        return jwt.encode(
            payload,
            self.config.secret_key,
            algorithm=self.config.algorithm,
            headers={"typ": "JWT"},
        )

    def sign_access_token(self, claims: dict, ttl_seconds: int, jti: Optional[str] = None) -> str:
        """
        Sign an access token carrying sub/client_id/tenant_id/scope; iat, exp, iss
        and jti are always server issued.
        """
        payload = {key: claims[key] for key in ACCESS_TOKEN_CLAIMS if claims.get(key) is not None}
        payload["jti"] = jti or self.generate_opaque_token(12)
        return self._sign(payload, ttl_seconds)

    def sign_id_token(self, claims: dict, ttl_seconds: int) -> str:
        """Sign an OpenID Connect ID token."""
        payload = {key: claims[key] for key in ID_TOKEN_CLAIMS if claims.get(key) is not None}
        return self._sign(payload, ttl_seconds)

    def verify_signed_token(
        self,
        token: str,
        audience: Optional[str] = None,
        verify_exp: bool = True,
    ) -> dict:
        """
        Validate signature, issuer and expiry. Every failure surfaces as the same
        InvalidTokenError so callers cannot tell expired from tampered tokens.
        """
        if not self.config.secret_key or not token or not isinstance(token, str):
            raise InvalidTokenError("Invalid or expired token")
        try:
            return jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                audience=audience,
                options={
                    "require": ["exp", "iat", "iss"],
                    "verify_exp": verify_exp,
                    "verify_aud": audience is not None,
                },
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("Invalid or expired token") from exc

    @staticmethod
    def hash_secret(plain: str) -> str:
        return argon2.hash(plain)

    @staticmethod
    def verify_secret(plain: str, hashed: str) -> bool:
        if not plain or not hashed:
            return False
        try:
            return argon2.verify(plain, hashed)
        except (ValueError, TypeError):
            return False

    @staticmethod
    def verify_pkce_challenge(verifier: str, challenge: str, method: Optional[str]) -> bool:
        """
        Check a PKCE code_verifier against the stored challenge. A stored challenge
        without a method is treated as S256.
        """
        if not verifier or not challenge:
            return False
        method = method or "S256"
        if method == "plain":
            expected = verifier
        elif method == "S256":
            expected = pkce_s256(verifier)
        else:
            return False
        return hmac.compare_digest(expected.encode(), challenge.encode())
