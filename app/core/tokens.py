"""Access token signing/validation (JWT) and opaque refresh token generation.

Access tokens carry identity only (sub, tid) plus issuer/audience/expiry.
Roles and permissions are not embedded: they are resolved from the permission
graph on every authorization check, so a revoked grant takes effect at once.

Refresh tokens are random opaque strings. Their only meaning is a lookup key
into the session ledger.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import jwt

from app.core.clock import Clock, as_utc, system_clock

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.models.user import User

logger = logging.getLogger(__name__)

# 64 random bytes -> 86 url-safe characters.
REFRESH_TOKEN_BYTES = 64

REQUIRED_CLAIMS = ("sub", "iss", "aud", "iat", "exp")


@dataclass(frozen=True)
class SigningKey:
    """Key material for access tokens. Replaced as a whole, never mutated."""

    secret: str
    algorithm: str = "HS256"


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime


class TokenAuthority:
    """Issues and validates access tokens; generates refresh token values."""

    def __init__(
        self,
        key: SigningKey,
        *,
        issuer: str,
        audience: str,
        access_token_minutes: int = 60,
        clock: Clock = system_clock,
    ) -> None:
        self._key = key
        self.issuer = issuer
        self.audience = audience
        self.access_token_lifetime = timedelta(minutes=access_token_minutes)
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: "Settings", clock: Clock = system_clock) -> "TokenAuthority":
        key = SigningKey(
            secret=settings.JWT_SECRET.get_secret_value(),
            algorithm=settings.JWT_ALGORITHM,
        )
        return cls(
            key,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            access_token_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
            clock=clock,
        )

    def rotate_signing_key(self, new_key: SigningKey) -> None:
        """Swap the key object; concurrent readers see either the old or the new key."""
        self._key = new_key
        logger.info("Access token signing key rotated: algorithm=%s", new_key.algorithm)

    def issue_access_token(self, user: "User") -> AccessToken:
        key = self._key
        now = self.clock.now()
        expires_at = now + self.access_token_lifetime
        payload: dict[str, Any] = {
            "sub": str(user.id),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
            "tid": user.project_id,
        }
        token = jwt.encode(payload, key.secret, algorithm=key.algorithm)
        return AccessToken(token=token, expires_at=expires_at)

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def validate_access_token(self, token: str) -> int | None:
        """
        Return the user id for a valid token, None otherwise.

        Signature, issuer, audience, required claims and expiry are all checked;
        expiry is compared against the injected clock with zero leeway. The
        failure reason is logged at DEBUG and never returned.
        """
        if not token or not isinstance(token, str):
            return None
        key = self._key
        try:
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[key.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": list(REQUIRED_CLAIMS), "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError as e:
            logger.debug("Access token rejected: reason=%s", type(e).__name__)
            return None
        try:
            expires_at = int(payload["exp"])
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            logger.debug("Access token rejected: reason=malformed_claims")
            return None
        if int(as_utc(self.clock.now()).timestamp()) >= expires_at:
            logger.debug("Access token rejected: reason=expired")
            return None
        return user_id
