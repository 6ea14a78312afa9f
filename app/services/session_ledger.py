"""Refresh token lifecycle: issue, rotate, revoke, revoke-all, purge.

States (derived from a row, never stored):

    ACTIVE  --rotate-->  ROTATED  (revoked_at set, replaced_by_token = successor)
    ACTIVE  --revoke-->  REVOKED  (revoked_at set, no successor)
    ACTIVE  --time---->  EXPIRED  (now >= expires_at; no sweep needed)

Rotation is a compare-and-swap on ``revoked_at IS NULL``: of two concurrent
rotations of one token exactly one succeeds and the other raises
TokenReuseDetected. The ledger flushes but never commits; the caller owns the
transaction.
"""

import logging
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Callable

from sqlalchemy import delete, or_
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_utc, system_clock
from app.models import RefreshToken
from app.repositories.tokens import (
    find_refresh_token,
    list_active_tokens,
    mark_rotated,
    revoke_refresh_token,
    sweep_active_tokens,
    upsert_refresh_token,
)

logger = logging.getLogger(__name__)


class TokenState(StrEnum):
    ACTIVE = "active"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


class TokenReuseDetected(Exception):
    """A spent refresh token was presented again (or lost a rotation race)."""

    def __init__(self, token: RefreshToken) -> None:
        self.token = token
        super().__init__(f"refresh token reuse for user_id={token.user_id}")


def token_state(token: RefreshToken, now: datetime) -> TokenState:
    if token.revoked_at is not None:
        return TokenState.ROTATED if token.replaced_by_token else TokenState.REVOKED
    if as_utc(now) >= as_utc(token.expires_at):
        return TokenState.EXPIRED
    return TokenState.ACTIVE


class SessionLedger:
    def __init__(
        self,
        db: Session,
        *,
        generate_value: Callable[[], str],
        lifetime_days: int = 7,
        clock: Clock = system_clock,
    ) -> None:
        self.db = db
        self.generate_value = generate_value
        self.lifetime = timedelta(days=lifetime_days)
        self.clock = clock

    def issue(self, user_id: int, ip_address: str | None = None) -> RefreshToken:
        now = self.clock.now()
        token = RefreshToken(
            user_id=user_id,
            token=self.generate_value(),
            issued_at=now,
            expires_at=now + self.lifetime,
            ip_address=ip_address,
        )
        return upsert_refresh_token(self.db, token)

    def find(self, value: str) -> RefreshToken | None:
        return find_refresh_token(self.db, value)

    def state_of(self, token: RefreshToken) -> TokenState:
        return token_state(token, self.clock.now())

    def rotate(self, presented: RefreshToken, ip_address: str | None = None) -> RefreshToken:
        """
        Spend ``presented`` and issue its successor for the same user.

        Raises TokenReuseDetected if the token was no longer active when the
        conditional update ran.
        """
        now = self.clock.now()
        successor_value = self.generate_value()
        if not mark_rotated(self.db, presented.token, now, successor_value):
            logger.warning(
                "Refresh token rotation lost: token_id=%s user_id=%s",
                presented.id,
                presented.user_id,
            )
            raise TokenReuseDetected(presented)
        successor = RefreshToken(
            user_id=presented.user_id,
            token=successor_value,
            issued_at=now,
            expires_at=now + self.lifetime,
            ip_address=ip_address,
        )
        upsert_refresh_token(self.db, successor)
        logger.debug("Refresh token rotated: token_id=%s successor_id=%s", presented.id, successor.id)
        return successor

    def revoke(self, value: str) -> bool:
        """Revoke one token. Idempotent: False when already inactive or unknown."""
        return revoke_refresh_token(self.db, value, self.clock.now())

    def revoke_all(self, user_id: int) -> int:
        """
        Revoke every token active at the start of the sweep.

        A token issued concurrently after the UPDATE's snapshot stays valid.
        """
        count = sweep_active_tokens(self.db, user_id, self.clock.now())
        logger.info("Revoked all refresh tokens: user_id=%s count=%s", user_id, count)
        return count

    def active_tokens(self, user_id: int) -> list[RefreshToken]:
        return list_active_tokens(self.db, user_id, self.clock.now())

    def purge_spent(self, cutoff: datetime) -> int:
        """Delete tokens that expired or were revoked before ``cutoff``. Storage hygiene only."""
        result = self.db.execute(
            delete(RefreshToken)
            .where(
                or_(
                    RefreshToken.expires_at < cutoff,
                    RefreshToken.revoked_at < cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
