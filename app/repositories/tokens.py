"""Refresh token persistence. Every state change is a single conditional UPDATE."""

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models import RefreshToken


def find_refresh_token(db: Session, value: str) -> RefreshToken | None:
    if not value:
        return None
    return db.execute(select(RefreshToken).where(RefreshToken.token == value)).scalars().first()


def upsert_refresh_token(db: Session, token: RefreshToken) -> RefreshToken:
    """Add (or merge) a token row and flush so it gets an id inside the current transaction."""
    db.add(token)
    db.flush()
    return token


def mark_rotated(db: Session, value: str, now: datetime, replaced_by: str) -> bool:
    """
    Compare-and-swap: spend the token only if it is still active.

    Returns False when another transaction already rotated or revoked it (or it
    expired), which the caller must treat as a reuse signal.
    """
    result = db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.token == value,
            RefreshToken.revoked_at.is_(None),
            RefreshToken.expires_at > now,
        )
        .values(revoked_at=now, replaced_by_token=replaced_by)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def revoke_refresh_token(db: Session, value: str, now: datetime) -> bool:
    """Revoke one token if not already revoked. Returns whether a row changed."""
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.token == value, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def sweep_active_tokens(db: Session, user_id: int, now: datetime) -> int:
    """Revoke every token of the user that is active at ``now``; returns how many."""
    result = db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked_at.is_(None),
            RefreshToken.expires_at > now,
        )
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def list_active_tokens(db: Session, user_id: int, now: datetime) -> list[RefreshToken]:
    stmt = (
        select(RefreshToken)
        .where(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked_at.is_(None),
            RefreshToken.expires_at > now,
        )
        .order_by(RefreshToken.issued_at.desc())
    )
    return list(db.execute(stmt).scalars().all())
