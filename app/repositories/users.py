"""User lookups used by the auth service. Each returns a value or None, never raises for "not found"."""

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models import User


def find_user_by_identifier(db: Session, identifier: str) -> User | None:
    """
    Resolve a login identifier to a user.

    Username comparison is exact and case-sensitive. Email comparison uses the
    lower-cased identifier because emails are stored lower-cased. Usernames
    cannot contain '@', so at most one row can match.
    """
    if not identifier:
        return None
    stmt = select(User).where(
        or_(User.username == identifier, User.email == identifier.strip().lower())
    )
    return db.execute(stmt).scalars().first()


def find_user_by_id(db: Session, user_id: int) -> User | None:
    return db.get(User, user_id)


def username_or_email_taken(db: Session, username: str, email: str) -> bool:
    stmt = select(User.id).where(or_(User.username == username, User.email == email)).limit(1)
    return db.execute(stmt).first() is not None
