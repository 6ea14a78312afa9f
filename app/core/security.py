"""Password hashing, verification and password/username policy."""

import re
from typing import TYPE_CHECKING

import bcrypt

from app.core.config import settings as app_settings
from app.core.errors import PolicyViolation

if TYPE_CHECKING:
    from app.core.config import Settings

# bcrypt only reads the first 72 bytes of input.
BCRYPT_MAX_BYTES = 72

# Min/max lengths for username and email validation.
USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 100
EMAIL_MAX_LEN = 255

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")
SPECIAL_CHARACTERS = "@$!%*?&#"


def hash_password(plain_password: str, rounds: int | None = None) -> str:
    """Hash a plain-text password for storage. Do not store plain passwords."""
    cost = rounds if rounds is not None else app_settings.BCRYPT_ROUNDS
    pw_bytes = plain_password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(pw_bytes, bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain_password: str, hashed: str | None) -> bool:
    """Verify a plain password against a stored hash. Malformed hashes verify as False."""
    if not hashed:
        return False
    pw_bytes = plain_password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    try:
        return bcrypt.checkpw(pw_bytes, hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Verified against when the identifier is unknown so response time does not
# reveal whether an account exists.
DUMMY_HASH: str = hash_password("gatekeeper-timing-equalizer")


def same_bcrypt_input(first: str, second: str) -> bool:
    """True when bcrypt would hash both passwords identically (same first 72 bytes)."""
    return first.encode("utf-8")[:BCRYPT_MAX_BYTES] == second.encode("utf-8")[:BCRYPT_MAX_BYTES]


def check_password_policy(password: str, settings: "Settings") -> list[str]:
    """Return every policy rule the password breaks (empty list when acceptable)."""
    violations: list[str] = []
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        violations.append(
            f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters"
        )
    if len(password) > settings.PASSWORD_MAX_LENGTH:
        violations.append(
            f"Password cannot exceed {settings.PASSWORD_MAX_LENGTH} characters"
        )
    elif len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        violations.append(f"Password cannot exceed {BCRYPT_MAX_BYTES} bytes")
    if settings.PASSWORD_REQUIRE_LOWERCASE and not any(c.islower() for c in password):
        violations.append("Password must contain at least one lowercase letter")
    if settings.PASSWORD_REQUIRE_UPPERCASE and not any(c.isupper() for c in password):
        violations.append("Password must contain at least one uppercase letter")
    if settings.PASSWORD_REQUIRE_DIGIT and not any(c.isdigit() for c in password):
        violations.append("Password must contain at least one number")
    if settings.PASSWORD_REQUIRE_SPECIAL and not any(c in SPECIAL_CHARACTERS for c in password):
        violations.append(
            f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"
        )
    return violations


def enforce_password_policy(password: str, settings: "Settings") -> None:
    violations = check_password_policy(password, settings)
    if violations:
        raise PolicyViolation(violations[0], violations)


def validate_username(username: str) -> None:
    """Usernames are 3-100 chars of letters, digits and underscores (never contain '@')."""
    if not (USERNAME_MIN_LEN <= len(username) <= USERNAME_MAX_LEN):
        raise PolicyViolation(
            f"Username must be between {USERNAME_MIN_LEN} and {USERNAME_MAX_LEN} characters"
        )
    if not USERNAME_PATTERN.match(username):
        raise PolicyViolation(
            "Username can only contain letters, numbers, and underscores"
        )


def normalize_email(email: str) -> str:
    """Emails are stored and compared lower-cased."""
    normalized = email.strip().lower()
    if len(normalized) > EMAIL_MAX_LEN or not EMAIL_PATTERN.match(normalized):
        raise PolicyViolation("Invalid email format")
    return normalized
