"""Authentication orchestrator: login, register, refresh, password change, revocation.

Each operation is one transaction against the session ledger and the user
table. Audit entries are recorded after that transaction commits or rolls
back, so an audit write never holds the primary transaction open.

Refresh token reuse: presenting a rotated or revoked refresh token (or losing
a rotation race on the same token) revokes every active refresh token of the
user before the caller gets Unauthorized. That includes a successor issued by
the winning half of a race; the user logs in again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.config import Settings, settings as app_settings
from app.core.database import commit_or_raise, storage_errors
from app.core.errors import (
    AccountNotActive,
    AlreadyExists,
    InvalidCredentials,
    NotFound,
    PolicyViolation,
    Unauthorized,
)
from app.core.security import (
    DUMMY_HASH,
    enforce_password_policy,
    hash_password,
    normalize_email,
    same_bcrypt_input,
    validate_username,
    verify_password,
)
from app.core.tokens import TokenAuthority
from app.models import AuditAction, RefreshToken, User, UserStatus
from app.repositories.rbac import scope_filter
from app.repositories.users import find_user_by_id, find_user_by_identifier, username_or_email_taken
from app.services.audit import AuditEntry, AuditRecorder
from app.services.session_ledger import SessionLedger, TokenReuseDetected, TokenState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user: User


class AuthService:
    """Composes credential checks, the token authority and the session ledger per request."""

    def __init__(
        self,
        db: Session,
        authority: TokenAuthority,
        recorder: AuditRecorder,
        settings: Settings = app_settings,
        clock: Clock = system_clock,
    ) -> None:
        self.db = db
        self.authority = authority
        self.recorder = recorder
        self.settings = settings
        self.clock = clock
        self.ledger = SessionLedger(
            db,
            generate_value=authority.issue_refresh_token,
            lifetime_days=settings.REFRESH_TOKEN_EXPIRE_DAYS,
            clock=clock,
        )

    def _audit(self, action: AuditAction, **fields) -> None:
        self.recorder.record(AuditEntry(action=action, timestamp=self.clock.now(), **fields))

    def _issue_pair(self, user: User, ip_address: str | None) -> tuple[TokenPair, RefreshToken]:
        refresh = self.ledger.issue(user.id, ip_address)
        access = self.authority.issue_access_token(user)
        pair = TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_token_expires_at=access.expires_at,
            refresh_token_expires_at=refresh.expires_at,
            user=user,
        )
        return pair, refresh

    # Login / register

    def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """
        Exchange username-or-email and password for an access/refresh token pair.

        Usernames match case-sensitively; emails match case-insensitively.
        Unknown identifier and wrong password both raise InvalidCredentials.
        """
        with storage_errors(self.db):
            user = find_user_by_identifier(self.db, identifier)
            if user is None:
                # Same bcrypt cost as a real check so timing does not reveal the miss.
                verify_password(password, DUMMY_HASH)
                password_ok = False
            else:
                password_ok = verify_password(password, user.password_hash)

            if not password_ok:
                known_id = user.id if user is not None else None
                project_id = user.project_id if user is not None else None
                self.db.rollback()
                logger.debug("Login failed: identifier_known=%s", known_id is not None)
                self._audit(
                    AuditAction.LOGIN_FAILED,
                    user_id=known_id,
                    entity_type="User",
                    details=f"Failed login attempt: {identifier}",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    project_id=project_id,
                )
                raise InvalidCredentials()

            if not user.is_active:
                user_id, status, project_id = user.id, user.status, user.project_id
                self.db.rollback()
                self._audit(
                    AuditAction.LOGIN_FAILED,
                    user_id=user_id,
                    entity_id=user_id,
                    entity_type="User",
                    details=f"Login attempt on {status} account: {identifier}",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    project_id=project_id,
                )
                raise AccountNotActive()

            user.last_login_at = self.clock.now()
            pair, _ = self._issue_pair(user, ip_address)
            commit_or_raise(self.db)

        logger.info("Login succeeded: user_id=%s", user.id)
        self._audit(
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            entity_id=user.id,
            entity_type="User",
            details="User logged in successfully",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=user.project_id,
        )
        return pair

    def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        project_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        """
        Create an active user. Policy checks run first; the unique constraints on
        username and email decide concurrent registrations of the same identity.
        """
        validate_username(username)
        email = normalize_email(email)
        enforce_password_policy(password, self.settings)

        with storage_errors(self.db):
            if username_or_email_taken(self.db, username, email):
                self.db.rollback()
                raise AlreadyExists("Username or email already exists")
            user = User(
                username=username,
                email=email,
                password_hash=hash_password(password, rounds=self.settings.BCRYPT_ROUNDS),
                first_name=first_name,
                last_name=last_name,
                status=UserStatus.ACTIVE,
                project_id=project_id,
            )
            self.db.add(user)
            commit_or_raise(self.db, "Username or email already exists")

        logger.info("User registered: user_id=%s", user.id)
        self._audit(
            AuditAction.USER_CREATED,
            user_id=user.id,
            entity_id=user.id,
            entity_type="User",
            details=f"User created: {user.username}",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=project_id,
        )
        return user

    # Refresh

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Rotate a refresh token and issue a new access token."""
        with storage_errors(self.db):
            token = self.ledger.find(refresh_token)
            if token is None:
                self._refresh_failed(None, "Unknown refresh token", ip_address, user_agent)

            state = self.ledger.state_of(token)
            if state in (TokenState.ROTATED, TokenState.REVOKED):
                self._reuse_detected(token, ip_address, user_agent)
            if state is TokenState.EXPIRED:
                self._refresh_failed(token, "Refresh token expired", ip_address, user_agent)

            user = find_user_by_id(self.db, token.user_id)
            if user is None or not user.is_active:
                self._refresh_failed(token, "Refresh for inactive account", ip_address, user_agent)

            try:
                successor = self.ledger.rotate(token, ip_address)
            except TokenReuseDetected:
                self.db.rollback()
                # Re-read after rollback: a token that merely expired in the
                # meantime is not a reuse signal.
                if self.ledger.state_of(token) is TokenState.EXPIRED:
                    self._refresh_failed(token, "Refresh token expired", ip_address, user_agent)
                self._reuse_detected(token, ip_address, user_agent)

            access = self.authority.issue_access_token(user)
            commit_or_raise(self.db)

        self._audit(
            AuditAction.TOKEN_REFRESHED,
            user_id=user.id,
            entity_id=successor.id,
            entity_type="RefreshToken",
            details="Refresh token rotated",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=user.project_id,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=successor.token,
            access_token_expires_at=access.expires_at,
            refresh_token_expires_at=successor.expires_at,
            user=user,
        )

    @staticmethod
    def _token_owner(token: RefreshToken | None) -> tuple[int | None, str | None]:
        """User id and tenant of the token owner, for audit entries."""
        if token is None:
            return None, None
        return token.user_id, token.user.project_id if token.user is not None else None

    def _refresh_failed(
        self,
        token: RefreshToken | None,
        reason: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        user_id, project_id = self._token_owner(token)
        self.db.rollback()
        logger.debug("Refresh rejected: user_id=%s reason=%s", user_id, reason)
        self._audit(
            AuditAction.REFRESH_FAILED,
            user_id=user_id,
            entity_type="RefreshToken",
            details=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=project_id,
        )
        raise Unauthorized("Invalid refresh token")

    def _reuse_detected(
        self,
        token: RefreshToken,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        """Revoke the whole active token set of the owner, then reject the call."""
        user_id, project_id = self._token_owner(token)
        token_id = token.id
        revoked = self.ledger.revoke_all(user_id)
        commit_or_raise(self.db)
        logger.warning(
            "Refresh token reuse detected: user_id=%s token_id=%s revoked=%s",
            user_id,
            token_id,
            revoked,
        )
        self._audit(
            AuditAction.TOKEN_REUSE_DETECTED,
            user_id=user_id,
            entity_id=token_id,
            entity_type="RefreshToken",
            details=f"Spent refresh token presented again; revoked {revoked} active tokens",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=project_id,
        )
        raise Unauthorized("Invalid refresh token")

    # Password and revocation

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """
        Replace the password hash. Returns the number of refresh tokens revoked
        (0 when REVOKE_SESSIONS_ON_PASSWORD_CHANGE is off).
        """
        with storage_errors(self.db):
            user = find_user_by_id(self.db, user_id)
            if user is None:
                self.db.rollback()
                raise Unauthorized()
            if not verify_password(current_password, user.password_hash):
                project_id = user.project_id
                self.db.rollback()
                self._audit(
                    AuditAction.PASSWORD_CHANGE_FAILED,
                    user_id=user_id,
                    entity_id=user_id,
                    entity_type="User",
                    details="Current password did not verify",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    project_id=project_id,
                )
                raise Unauthorized("Current password is incorrect")
            if same_bcrypt_input(new_password, current_password):
                self.db.rollback()
                raise PolicyViolation("New password must be different from the current password")
            enforce_password_policy(new_password, self.settings)

            user.password_hash = hash_password(new_password, rounds=self.settings.BCRYPT_ROUNDS)
            user.updated_at = self.clock.now()
            revoked = 0
            if self.settings.REVOKE_SESSIONS_ON_PASSWORD_CHANGE:
                revoked = self.ledger.revoke_all(user_id)
            commit_or_raise(self.db)

        self._audit(
            AuditAction.PASSWORD_CHANGED,
            user_id=user_id,
            entity_id=user_id,
            entity_type="User",
            details=f"Password changed; revoked {revoked} refresh tokens",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=user.project_id,
        )
        return revoked

    def revoke_token(
        self,
        refresh_token: str,
        *,
        user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """
        Revoke one refresh token. Idempotent: False when the token is unknown,
        already inactive or (when ``user_id`` is given) owned by someone else.
        """
        with storage_errors(self.db):
            token = self.ledger.find(refresh_token)
            owned = token is not None and (user_id is None or token.user_id == user_id)
            revoked = self.ledger.revoke(refresh_token) if owned else False
            actor_id = user_id if user_id is not None else (token.user_id if token else None)
            project_id = self._user_scope(actor_id)
            commit_or_raise(self.db)

        self._audit(
            AuditAction.TOKEN_REVOKED,
            user_id=actor_id,
            entity_id=token.id if owned else None,
            entity_type="RefreshToken",
            details="Refresh token revoked" if revoked else "Refresh token revoke was a no-op",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=project_id,
        )
        return revoked

    def revoke_all_tokens(
        self,
        user_id: int,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        with storage_errors(self.db):
            revoked = self.ledger.revoke_all(user_id)
            project_id = self._user_scope(user_id)
            commit_or_raise(self.db)

        self._audit(
            AuditAction.ALL_TOKENS_REVOKED,
            user_id=user_id,
            entity_id=user_id,
            entity_type="User",
            details=f"Revoked {revoked} refresh tokens",
            ip_address=ip_address,
            user_agent=user_agent,
            project_id=project_id,
        )
        return revoked

    def _user_scope(self, user_id: int | None) -> str | None:
        """Tenant of ``user_id`` (None for unknown users and the global scope)."""
        if user_id is None:
            return None
        user = find_user_by_id(self.db, user_id)
        return user.project_id if user is not None else None

    # Boundary helpers and user administration

    def authenticate(self, access_token: str) -> User:
        """Resolve a bearer token to an active user or raise Unauthorized."""
        user_id = self.authority.validate_access_token(access_token)
        if user_id is None:
            raise Unauthorized("Invalid or expired token")
        with storage_errors(self.db):
            user = find_user_by_id(self.db, user_id)
        if user is None or not user.is_active:
            logger.debug("Bearer rejected: user_id=%s reason=inactive_or_missing", user_id)
            raise Unauthorized("Invalid or expired token")
        return user

    def _scoped_user(self, user_id: int, project_id: str | None) -> User:
        user = self.db.execute(
            select(User).where(User.id == user_id, scope_filter(User.project_id, project_id))
        ).scalars().first()
        if user is None:
            raise NotFound("User not found")
        return user

    def update_status(
        self,
        user_id: int,
        status: UserStatus,
        *,
        project_id: str | None = None,
        actor_id: int | None = None,
    ) -> User:
        """Change account status; leaving ACTIVE revokes every refresh token of the user."""
        with storage_errors(self.db):
            user = self._scoped_user(user_id, project_id)
            previous = user.status
            user.status = status
            user.updated_at = self.clock.now()
            revoked = 0
            if status != UserStatus.ACTIVE:
                revoked = self.ledger.revoke_all(user_id)
            commit_or_raise(self.db)

        self._audit(
            AuditAction.USER_UPDATED,
            user_id=actor_id,
            entity_id=user_id,
            entity_type="User",
            details=f"Status {previous} -> {status}; revoked {revoked} refresh tokens",
            project_id=project_id,
        )
        return user

    def delete_user(
        self,
        user_id: int,
        *,
        project_id: str | None = None,
        actor_id: int | None = None,
    ) -> None:
        """Revoke the user's refresh tokens, then delete the user with its assignments."""
        with storage_errors(self.db):
            user = self._scoped_user(user_id, project_id)
            username = user.username
            self.ledger.revoke_all(user_id)
            self.db.delete(user)
            commit_or_raise(self.db)

        logger.info("User deleted: user_id=%s", user_id)
        self._audit(
            AuditAction.USER_DELETED,
            user_id=actor_id,
            entity_id=user_id,
            entity_type="User",
            details=f"User deleted: {username}",
            project_id=project_id,
        )
