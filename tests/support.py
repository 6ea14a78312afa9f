"""Shared fixtures for tests that need a real database: a temp SQLite file per test and a frozen clock."""

import tempfile
import unittest
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.database import build_engine
from app.core.tokens import SigningKey, TokenAuthority
from app.models import AuditAction, AuditLog, Base
from app.services.audit import AuditRecorder
from app.services.auth import AuthService

TEST_SECRET = "test-signing-secret-that-is-long-enough-0123456789"
STRONG_PASSWORD = "Str0ng!Pass"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current = self.current + timedelta(**delta)


class DatabaseTestCase(unittest.TestCase):
    """
    Each test gets its own SQLite file (separate connections per session, like
    a real server) with every table created, a synchronous audit recorder and
    a frozen clock.
    """

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{self._tmp.name}/test.db")
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        self.db = self.session_factory()
        self.clock = FrozenClock()
        self.settings = get_settings()
        self.recorder = AuditRecorder(self.session_factory, async_mode=False, retries=1)
        self.authority = TokenAuthority(
            SigningKey(TEST_SECRET),
            issuer="gatekeeper",
            audience="gatekeeper-clients",
            access_token_minutes=60,
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()
        self._tmp.cleanup()

    def auth_service(self, db=None, settings=None) -> AuthService:
        return AuthService(
            db if db is not None else self.db,
            self.authority,
            self.recorder,
            settings or self.settings,
            self.clock,
        )

    def audit_rows(self, action: AuditAction | None = None) -> list[AuditLog]:
        db = self.session_factory()
        try:
            stmt = select(AuditLog).order_by(AuditLog.id)
            if action is not None:
                stmt = stmt.where(AuditLog.action == action)
            return list(db.execute(stmt).scalars().all())
        finally:
            db.close()
