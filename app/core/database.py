"""Database engine and session management (PostgreSQL in production, SQLite for local runs)."""

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.errors import AlreadyExists, StorageUnavailable

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record) -> None:
    """SQLite ignores FOREIGN KEY clauses unless enabled per connection."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def build_engine(
    database_url: str,
    *,
    connect_timeout: int = settings.DB_CONNECT_TIMEOUT_SEC,
    pool_timeout: int = settings.DB_POOL_TIMEOUT_SEC,
    echo: bool = False,
) -> Engine:
    """
    Create an engine that fails fast when storage is unavailable.

    Postgres gets a connect timeout and a statement timeout; SQLite gets a busy
    timeout so a locked database surfaces an error instead of hanging.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": connect_timeout},
            echo=echo,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        connect_args={
            "connect_timeout": connect_timeout,
            "options": f"-c statement_timeout={connect_timeout * 1000}",
        },
        echo=echo,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Dependency that yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_connected(db: Session) -> bool:
    """Run a trivial query to verify the database is reachable."""
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


def commit_or_raise(db: Session, conflict_message: str = "Resource already exists") -> None:
    """
    Commit the session, translating storage failures into service errors.

    A unique-constraint violation becomes AlreadyExists; any other driver
    error becomes the retryable StorageUnavailable. The session is rolled back
    in both cases and the driver detail is only logged.
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.info("Commit rejected by constraint: %s", e.orig)
        raise AlreadyExists(conflict_message) from e
    except DBAPIError as e:
        db.rollback()
        logger.warning("Commit failed, storage unavailable: %s", type(e.orig).__name__)
        raise StorageUnavailable() from e


@contextmanager
def storage_errors(db: Session) -> Iterator[None]:
    """Turn driver errors raised inside the block into StorageUnavailable (after rollback)."""
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as e:
        db.rollback()
        logger.warning("Storage operation failed: %s", type(e.orig).__name__)
        raise StorageUnavailable() from e
