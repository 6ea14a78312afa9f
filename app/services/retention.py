"""Storage hygiene: delete refresh tokens that expired or were revoked more than RETENTION_HOURS ago."""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.database import commit_or_raise
from app.core.tokens import TokenAuthority
from app.services.session_ledger import SessionLedger

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)


def run_retention(session: Session, settings: "Settings", clock: Clock = system_clock) -> int:
    """
    Purge spent refresh tokens. Returns the number of rows deleted.

    Expiry never depends on this job; it only keeps the table small. Idempotent:
    safe to run repeatedly.
    """
    if not settings.RETENTION_ENABLED:
        logger.info("Retention is disabled (RETENTION_ENABLED=false); skipping.")
        return 0

    cutoff = clock.now() - timedelta(hours=settings.RETENTION_HOURS)
    ledger = SessionLedger(
        session,
        generate_value=TokenAuthority.issue_refresh_token,
        lifetime_days=settings.REFRESH_TOKEN_EXPIRE_DAYS,
        clock=clock,
    )
    deleted_count = ledger.purge_spent(cutoff)
    commit_or_raise(session)

    if deleted_count > 0:
        logger.info(
            "Retention run: cutoff=%s, refresh_tokens_deleted=%s",
            cutoff.isoformat(),
            deleted_count,
        )
    return deleted_count
