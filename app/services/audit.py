"""Append-only audit trail: durable, non-blocking recording and filtered queries.

record() never raises into the caller. In async mode a worker thread drains a
bounded queue; when the queue is full or the worker is not running, the entry
is written synchronously instead of being dropped. Entries that still cannot
be written after retries are logged at ERROR with every field.
"""

import logging
import queue
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import system_clock
from app.core.database import storage_errors
from app.models import AuditAction, AuditLog
from app.repositories.rbac import scope_filter

logger = logging.getLogger(__name__)

DETAILS_MAX_LEN = 1000
USER_AGENT_MAX_LEN = 500

# Seconds to wait between write attempts (multiplied by the attempt number).
RETRY_BACKOFF_SEC = 0.05

# Max entries written per worker transaction.
WRITE_BATCH_SIZE = 100

_SENSITIVE_DETAIL = re.compile(
    r"(?i)\b(password|passwd|token|secret|authorization)\b(\s*[:=]\s*)(\S+)"
)
_REDACTED_VALUE = "[REDACTED]"

_STOP = object()


def sanitize_detail(detail: str | None) -> str | None:
    """Redact ``password=...``-style secrets and cap the length."""
    if detail is None:
        return None
    cleaned = _SENSITIVE_DETAIL.sub(lambda m: f"{m.group(1)}{m.group(2)}{_REDACTED_VALUE}", detail)
    return cleaned[:DETAILS_MAX_LEN]


@dataclass(frozen=True)
class AuditEntry:
    """Immutable fact to append to the audit trail."""

    action: AuditAction
    user_id: int | None = None
    entity_id: int | None = None
    entity_type: str | None = None
    details: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    project_id: str | None = None
    timestamp: datetime = field(default_factory=system_clock.now)

    def to_row(self) -> AuditLog:
        return AuditLog(
            action=self.action,
            user_id=self.user_id,
            entity_id=self.entity_id,
            entity_type=self.entity_type,
            details=sanitize_detail(self.details),
            ip_address=self.ip_address,
            user_agent=self.user_agent[:USER_AGENT_MAX_LEN] if self.user_agent else None,
            timestamp=self.timestamp,
            project_id=self.project_id,
        )


class AuditRecorder:
    """Writes AuditEntry rows through its own sessions, never the caller's."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        async_mode: bool = True,
        queue_size: int = 10_000,
        retries: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.async_mode = async_mode
        self.retries = retries
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._worker: threading.Thread | None = None
        self._lifecycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        """Start the background writer (no-op in sync mode or if already running)."""
        if not self.async_mode:
            return
        with self._lifecycle_lock:
            if self.running:
                return
            self._worker = threading.Thread(
                target=self._run, name="audit-writer", daemon=True
            )
            self._worker.start()
        logger.info("Audit writer started")

    def stop(self, timeout: float | None = 10.0) -> None:
        """Flush pending entries and stop the worker."""
        with self._lifecycle_lock:
            worker = self._worker
            if worker is None:
                return
            self._queue.put(_STOP)
            worker.join(timeout)
            self._worker = None
        logger.info("Audit writer stopped")

    def flush(self) -> None:
        """Block until every queued entry has been written (or logged as failed)."""
        if self.running:
            self._queue.join()

    def record(self, entry: AuditEntry) -> None:
        try:
            if self.running:
                try:
                    self._queue.put_nowait(entry)
                    return
                except queue.Full:
                    logger.warning("Audit queue full; writing synchronously: action=%s", entry.action)
            self._write([entry])
        except Exception:
            logger.exception("Audit entry could not be recorded: %s", _describe(entry))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                self._queue.task_done()
                self._drain_remaining()
                return
            batch = [item]
            while len(batch) < WRITE_BATCH_SIZE:
                try:
                    extra = self._queue.get_nowait()
                except queue.Empty:
                    break
                if extra is _STOP:
                    # Put the sentinel back so the loop exits after this batch.
                    self._queue.task_done()
                    self._queue.put(_STOP)
                    break
                batch.append(extra)
            try:
                self._write(batch)
            except Exception:
                logger.exception("Audit writer failed on a batch of %s entries", len(batch))
            finally:
                for _ in batch:
                    self._queue.task_done()

    def _drain_remaining(self) -> None:
        batch = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            if item is not _STOP:
                batch.append(item)
        if batch:
            self._write(batch)

    def _write(self, entries: list[AuditEntry]) -> None:
        for attempt in range(1, self.retries + 1):
            db = self.session_factory()
            try:
                db.add_all([e.to_row() for e in entries])
                db.commit()
                return
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(
                    "Audit write failed: attempt=%s/%s entries=%s error=%s",
                    attempt,
                    self.retries,
                    len(entries),
                    type(e).__name__,
                )
                if attempt < self.retries:
                    time.sleep(RETRY_BACKOFF_SEC * attempt)
            finally:
                db.close()
        for entry in entries:
            logger.error("Audit entry not persisted: %s", _describe(entry))


def _describe(entry: AuditEntry) -> str:
    fields = asdict(entry)
    fields["details"] = sanitize_detail(entry.details)
    return " ".join(f"{k}={v}" for k, v in fields.items())


@dataclass
class AuditLogFilter:
    action: AuditAction | None = None
    user_id: int | None = None
    entity_type: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    project_id: str | None = None


def list_audit_logs(
    db: Session,
    filters: AuditLogFilter,
    *,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[AuditLog], int]:
    """Return one page of entries (newest first) and the total matching count."""
    conditions = []
    if filters.action is not None:
        conditions.append(AuditLog.action == filters.action)
    if filters.user_id is not None:
        conditions.append(AuditLog.user_id == filters.user_id)
    if filters.entity_type:
        conditions.append(AuditLog.entity_type == filters.entity_type)
    if filters.start is not None:
        conditions.append(AuditLog.timestamp >= filters.start)
    if filters.end is not None:
        conditions.append(AuditLog.timestamp <= filters.end)
    # Tenant scope always applies: None lists only global (unscoped) entries.
    conditions.append(scope_filter(AuditLog.project_id, filters.project_id))

    with storage_errors(db):
        total = db.execute(select(func.count(AuditLog.id)).where(*conditions)).scalar_one()
        rows = (
            db.execute(
                select(AuditLog)
                .where(*conditions)
                .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            .scalars()
            .all()
        )
    return list(rows), total
