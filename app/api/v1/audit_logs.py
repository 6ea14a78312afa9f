"""Read-only audit log query endpoint."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.v1.auth import require_permission
from app.core.database import get_db
from app.models import AuditAction, PermissionType, User
from app.schemas.audit import AuditLogPage, AuditLogResponse
from app.services.audit import AuditLogFilter, list_audit_logs
from app.services.bootstrap import AUDIT_LOGS_FEATURE

router = APIRouter()


@router.get("", response_model=AuditLogPage)
def get_audit_logs(
    user: Annotated[User, Depends(require_permission(AUDIT_LOGS_FEATURE, PermissionType.READ))],
    db: Annotated[Session, Depends(get_db)],
    action: AuditAction | None = None,
    user_id: int | None = None,
    entity_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=500)] = 50,
) -> AuditLogPage:
    """Newest first. Callers in a tenant only see that tenant's entries."""
    filters = AuditLogFilter(
        action=action,
        user_id=user_id,
        entity_type=entity_type,
        start=start,
        end=end,
        project_id=user.project_id,
    )
    rows, total = list_audit_logs(db, filters, page=page, page_size=page_size)
    return AuditLogPage(
        items=[AuditLogResponse.model_validate(r) for r in rows],
        total=total,
        page=page,
        page_size=page_size,
    )
