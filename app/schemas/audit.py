"""Response schemas for the audit log query endpoint."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import AuditAction


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: AuditAction
    user_id: int | None = None
    entity_id: int | None = None
    entity_type: str | None = None
    details: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime
    project_id: str | None = None


class AuditLogPage(BaseModel):
    items: list[AuditLogResponse]
    total: int = Field(..., description="Matching entries across all pages")
    page: int
    page_size: int
