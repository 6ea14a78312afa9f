"""ORM model for the append-only audit trail."""

from sqlalchemy import Column, DateTime, Enum, Integer, String

from app.models.base import Base
from app.models.enums import AuditAction


class AuditLog(Base):
    """
    Immutable security event. No update or delete path exists in the services.

    user_id is the actor and is not a foreign key: entries outlive deleted users.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Enum(AuditAction, native_enum=False, length=32), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    entity_id = Column(Integer, nullable=True)
    entity_type = Column(String(100), nullable=True, index=True)
    details = Column(String(1000), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    project_id = Column(String(100), nullable=True, index=True)
