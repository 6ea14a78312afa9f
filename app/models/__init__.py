"""SQLAlchemy ORM models."""

from app.models.audit_log import AuditLog
from app.models.base import Base
from app.models.enums import AuditAction, PermissionType, UserStatus
from app.models.rbac import Feature, Module, Permission, Role, RolePermission, UserRole
from app.models.refresh_token import RefreshToken
from app.models.user import User

__all__ = [
    "AuditAction",
    "AuditLog",
    "Base",
    "Feature",
    "Module",
    "Permission",
    "PermissionType",
    "RefreshToken",
    "Role",
    "RolePermission",
    "User",
    "UserRole",
    "UserStatus",
]
