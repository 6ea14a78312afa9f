"""Pydantic request/response schemas."""

from app.schemas.audit import AuditLogPage, AuditLogResponse
from app.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    RevokeResponse,
    RevokeTokenRequest,
    TokenResponse,
    UserResponse,
    UsersListResponse,
    UserStatusUpdate,
)
from app.schemas.health import HealthResponse
from app.schemas.rbac import (
    ChangedIds,
    EffectivePermission,
    EffectivePermissionsResponse,
    FeatureCreate,
    FeatureResponse,
    ModuleCreate,
    ModuleDeleteResponse,
    ModuleMove,
    ModuleResponse,
    PermissionIds,
    PermissionResponse,
    RoleCreate,
    RoleIds,
    RoleResponse,
)

__all__ = [
    "AuditLogPage",
    "AuditLogResponse",
    "ChangePasswordRequest",
    "ChangedIds",
    "EffectivePermission",
    "EffectivePermissionsResponse",
    "FeatureCreate",
    "FeatureResponse",
    "HealthResponse",
    "LoginRequest",
    "ModuleCreate",
    "ModuleDeleteResponse",
    "ModuleMove",
    "ModuleResponse",
    "PermissionIds",
    "PermissionResponse",
    "RefreshRequest",
    "RegisterRequest",
    "RevokeResponse",
    "RevokeTokenRequest",
    "RoleCreate",
    "RoleIds",
    "RoleResponse",
    "TokenResponse",
    "UserResponse",
    "UserStatusUpdate",
    "UsersListResponse",
]
