"""Enumerations shared by ORM models, services and schemas."""

from enum import StrEnum


class UserStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class PermissionType(StrEnum):
    """Every feature is provisioned with exactly one permission per kind."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"


class AuditAction(StrEnum):
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_FAILED = "refresh_failed"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    TOKEN_REVOKED = "token_revoked"
    ALL_TOKENS_REVOKED = "all_tokens_revoked"
    ROLE_CREATED = "role_created"
    ROLE_DELETED = "role_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REVOKED = "role_revoked"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    MODULE_CREATED = "module_created"
    MODULE_UPDATED = "module_updated"
    MODULE_DELETED = "module_deleted"
    FEATURE_CREATED = "feature_created"
    FEATURE_DELETED = "feature_deleted"
