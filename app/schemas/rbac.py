"""Request/response schemas for modules, features, roles and grants."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import PermissionType

CODE_PATTERN = r"^[A-Za-z0-9_]+$"


class ModuleCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, pattern=CODE_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    parent_id: int | None = None
    sort_order: int = 0


class ModuleMove(BaseModel):
    parent_id: int | None = Field(default=None, description="New parent; null moves the module to the root")


class ModuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    description: str | None = None
    parent_id: int | None = None
    sort_order: int
    project_id: str | None = None


class ModuleDeleteResponse(BaseModel):
    deleted: int = Field(..., description="Number of modules removed (subtree size when cascading)")


class FeatureCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, pattern=CODE_PATTERN)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    feature_id: int
    kind: PermissionType
    description: str | None = None


class FeatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    module_id: int
    code: str
    name: str
    description: str | None = None
    permissions: list[PermissionResponse] = []


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    priority: int = Field(default=0, description="Display order only; grants are always additive")


class RoleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None = None
    priority: int
    project_id: str | None = None
    created_at: datetime | None = None


class PermissionIds(BaseModel):
    permission_ids: list[int] = Field(..., min_length=1)


class RoleIds(BaseModel):
    role_ids: list[int] = Field(..., min_length=1)


class ChangedIds(BaseModel):
    """Ids whose edge actually changed (empty when the call was a no-op)."""

    changed: list[int]


class EffectivePermission(BaseModel):
    feature_code: str
    kind: PermissionType


class EffectivePermissionsResponse(BaseModel):
    user_id: int
    permissions: list[EffectivePermission]
