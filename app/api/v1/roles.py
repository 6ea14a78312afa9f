"""Roles and permission grants. Scoped to the caller's tenant."""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.v1.auth import get_recorder, require_permission
from app.core.database import get_db
from app.models import PermissionType, User
from app.schemas.rbac import ChangedIds, PermissionIds, PermissionResponse, RoleCreate, RoleResponse
from app.services import roles as role_service
from app.services.audit import AuditRecorder
from app.services.bootstrap import ROLES_FEATURE

router = APIRouter()

CanRead = Annotated[User, Depends(require_permission(ROLES_FEATURE, PermissionType.READ))]
CanWrite = Annotated[User, Depends(require_permission(ROLES_FEATURE, PermissionType.WRITE))]
CanDelete = Annotated[User, Depends(require_permission(ROLES_FEATURE, PermissionType.DELETE))]


@router.get("", response_model=list[RoleResponse])
def list_roles(user: CanRead, db: Annotated[Session, Depends(get_db)]) -> list[RoleResponse]:
    return [RoleResponse.model_validate(r) for r in role_service.list_roles(db, user.project_id)]


@router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
def create_role(
    body: RoleCreate,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> RoleResponse:
    role = role_service.create_role(
        db,
        recorder,
        project_id=user.project_id,
        name=body.name,
        description=body.description,
        priority=body.priority,
        actor_id=user.id,
    )
    return RoleResponse.model_validate(role)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: int,
    user: CanDelete,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> None:
    role_service.delete_role(db, recorder, project_id=user.project_id, role_id=role_id, actor_id=user.id)


@router.get("/{role_id}/permissions", response_model=list[PermissionResponse])
def list_role_permissions(
    role_id: int,
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> list[PermissionResponse]:
    permissions = role_service.role_permissions(db, user.project_id, role_id)
    return [PermissionResponse.model_validate(p) for p in permissions]


@router.post("/{role_id}/permissions", response_model=ChangedIds)
def grant_permissions(
    role_id: int,
    body: PermissionIds,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ChangedIds:
    """Grant permissions; already-held grants are left as they are."""
    added = role_service.grant_permissions(
        db,
        recorder,
        project_id=user.project_id,
        role_id=role_id,
        permission_ids=body.permission_ids,
        actor_id=user.id,
    )
    return ChangedIds(changed=added)


@router.delete("/{role_id}/permissions", response_model=ChangedIds)
def revoke_permissions(
    role_id: int,
    body: PermissionIds,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ChangedIds:
    removed = role_service.revoke_permissions(
        db,
        recorder,
        project_id=user.project_id,
        role_id=role_id,
        permission_ids=body.permission_ids,
        actor_id=user.id,
    )
    return ChangedIds(changed=removed)
