"""User administration: list, status, delete, role assignment and effective permissions."""

from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.v1.auth import get_auth_service, get_recorder, require_permission
from app.core.database import get_db, storage_errors
from app.models import PermissionType, User
from app.repositories.rbac import scope_filter
from app.schemas.auth import UserResponse, UsersListResponse, UserStatusUpdate
from app.schemas.rbac import (
    ChangedIds,
    EffectivePermission,
    EffectivePermissionsResponse,
    RoleIds,
    RoleResponse,
)
from app.services import roles as role_service
from app.services.audit import AuditRecorder
from app.services.auth import AuthService
from app.services.bootstrap import USERS_FEATURE
from app.services.permission_graph import PermissionGraph

router = APIRouter()

CanRead = Annotated[User, Depends(require_permission(USERS_FEATURE, PermissionType.READ))]
CanWrite = Annotated[User, Depends(require_permission(USERS_FEATURE, PermissionType.WRITE))]
CanDelete = Annotated[User, Depends(require_permission(USERS_FEATURE, PermissionType.DELETE))]


@router.get("", response_model=UsersListResponse)
def list_users(user: CanRead, db: Annotated[Session, Depends(get_db)]) -> UsersListResponse:
    with storage_errors(db):
        rows = db.execute(
            select(User).where(scope_filter(User.project_id, user.project_id)).order_by(User.id)
        ).scalars().all()
    return UsersListResponse(users=[UserResponse.model_validate(u) for u in rows])


@router.put("/{user_id}/status", response_model=UserResponse)
def update_status(
    user_id: int,
    body: UserStatusUpdate,
    user: CanWrite,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> UserResponse:
    """Set account status; any status other than active also revokes the user's refresh tokens."""
    updated = service.update_status(
        user_id, body.status, project_id=user.project_id, actor_id=user.id
    )
    return UserResponse.model_validate(updated)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: int,
    user: CanDelete,
    service: Annotated[AuthService, Depends(get_auth_service)],
) -> None:
    service.delete_user(user_id, project_id=user.project_id, actor_id=user.id)


@router.get("/{user_id}/roles", response_model=list[RoleResponse])
def list_user_roles(
    user_id: int,
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> list[RoleResponse]:
    return [RoleResponse.model_validate(r) for r in role_service.user_roles(db, user.project_id, user_id)]


@router.post("/{user_id}/roles", response_model=ChangedIds)
def assign_roles(
    user_id: int,
    body: RoleIds,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ChangedIds:
    added = role_service.assign_roles(
        db,
        recorder,
        project_id=user.project_id,
        user_id=user_id,
        role_ids=body.role_ids,
        actor_id=user.id,
    )
    return ChangedIds(changed=added)


@router.delete("/{user_id}/roles", response_model=ChangedIds)
def revoke_roles(
    user_id: int,
    body: RoleIds,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ChangedIds:
    removed = role_service.revoke_roles(
        db,
        recorder,
        project_id=user.project_id,
        user_id=user_id,
        role_ids=body.role_ids,
        actor_id=user.id,
    )
    return ChangedIds(changed=removed)


@router.get("/{user_id}/permissions", response_model=EffectivePermissionsResponse)
def effective_permissions(
    user_id: int,
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> EffectivePermissionsResponse:
    """Union of the permissions of every role assigned to the user."""
    role_service.user_roles(db, user.project_id, user_id)
    with storage_errors(db):
        keys = PermissionGraph(db, user.project_id).effective_permissions(user_id)
    return EffectivePermissionsResponse(
        user_id=user_id,
        permissions=[EffectivePermission(feature_code=code, kind=kind) for code, kind in sorted(keys)],
    )
