"""Module tree and feature administration. Scoped to the caller's tenant."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.v1.auth import get_recorder, require_permission
from app.core.database import get_db, storage_errors
from app.models import PermissionType, User
from app.schemas.rbac import (
    FeatureCreate,
    FeatureResponse,
    ModuleCreate,
    ModuleDeleteResponse,
    ModuleMove,
    ModuleResponse,
)
from app.services import modules as module_service
from app.services.audit import AuditRecorder
from app.services.bootstrap import MODULES_FEATURE
from app.services.permission_graph import PermissionGraph

router = APIRouter()

CanRead = Annotated[User, Depends(require_permission(MODULES_FEATURE, PermissionType.READ))]
CanWrite = Annotated[User, Depends(require_permission(MODULES_FEATURE, PermissionType.WRITE))]
CanDelete = Annotated[User, Depends(require_permission(MODULES_FEATURE, PermissionType.DELETE))]


@router.get("", response_model=list[ModuleResponse])
def list_modules(
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> list[ModuleResponse]:
    return [ModuleResponse.model_validate(m) for m in module_service.list_modules(db, user.project_id)]


@router.post("", response_model=ModuleResponse, status_code=status.HTTP_201_CREATED)
def create_module(
    body: ModuleCreate,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ModuleResponse:
    module = module_service.create_module(
        db,
        recorder,
        project_id=user.project_id,
        code=body.code,
        name=body.name,
        description=body.description,
        parent_id=body.parent_id,
        sort_order=body.sort_order,
        actor_id=user.id,
    )
    return ModuleResponse.model_validate(module)


@router.get("/{module_id}/children", response_model=list[ModuleResponse])
def list_children(
    module_id: int,
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> list[ModuleResponse]:
    with storage_errors(db):
        graph = PermissionGraph(db, user.project_id)
        graph.get_module(module_id)
        children = graph.children(module_id)
    return [ModuleResponse.model_validate(m) for m in children]


@router.put("/{module_id}/parent", response_model=ModuleResponse)
def move_module(
    module_id: int,
    body: ModuleMove,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> ModuleResponse:
    """Re-parent a module. 409 if the new parent is the module itself or a descendant."""
    module = module_service.move_module(
        db,
        recorder,
        project_id=user.project_id,
        module_id=module_id,
        new_parent_id=body.parent_id,
        actor_id=user.id,
    )
    return ModuleResponse.model_validate(module)


@router.delete("/{module_id}", response_model=ModuleDeleteResponse)
def delete_module(
    module_id: int,
    user: CanDelete,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
    cascade: Annotated[bool, Query(description="Also delete sub-modules, features and grants")] = False,
) -> ModuleDeleteResponse:
    deleted = module_service.delete_module(
        db,
        recorder,
        project_id=user.project_id,
        module_id=module_id,
        cascade=cascade,
        actor_id=user.id,
    )
    return ModuleDeleteResponse(deleted=deleted)


@router.get("/{module_id}/features", response_model=list[FeatureResponse])
def list_features(
    module_id: int,
    user: CanRead,
    db: Annotated[Session, Depends(get_db)],
) -> list[FeatureResponse]:
    features = module_service.list_features(db, user.project_id, module_id)
    return [FeatureResponse.model_validate(f) for f in features]


@router.post(
    "/{module_id}/features",
    response_model=FeatureResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_feature(
    module_id: int,
    body: FeatureCreate,
    user: CanWrite,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> FeatureResponse:
    """Create a feature; its read/write/delete/execute permissions are created with it."""
    feature = module_service.create_feature(
        db,
        recorder,
        project_id=user.project_id,
        module_id=module_id,
        code=body.code,
        name=body.name,
        description=body.description,
        actor_id=user.id,
    )
    return FeatureResponse.model_validate(feature)


@router.delete("/features/{feature_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_feature(
    feature_id: int,
    user: CanDelete,
    db: Annotated[Session, Depends(get_db)],
    recorder: Annotated[AuditRecorder, Depends(get_recorder)],
) -> None:
    module_service.delete_feature(
        db, recorder, project_id=user.project_id, feature_id=feature_id, actor_id=user.id
    )
