"""Module tree and feature administration, with the invariants the permission graph relies on.

- Module codes are unique per tenant scope; feature codes are unique per module.
- A feature is created together with exactly one permission per PermissionType.
- A module with sub-modules or features is only deleted when cascade is explicit.

Every read and write runs inside ``storage_errors`` so a driver failure
surfaces as StorageUnavailable.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.database import commit_or_raise, storage_errors
from app.core.errors import AlreadyExists, ModuleNotEmpty, NotFound
from app.models import AuditAction, Feature, Module, Permission, PermissionType
from app.repositories.rbac import scope_filter
from app.services.audit import AuditEntry, AuditRecorder
from app.services.permission_graph import PermissionGraph

logger = logging.getLogger(__name__)


def _audit(
    recorder: AuditRecorder,
    action: AuditAction,
    *,
    entity_id: int | None,
    entity_type: str,
    details: str,
    actor_id: int | None,
    project_id: str | None,
) -> None:
    recorder.record(
        AuditEntry(
            action=action,
            user_id=actor_id,
            entity_id=entity_id,
            entity_type=entity_type,
            details=details,
            project_id=project_id,
        )
    )


def list_modules(db: Session, project_id: str | None) -> list[Module]:
    stmt = (
        select(Module)
        .where(scope_filter(Module.project_id, project_id))
        .order_by(Module.parent_id.is_not(None), Module.parent_id, Module.sort_order, Module.id)
    )
    with storage_errors(db):
        return list(db.execute(stmt).scalars().all())


def create_module(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    code: str,
    name: str,
    description: str | None = None,
    parent_id: int | None = None,
    sort_order: int = 0,
    actor_id: int | None = None,
) -> Module:
    with storage_errors(db):
        graph = PermissionGraph(db, project_id)
        graph.ensure_parent_allowed(None, parent_id)
        duplicate = db.execute(
            select(Module.id).where(Module.code == code, scope_filter(Module.project_id, project_id))
        ).first()
        if duplicate is not None:
            raise AlreadyExists("Module with this code already exists")

        module = Module(
            code=code,
            name=name,
            description=description,
            parent_id=parent_id,
            sort_order=sort_order,
            project_id=project_id,
            created_by=actor_id,
        )
        db.add(module)
        commit_or_raise(db, "Module with this code already exists")
        module_id, module_code = module.id, module.code

    _audit(
        recorder,
        AuditAction.MODULE_CREATED,
        entity_id=module_id,
        entity_type="Module",
        details=f"Module created: {module_code}",
        actor_id=actor_id,
        project_id=project_id,
    )
    return module


def move_module(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    module_id: int,
    new_parent_id: int | None,
    actor_id: int | None = None,
) -> Module:
    """Assign a new parent (or None for root); CycleDetected if it is a descendant."""
    with storage_errors(db):
        module = PermissionGraph(db, project_id).move_module(module_id, new_parent_id)
        code = module.code
        commit_or_raise(db)

    _audit(
        recorder,
        AuditAction.MODULE_UPDATED,
        entity_id=module_id,
        entity_type="Module",
        details=f"Module {code} moved under parent {new_parent_id}",
        actor_id=actor_id,
        project_id=project_id,
    )
    return module


def _subtree_deepest_first(graph: PermissionGraph, module_id: int) -> list[int]:
    order: list[int] = []
    frontier = [module_id]
    while frontier:
        current = frontier.pop()
        order.append(current)
        frontier.extend(child.id for child in graph.children(current))
    order.reverse()
    return order


def delete_module(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    module_id: int,
    cascade: bool = False,
    actor_id: int | None = None,
) -> int:
    """
    Delete a module. Without ``cascade`` a module that still has sub-modules or
    features raises ModuleNotEmpty. With ``cascade`` the whole subtree is
    removed, along with its features, their permissions and every grant of
    those permissions. Returns the number of modules deleted.
    """
    with storage_errors(db):
        graph = PermissionGraph(db, project_id)
        code = graph.get_module(module_id).code
        has_children = bool(graph.children(module_id))
        has_features = db.execute(
            select(Feature.id).where(Feature.module_id == module_id).limit(1)
        ).first()
        if not cascade and (has_children or has_features is not None):
            raise ModuleNotEmpty("Module has sub-modules or features; delete them first or cascade")

        subtree = _subtree_deepest_first(graph, module_id) if cascade else [module_id]
        for current_id in subtree:
            for feature in db.execute(select(Feature).where(Feature.module_id == current_id)).scalars().all():
                db.delete(feature)
            db.flush()
            db.delete(db.get(Module, current_id))
            db.flush()
        commit_or_raise(db)

    _audit(
        recorder,
        AuditAction.MODULE_DELETED,
        entity_id=module_id,
        entity_type="Module",
        details=f"Module deleted: {code} (modules removed: {len(subtree)})",
        actor_id=actor_id,
        project_id=project_id,
    )
    return len(subtree)


def create_feature(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    module_id: int,
    code: str,
    name: str,
    description: str | None = None,
    actor_id: int | None = None,
) -> Feature:
    """Create a feature and its full permission set in one transaction."""
    with storage_errors(db):
        module = PermissionGraph(db, project_id).get_module(module_id)
        module_code = module.code
        duplicate = db.execute(
            select(Feature.id).where(Feature.module_id == module.id, Feature.code == code)
        ).first()
        if duplicate is not None:
            raise AlreadyExists("Feature with this code already exists")

        feature = Feature(
            module_id=module.id,
            code=code,
            name=name,
            description=description,
            project_id=module.project_id,
            created_by=actor_id,
        )
        feature.permissions = [
            Permission(kind=kind, description=f"{kind.value.capitalize()} permission for {name}")
            for kind in PermissionType
        ]
        db.add(feature)
        commit_or_raise(db, "Feature with this code already exists")
        feature_id = feature.id

    _audit(
        recorder,
        AuditAction.FEATURE_CREATED,
        entity_id=feature_id,
        entity_type="Feature",
        details=f"Feature created: {module_code}/{code}",
        actor_id=actor_id,
        project_id=project_id,
    )
    return feature


def get_feature(db: Session, project_id: str | None, feature_id: int) -> Feature:
    with storage_errors(db):
        feature = db.execute(
            select(Feature).where(Feature.id == feature_id, scope_filter(Feature.project_id, project_id))
        ).scalars().first()
    if feature is None:
        raise NotFound("Feature not found")
    return feature


def list_features(db: Session, project_id: str | None, module_id: int) -> list[Feature]:
    with storage_errors(db):
        PermissionGraph(db, project_id).get_module(module_id)
        stmt = select(Feature).where(Feature.module_id == module_id).order_by(Feature.code)
        return list(db.execute(stmt).scalars().all())


def delete_feature(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    feature_id: int,
    actor_id: int | None = None,
) -> None:
    """Delete a feature together with its permissions and their grants."""
    feature = get_feature(db, project_id, feature_id)
    code = feature.code
    with storage_errors(db):
        db.delete(feature)
        commit_or_raise(db)

    _audit(
        recorder,
        AuditAction.FEATURE_DELETED,
        entity_id=feature_id,
        entity_type="Feature",
        details=f"Feature deleted: {code}",
        actor_id=actor_id,
        project_id=project_id,
    )
