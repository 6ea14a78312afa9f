"""Roles, permission grants and role assignments.

Grants and assignments are idempotent edges: re-granting or re-assigning is a
no-op and only effective changes are audited. A role, permission or user that
lives in another tenant scope is reported as NotFound.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.database import commit_or_raise, storage_errors
from app.core.errors import AlreadyExists, NotFound
from app.models import AuditAction, Permission, Role, RolePermission, User, UserRole
from app.repositories.rbac import (
    find_permissions,
    find_permissions_for_role,
    find_role,
    find_roles_for_user,
    scope_filter,
)
from app.services.audit import AuditEntry, AuditRecorder

logger = logging.getLogger(__name__)

# Times an edge batch is re-read and retried after a concurrent writer
# committed one of the same edges first.
EDGE_WRITE_ATTEMPTS = 3


def _require_role(db: Session, role_id: int, project_id: str | None) -> Role:
    role = find_role(db, role_id, project_id)
    if role is None:
        raise NotFound("Role not found")
    return role


def _require_user(db: Session, user_id: int, project_id: str | None) -> User:
    user = db.execute(
        select(User).where(User.id == user_id, scope_filter(User.project_id, project_id))
    ).scalars().first()
    if user is None:
        raise NotFound("User not found")
    return user


def _require_roles(db: Session, role_ids: list[int], project_id: str | None) -> list[Role]:
    wanted = sorted(set(role_ids))
    roles = list(
        db.execute(
            select(Role).where(Role.id.in_(wanted), scope_filter(Role.project_id, project_id))
        ).scalars().all()
    )
    if len(roles) != len(wanted):
        raise NotFound("One or more roles not found")
    return roles


def _require_permissions(db: Session, permission_ids: list[int], project_id: str | None) -> list[Permission]:
    wanted = sorted(set(permission_ids))
    permissions = find_permissions(db, wanted, project_id)
    if len(permissions) != len(wanted):
        raise NotFound("One or more permissions not found")
    return permissions


def _add_missing_edges(
    db: Session,
    target_ids: list[int],
    read_existing: Callable[[], Iterable[int]],
    make_edge: Callable[[int, datetime], object],
    clock: Clock,
) -> list[int]:
    """
    Insert an edge for every id in ``target_ids`` that is not present yet and
    return the ids actually inserted.

    When another writer commits one of the same edges between the read and our
    commit, the unique constraint rejects the batch; it is then re-read and
    retried so that edge counts as already present.
    """

    def insert_once() -> list[int]:
        existing = set(read_existing())
        added = [target_id for target_id in target_ids if target_id not in existing]
        if not added:
            return []
        now = clock.now()
        for target_id in added:
            db.add(make_edge(target_id, now))
        commit_or_raise(db)
        return added

    for attempt in range(1, EDGE_WRITE_ATTEMPTS):
        try:
            return insert_once()
        except AlreadyExists:
            logger.info("Edge insert lost a race, re-reading: attempt=%s", attempt)
    return insert_once()


def list_roles(db: Session, project_id: str | None) -> list[Role]:
    """Roles of the scope, highest priority first. Priority is display order only."""
    stmt = (
        select(Role)
        .where(scope_filter(Role.project_id, project_id))
        .order_by(Role.priority.desc(), Role.name)
    )
    with storage_errors(db):
        return list(db.execute(stmt).scalars().all())


def get_role(db: Session, project_id: str | None, role_id: int) -> Role:
    with storage_errors(db):
        return _require_role(db, role_id, project_id)


def role_permissions(db: Session, project_id: str | None, role_id: int) -> list[Permission]:
    with storage_errors(db):
        _require_role(db, role_id, project_id)
        return find_permissions_for_role(db, role_id, project_id)


def user_roles(db: Session, project_id: str | None, user_id: int) -> list[Role]:
    with storage_errors(db):
        _require_user(db, user_id, project_id)
        return find_roles_for_user(db, user_id, project_id)


def create_role(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    name: str,
    description: str | None = None,
    priority: int = 0,
    actor_id: int | None = None,
) -> Role:
    with storage_errors(db):
        duplicate = db.execute(
            select(Role.id).where(Role.name == name, scope_filter(Role.project_id, project_id))
        ).first()
        if duplicate is not None:
            raise AlreadyExists("Role with this name already exists")

        role = Role(
            name=name,
            description=description,
            priority=priority,
            project_id=project_id,
            created_by=actor_id,
        )
        db.add(role)
        commit_or_raise(db, "Role with this name already exists")
        role_id = role.id

    recorder.record(
        AuditEntry(
            action=AuditAction.ROLE_CREATED,
            user_id=actor_id,
            entity_id=role_id,
            entity_type="Role",
            details=f"Role created: {name}",
            project_id=project_id,
        )
    )
    return role


def delete_role(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    role_id: int,
    actor_id: int | None = None,
) -> None:
    """Delete a role with its grants and assignments."""
    with storage_errors(db):
        role = _require_role(db, role_id, project_id)
        name = role.name
        db.delete(role)
        commit_or_raise(db)

    recorder.record(
        AuditEntry(
            action=AuditAction.ROLE_DELETED,
            user_id=actor_id,
            entity_id=role_id,
            entity_type="Role",
            details=f"Role deleted: {name}",
            project_id=project_id,
        )
    )


def grant_permissions(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    role_id: int,
    permission_ids: list[int],
    actor_id: int | None = None,
    clock: Clock = system_clock,
) -> list[int]:
    """Grant permissions to a role. Returns the ids that were newly granted."""
    with storage_errors(db):
        _require_role(db, role_id, project_id)
        wanted = [p.id for p in _require_permissions(db, permission_ids, project_id)]
        added = _add_missing_edges(
            db,
            wanted,
            lambda: db.execute(
                select(RolePermission.permission_id).where(RolePermission.role_id == role_id)
            ).scalars().all(),
            lambda permission_id, now: RolePermission(
                role_id=role_id,
                permission_id=permission_id,
                granted_by=actor_id,
                granted_at=now,
            ),
            clock,
        )

    for permission_id in added:
        recorder.record(
            AuditEntry(
                action=AuditAction.PERMISSION_GRANTED,
                user_id=actor_id,
                entity_id=role_id,
                entity_type="Role",
                details=f"Permission {permission_id} granted to role {role_id}",
                project_id=project_id,
            )
        )
    return added


def revoke_permissions(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    role_id: int,
    permission_ids: list[int],
    actor_id: int | None = None,
) -> list[int]:
    """Remove grants from a role. Returns the ids that were actually revoked."""
    wanted = sorted(set(permission_ids))
    with storage_errors(db):
        _require_role(db, role_id, project_id)
        if not wanted:
            return []
        held = list(
            db.execute(
                select(RolePermission.permission_id).where(
                    RolePermission.role_id == role_id,
                    RolePermission.permission_id.in_(wanted),
                )
            ).scalars().all()
        )
        if not held:
            return []
        db.execute(
            delete(RolePermission)
            .where(RolePermission.role_id == role_id, RolePermission.permission_id.in_(held))
            .execution_options(synchronize_session=False)
        )
        commit_or_raise(db)

    for permission_id in held:
        recorder.record(
            AuditEntry(
                action=AuditAction.PERMISSION_REVOKED,
                user_id=actor_id,
                entity_id=role_id,
                entity_type="Role",
                details=f"Permission {permission_id} revoked from role {role_id}",
                project_id=project_id,
            )
        )
    return sorted(held)


def assign_roles(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    user_id: int,
    role_ids: list[int],
    actor_id: int | None = None,
    clock: Clock = system_clock,
) -> list[int]:
    """Assign roles to a user. Returns the role ids that were newly assigned."""
    with storage_errors(db):
        _require_user(db, user_id, project_id)
        wanted = [r.id for r in _require_roles(db, role_ids, project_id)]
        added = _add_missing_edges(
            db,
            wanted,
            lambda: db.execute(
                select(UserRole.role_id).where(UserRole.user_id == user_id)
            ).scalars().all(),
            lambda role_id, now: UserRole(
                user_id=user_id, role_id=role_id, assigned_by=actor_id, assigned_at=now
            ),
            clock,
        )

    if not added:
        return []
    for role_id in added:
        recorder.record(
            AuditEntry(
                action=AuditAction.ROLE_ASSIGNED,
                user_id=actor_id,
                entity_id=user_id,
                entity_type="User",
                details=f"Role {role_id} assigned to user {user_id}",
                project_id=project_id,
            )
        )
    logger.info("Roles assigned: user_id=%s role_ids=%s", user_id, added)
    return added


def revoke_roles(
    db: Session,
    recorder: AuditRecorder,
    *,
    project_id: str | None,
    user_id: int,
    role_ids: list[int],
    actor_id: int | None = None,
) -> list[int]:
    """Remove role assignments from a user. Returns the role ids actually removed."""
    with storage_errors(db):
        _require_user(db, user_id, project_id)
        roles = _require_roles(db, role_ids, project_id)
        held = list(
            db.execute(
                select(UserRole.role_id).where(
                    UserRole.user_id == user_id,
                    UserRole.role_id.in_([r.id for r in roles]),
                )
            ).scalars().all()
        )
        if not held:
            return []
        db.execute(
            delete(UserRole)
            .where(UserRole.user_id == user_id, UserRole.role_id.in_(held))
            .execution_options(synchronize_session=False)
        )
        commit_or_raise(db)

    for role_id in held:
        recorder.record(
            AuditEntry(
                action=AuditAction.ROLE_REVOKED,
                user_id=actor_id,
                entity_id=user_id,
                entity_type="User",
                details=f"Role {role_id} revoked from user {user_id}",
                project_id=project_id,
            )
        )
    logger.info("Roles revoked: user_id=%s role_ids=%s", user_id, held)
    return sorted(held)
