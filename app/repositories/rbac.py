"""Role and permission lookups for the permission graph, always filtered by tenant scope."""

from sqlalchemy import ColumnElement, select
from sqlalchemy.orm import Session

from app.models import Feature, Permission, Role, RolePermission, UserRole


def scope_filter(column, project_id: str | None) -> ColumnElement[bool]:
    """None is the global scope and matches only unscoped rows."""
    if project_id is None:
        return column.is_(None)
    return column == project_id


def find_roles_for_user(db: Session, user_id: int, project_id: str | None) -> list[Role]:
    stmt = (
        select(Role)
        .join(UserRole, UserRole.role_id == Role.id)
        .where(UserRole.user_id == user_id, scope_filter(Role.project_id, project_id))
        .order_by(Role.priority.desc(), Role.id)
    )
    return list(db.execute(stmt).scalars().all())


def find_permissions_for_role(db: Session, role_id: int, project_id: str | None) -> list[Permission]:
    stmt = (
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Feature, Feature.id == Permission.feature_id)
        .where(RolePermission.role_id == role_id, scope_filter(Feature.project_id, project_id))
        .order_by(Permission.id)
    )
    return list(db.execute(stmt).scalars().all())


def find_role(db: Session, role_id: int, project_id: str | None) -> Role | None:
    stmt = select(Role).where(Role.id == role_id, scope_filter(Role.project_id, project_id))
    return db.execute(stmt).scalars().first()


def find_permissions(db: Session, permission_ids: list[int], project_id: str | None) -> list[Permission]:
    if not permission_ids:
        return []
    stmt = (
        select(Permission)
        .join(Feature, Feature.id == Permission.feature_id)
        .where(Permission.id.in_(permission_ids), scope_filter(Feature.project_id, project_id))
        .order_by(Permission.id)
    )
    return list(db.execute(stmt).scalars().all())
