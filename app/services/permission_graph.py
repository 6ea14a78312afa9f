"""Effective permission resolution and module tree navigation for one tenant scope.

RBAC here is additive: a user holds a permission if any assigned role holds it.
There are no negative grants and role priority never resolves conflicts.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import CycleDetected, NotFound
from app.models import (
    Feature,
    Module,
    Permission,
    PermissionType,
    Role,
    RolePermission,
    User,
    UserRole,
)
from app.repositories.rbac import scope_filter

logger = logging.getLogger(__name__)

# (feature code, permission kind)
PermissionKey = tuple[str, PermissionType]


class PermissionGraph:
    """Read/traverse the Module -> Feature -> Permission -> Role -> User graph within one scope."""

    def __init__(self, db: Session, project_id: str | None) -> None:
        self.db = db
        self.project_id = project_id

    def _grant_path(self, user_id: int):
        """Join path from a user's assignments to features, restricted to this scope at every hop."""
        return (
            select(Feature.code, Permission.kind)
            .select_from(UserRole)
            .join(User, User.id == UserRole.user_id)
            .join(Role, Role.id == UserRole.role_id)
            .join(RolePermission, RolePermission.role_id == Role.id)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .join(Feature, Feature.id == Permission.feature_id)
            .join(Module, Module.id == Feature.module_id)
            .where(
                UserRole.user_id == user_id,
                scope_filter(User.project_id, self.project_id),
                scope_filter(Role.project_id, self.project_id),
                scope_filter(Feature.project_id, self.project_id),
                scope_filter(Module.project_id, self.project_id),
            )
        )

    def effective_permissions(self, user_id: int) -> set[PermissionKey]:
        """Union of all permissions granted to every role assigned to the user."""
        rows = self.db.execute(self._grant_path(user_id).distinct()).all()
        return {(code, PermissionType(kind)) for code, kind in rows}

    def has_permission(self, user_id: int, feature_code: str, kind: PermissionType) -> bool:
        """Single EXISTS query; stops at the first matching grant."""
        path = self._grant_path(user_id).where(
            Feature.code == feature_code,
            Permission.kind == kind,
        )
        return bool(self.db.execute(select(path.exists())).scalar())

    def get_module(self, module_id: int) -> Module:
        module = self.db.execute(
            select(Module).where(Module.id == module_id, scope_filter(Module.project_id, self.project_id))
        ).scalars().first()
        if module is None:
            raise NotFound("Module not found")
        return module

    def children(self, module_id: int | None) -> list[Module]:
        """Direct sub-modules (roots when module_id is None), in sibling order."""
        parent_clause = Module.parent_id.is_(None) if module_id is None else Module.parent_id == module_id
        stmt = (
            select(Module)
            .where(parent_clause, scope_filter(Module.project_id, self.project_id))
            .order_by(Module.sort_order, Module.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def ancestors(self, module_id: int) -> list[int]:
        """Ids from the module's parent up to the root (nearest first)."""
        chain: list[int] = []
        seen = {module_id}
        current = self.get_module(module_id).parent_id
        while current is not None:
            if current in seen:
                # Only reachable if rows were edited outside this service.
                raise CycleDetected(f"Module tree already contains a cycle at module {current}")
            seen.add(current)
            chain.append(current)
            current = self.db.execute(
                select(Module.parent_id).where(Module.id == current)
            ).scalar_one_or_none()
        return chain

    def ensure_parent_allowed(self, module_id: int | None, new_parent_id: int | None) -> None:
        """Reject a parent that is the module itself or one of its descendants."""
        if new_parent_id is None:
            return
        self.get_module(new_parent_id)
        if module_id is None:
            return
        if new_parent_id == module_id or module_id in self.ancestors(new_parent_id):
            raise CycleDetected("A module cannot be moved under itself or one of its descendants")

    def move_module(self, module_id: int, new_parent_id: int | None) -> Module:
        """Re-parent a module after the cycle guard; flushes, caller commits."""
        module = self.get_module(module_id)
        self.ensure_parent_allowed(module_id, new_parent_id)
        module.parent_id = new_parent_id
        self.db.flush()
        logger.info("Module moved: module_id=%s new_parent_id=%s", module_id, new_parent_id)
        return module
