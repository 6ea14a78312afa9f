"""Provision the ADMINISTRATION module, its features, an Administrator role and its first user.

The admin API is guarded by permissions on these features, so a fresh
database needs this once before anyone can manage it.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.clock import Clock, system_clock
from app.core.config import Settings
from app.core.tokens import TokenAuthority
from app.models import Feature, Module, Permission, Role, User
from app.repositories.rbac import scope_filter
from app.services import modules as module_service
from app.services import roles as role_service
from app.services.audit import AuditRecorder
from app.services.auth import AuthService

logger = logging.getLogger(__name__)

ADMIN_MODULE_CODE = "ADMINISTRATION"
ADMIN_ROLE_NAME = "Administrator"

USERS_FEATURE = "USERS"
ROLES_FEATURE = "ROLES"
MODULES_FEATURE = "MODULES"
AUDIT_LOGS_FEATURE = "AUDIT_LOGS"

ADMIN_FEATURES = {
    USERS_FEATURE: "User management",
    ROLES_FEATURE: "Role and permission management",
    MODULES_FEATURE: "Module and feature management",
    AUDIT_LOGS_FEATURE: "Audit log access",
}


def _ensure_module(db: Session, recorder: AuditRecorder, project_id: str | None) -> Module:
    module = db.execute(
        select(Module).where(Module.code == ADMIN_MODULE_CODE, scope_filter(Module.project_id, project_id))
    ).scalars().first()
    if module is not None:
        return module
    return module_service.create_module(
        db,
        recorder,
        project_id=project_id,
        code=ADMIN_MODULE_CODE,
        name="Administration",
        description="Users, roles, modules and audit logs",
    )


def _ensure_role(db: Session, recorder: AuditRecorder, project_id: str | None) -> Role:
    role = db.execute(
        select(Role).where(Role.name == ADMIN_ROLE_NAME, scope_filter(Role.project_id, project_id))
    ).scalars().first()
    if role is not None:
        return role
    return role_service.create_role(
        db,
        recorder,
        project_id=project_id,
        name=ADMIN_ROLE_NAME,
        description="Full access to the administration API",
        priority=100,
    )


def provision_admin(
    db: Session,
    recorder: AuditRecorder,
    authority: TokenAuthority,
    settings: Settings,
    *,
    username: str,
    email: str,
    password: str,
    project_id: str | None = None,
    clock: Clock = system_clock,
) -> User:
    """
    Idempotently create the admin module, features, role and grants, then
    register ``username`` (unless it exists) and assign it the role.
    """
    module = _ensure_module(db, recorder, project_id)
    existing = set(
        db.execute(select(Feature.code).where(Feature.module_id == module.id)).scalars().all()
    )
    for code, name in ADMIN_FEATURES.items():
        if code not in existing:
            module_service.create_feature(
                db, recorder, project_id=project_id, module_id=module.id, code=code, name=name
            )

    role = _ensure_role(db, recorder, project_id)
    permission_ids = list(
        db.execute(
            select(Permission.id)
            .join(Feature, Feature.id == Permission.feature_id)
            .where(Feature.module_id == module.id)
        ).scalars().all()
    )
    role_service.grant_permissions(
        db, recorder, project_id=project_id, role_id=role.id, permission_ids=permission_ids, clock=clock
    )

    user = db.execute(select(User).where(User.username == username)).scalars().first()
    if user is None:
        user = AuthService(db, authority, recorder, settings, clock).register(
            username, email, password, project_id=project_id
        )
    role_service.assign_roles(
        db, recorder, project_id=project_id, user_id=user.id, role_ids=[role.id], clock=clock
    )
    logger.info("Administrator provisioned: user_id=%s role_id=%s", user.id, role.id)
    return user
