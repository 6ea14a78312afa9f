"""ORM models for the authorization graph: Module -> Feature -> Permission -> Role -> User."""

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from app.models.base import Base
from app.models.enums import PermissionType


class Module(Base):
    """
    Node of the module tree. Only the parent pointer is stored; children are
    queried by parent_id. Codes are unique within a tenant scope.
    """

    __tablename__ = "modules"
    __table_args__ = (UniqueConstraint("project_id", "code", name="uq_modules_project_code"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    code = Column(String(50), nullable=False)
    parent_id = Column(Integer, ForeignKey("modules.id"), nullable=True, index=True)
    sort_order = Column(Integer, nullable=False, default=0)
    project_id = Column(String(100), nullable=True, index=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    features = relationship("Feature", back_populates="module")


class Feature(Base):
    """Leaf of the resource model; always owns exactly one Permission per PermissionType."""

    __tablename__ = "features"
    __table_args__ = (UniqueConstraint("module_id", "code", name="uq_features_module_code"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    module_id = Column(Integer, ForeignKey("modules.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    code = Column(String(50), nullable=False, index=True)
    project_id = Column(String(100), nullable=True, index=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    module = relationship("Module", back_populates="features")
    permissions = relationship(
        "Permission",
        back_populates="feature",
        cascade="all, delete-orphan",
        order_by="Permission.id",
    )


class Permission(Base):
    """Identity is (feature_id, kind)."""

    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("feature_id", "kind", name="uq_permissions_feature_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    feature_id = Column(
        Integer,
        ForeignKey("features.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(Enum(PermissionType, native_enum=False, length=16), nullable=False)
    description = Column(String(500), nullable=True)

    feature = relationship("Feature", back_populates="permissions")
    grants = relationship(
        "RolePermission",
        back_populates="permission",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Role(Base):
    """
    Named bundle of permission grants. priority is advisory ordering only:
    effective permissions are the union over all roles, never an override.
    """

    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_roles_project_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    project_id = Column(String(100), nullable=True, index=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    grants = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    assignments = relationship(
        "UserRole",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class RolePermission(Base):
    """Grant edge; unique per (role, permission) so re-granting is a no-op."""

    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permissions"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = Column(
        Integer,
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    granted_by = Column(Integer, nullable=True)
    granted_at = Column(DateTime(timezone=True), nullable=False)

    role = relationship("Role", back_populates="grants")
    permission = relationship("Permission", back_populates="grants")


class UserRole(Base):
    """Assignment edge; unique per (user, role) so re-assigning is a no-op."""

    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", name="uq_user_roles"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by = Column(Integer, nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False)

    user = relationship("User", back_populates="role_assignments")
    role = relationship("Role", back_populates="assignments")
