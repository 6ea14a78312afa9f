"""Tests for module/feature/role administration: provisioning, uniqueness, cascades and auditing."""

from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.errors import AlreadyExists, ModuleNotEmpty, NotFound, StorageUnavailable
from app.models import (
    AuditAction,
    Feature,
    Module,
    Permission,
    PermissionType,
    RolePermission,
    User,
    UserRole,
)
from app.services import modules as module_service
from app.services import roles as role_service
from app.services.bootstrap import ADMIN_FEATURES, provision_admin
from app.services.permission_graph import PermissionGraph
from tests.support import STRONG_PASSWORD, DatabaseTestCase, FrozenClock


class RacingClock(FrozenClock):
    """Runs ``hook`` once, on the first call to now()."""

    def __init__(self, hook) -> None:
        super().__init__()
        self.hook = hook

    def now(self):
        if self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return super().now()


class AdminTestCase(DatabaseTestCase):
    def count(self, model) -> int:
        return self.db.execute(select(func.count()).select_from(model)).scalar_one()

    def create_module(self, code: str, parent_id: int | None = None) -> Module:
        return module_service.create_module(
            self.db, self.recorder, project_id=None, code=code, name=code.title(), parent_id=parent_id, actor_id=7
        )

    def create_feature(self, module_id: int, code: str) -> Feature:
        return module_service.create_feature(
            self.db, self.recorder, project_id=None, module_id=module_id, code=code, name=code.title()
        )


class TestFeatureProvisioning(AdminTestCase):
    def test_feature_gets_exactly_one_permission_per_kind(self) -> None:
        module = self.create_module("CONTENT")
        feature = self.create_feature(module.id, "ARTICLES")
        kinds = sorted(p.kind for p in feature.permissions)
        self.assertEqual(kinds, sorted(PermissionType))
        self.assertEqual(self.count(Permission), 4)
        self.assertEqual(
            {p.description for p in feature.permissions},
            {f"{k.value.capitalize()} permission for Articles" for k in PermissionType},
        )

    def test_duplicate_feature_code_in_module_rejected(self) -> None:
        module = self.create_module("CONTENT")
        self.create_feature(module.id, "ARTICLES")
        with self.assertRaises(AlreadyExists):
            self.create_feature(module.id, "ARTICLES")
        self.assertEqual(self.count(Permission), 4)

    def test_same_feature_code_in_another_module_allowed(self) -> None:
        first = self.create_module("CONTENT")
        second = self.create_module("MEDIA")
        self.create_feature(first.id, "ITEMS")
        self.create_feature(second.id, "ITEMS")
        self.assertEqual(self.count(Permission), 8)

    def test_feature_in_unknown_module(self) -> None:
        with self.assertRaises(NotFound):
            self.create_feature(12345, "ARTICLES")


class TestModuleAdministration(AdminTestCase):
    def test_duplicate_module_code_rejected(self) -> None:
        self.create_module("CONTENT")
        with self.assertRaises(AlreadyExists):
            self.create_module("CONTENT")

    def test_create_is_audited_after_commit(self) -> None:
        module = self.create_module("CONTENT")
        rows = self.audit_rows(AuditAction.MODULE_CREATED)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].entity_id, module.id)
        self.assertEqual(rows[0].user_id, 7)

    def test_delete_non_empty_module_requires_cascade(self) -> None:
        parent = self.create_module("PARENT")
        self.create_module("CHILD", parent_id=parent.id)
        with self.assertRaises(ModuleNotEmpty):
            module_service.delete_module(self.db, self.recorder, project_id=None, module_id=parent.id)

        leaf = self.create_module("LEAF")
        self.create_feature(leaf.id, "THING")
        with self.assertRaises(ModuleNotEmpty):
            module_service.delete_module(self.db, self.recorder, project_id=None, module_id=leaf.id)

    def test_cascade_removes_subtree_features_permissions_and_grants(self) -> None:
        parent = self.create_module("PARENT")
        child = self.create_module("CHILD", parent_id=parent.id)
        grandchild = self.create_module("GRANDCHILD", parent_id=child.id)
        keep = self.create_module("KEEP")
        doomed = self.create_feature(grandchild.id, "DOOMED")
        kept = self.create_feature(keep.id, "KEPT")
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_service.grant_permissions(
            self.db,
            self.recorder,
            project_id=None,
            role_id=role.id,
            permission_ids=[doomed.permissions[0].id, kept.permissions[0].id],
        )

        deleted = module_service.delete_module(
            self.db, self.recorder, project_id=None, module_id=parent.id, cascade=True
        )

        self.assertEqual(deleted, 3)
        self.assertEqual([m.code for m in module_service.list_modules(self.db, None)], ["KEEP"])
        self.assertEqual(self.count(Feature), 1)
        self.assertEqual(self.count(Permission), 4)
        self.assertEqual(self.count(RolePermission), 1)
        self.assertEqual(len(self.audit_rows(AuditAction.MODULE_DELETED)), 1)

    def test_delete_empty_module(self) -> None:
        module = self.create_module("EMPTY")
        deleted = module_service.delete_module(self.db, self.recorder, project_id=None, module_id=module.id)
        self.assertEqual(deleted, 1)
        self.assertEqual(self.count(Module), 0)

    def test_delete_feature_removes_its_grants(self) -> None:
        module = self.create_module("CONTENT")
        feature = self.create_feature(module.id, "ARTICLES")
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_service.grant_permissions(
            self.db,
            self.recorder,
            project_id=None,
            role_id=role.id,
            permission_ids=[p.id for p in feature.permissions],
        )
        module_service.delete_feature(self.db, self.recorder, project_id=None, feature_id=feature.id)
        self.assertEqual(self.count(Permission), 0)
        self.assertEqual(self.count(RolePermission), 0)
        self.assertEqual(module_service.list_features(self.db, None, module.id), [])


class TestRoleAdministration(AdminTestCase):
    def test_roles_listed_by_priority(self) -> None:
        role_service.create_role(self.db, self.recorder, project_id=None, name="Low", priority=1)
        role_service.create_role(self.db, self.recorder, project_id=None, name="High", priority=50)
        names = [r.name for r in role_service.list_roles(self.db, None)]
        self.assertEqual(names, ["High", "Low"])

    def test_duplicate_role_name_rejected_per_scope(self) -> None:
        role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        with self.assertRaises(AlreadyExists):
            role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_service.create_role(self.db, self.recorder, project_id="tenant-a", name="Editor")

    def test_assignment_is_idempotent_and_audited_once(self) -> None:
        user = User(username="alice", email="alice@x.com", password_hash="x")
        self.db.add(user)
        self.db.commit()
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")

        first = role_service.assign_roles(
            self.db, self.recorder, project_id=None, user_id=user.id, role_ids=[role.id], actor_id=1
        )
        second = role_service.assign_roles(
            self.db, self.recorder, project_id=None, user_id=user.id, role_ids=[role.id], actor_id=1
        )
        self.assertEqual(first, [role.id])
        self.assertEqual(second, [])
        self.assertEqual(len(self.audit_rows(AuditAction.ROLE_ASSIGNED)), 1)
        self.assertEqual([r.id for r in role_service.user_roles(self.db, None, user.id)], [role.id])

        self.assertEqual(
            role_service.revoke_roles(self.db, self.recorder, project_id=None, user_id=user.id, role_ids=[role.id]),
            [role.id],
        )
        self.assertEqual(
            role_service.revoke_roles(self.db, self.recorder, project_id=None, user_id=user.id, role_ids=[role.id]),
            [],
        )
        self.assertEqual(len(self.audit_rows(AuditAction.ROLE_REVOKED)), 1)

    def test_revoke_permissions(self) -> None:
        module = self.create_module("CONTENT")
        feature = self.create_feature(module.id, "ARTICLES")
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        ids = [p.id for p in feature.permissions]
        role_service.grant_permissions(self.db, self.recorder, project_id=None, role_id=role.id, permission_ids=ids)
        removed = role_service.revoke_permissions(
            self.db, self.recorder, project_id=None, role_id=role.id, permission_ids=ids[:2]
        )
        self.assertEqual(removed, sorted(ids[:2]))
        self.assertEqual(len(role_service.role_permissions(self.db, None, role.id)), 2)
        self.assertEqual(len(self.audit_rows(AuditAction.PERMISSION_REVOKED)), 2)

    def test_delete_role_drops_assignments(self) -> None:
        user = User(username="alice", email="alice@x.com", password_hash="x")
        self.db.add(user)
        self.db.commit()
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_service.assign_roles(self.db, self.recorder, project_id=None, user_id=user.id, role_ids=[role.id])
        role_service.delete_role(self.db, self.recorder, project_id=None, role_id=role.id)
        self.assertEqual(role_service.user_roles(self.db, None, user.id), [])
        with self.assertRaises(NotFound):
            role_service.get_role(self.db, None, role.id)


class TestAdminBootstrap(AdminTestCase):
    def provision(self) -> User:
        return provision_admin(
            self.db,
            self.recorder,
            self.authority,
            self.settings,
            username="root",
            email="root@example.com",
            password=STRONG_PASSWORD,
            clock=self.clock,
        )

    def test_admin_holds_every_administration_permission(self) -> None:
        user = self.provision()
        graph = PermissionGraph(self.db, None)
        for code in ADMIN_FEATURES:
            for kind in PermissionType:
                self.assertTrue(graph.has_permission(user.id, code, kind), (code, kind))

    def test_rerun_only_fills_in_what_is_missing(self) -> None:
        first = self.provision()
        second = self.provision()
        self.assertEqual(first.id, second.id)
        self.assertEqual(self.count(Module), 1)
        self.assertEqual(self.count(Feature), len(ADMIN_FEATURES))
        self.assertEqual(self.count(Permission), 4 * len(ADMIN_FEATURES))
        self.assertEqual(len(self.audit_rows(AuditAction.ROLE_ASSIGNED)), 1)
        self.assertEqual(len(self.audit_rows(AuditAction.USER_CREATED)), 1)


class TestConcurrentEdgeWrites(AdminTestCase):
    """Another session commits the same edge after our read but before our commit."""

    def commit_elsewhere(self, make_edge):
        def hook() -> None:
            other = self.session_factory()
            try:
                other.add(make_edge())
                other.commit()
            finally:
                other.close()

        return hook

    def test_grant_counts_a_concurrent_grant_as_already_present(self) -> None:
        module = self.create_module("CONTENT")
        feature = self.create_feature(module.id, "ARTICLES")
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_id = role.id
        first, second = sorted(p.id for p in feature.permissions)[:2]
        clock = RacingClock(
            self.commit_elsewhere(
                lambda: RolePermission(role_id=role_id, permission_id=first, granted_at=self.clock.now())
            )
        )

        added = role_service.grant_permissions(
            self.db, self.recorder, project_id=None, role_id=role_id, permission_ids=[first, second], clock=clock
        )

        self.assertEqual(added, [second])
        self.assertEqual(self.count(RolePermission), 2)
        granted = self.audit_rows(AuditAction.PERMISSION_GRANTED)
        self.assertEqual([row.details for row in granted], [f"Permission {second} granted to role {role_id}"])

    def test_assign_losing_every_edge_returns_nothing(self) -> None:
        user = User(username="alice", email="alice@x.com", password_hash="x")
        self.db.add(user)
        self.db.commit()
        user_id = user.id
        role_id = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor").id
        clock = RacingClock(
            self.commit_elsewhere(
                lambda: UserRole(user_id=user_id, role_id=role_id, assigned_at=self.clock.now())
            )
        )

        added = role_service.assign_roles(
            self.db, self.recorder, project_id=None, user_id=user_id, role_ids=[role_id], clock=clock
        )

        self.assertEqual(added, [])
        self.assertEqual(self.count(UserRole), 1)
        self.assertEqual(self.audit_rows(AuditAction.ROLE_ASSIGNED), [])


class TestStorageFailures(AdminTestCase):
    def test_reads_surface_storage_unavailable(self) -> None:
        module = self.create_module("CONTENT")
        feature = self.create_feature(module.id, "ARTICLES")
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        module_id, feature_id, role_id = module.id, feature.id, role.id
        reads = {
            "list_roles": lambda: role_service.list_roles(self.db, None),
            "role_permissions": lambda: role_service.role_permissions(self.db, None, role_id),
            "list_modules": lambda: module_service.list_modules(self.db, None),
            "list_features": lambda: module_service.list_features(self.db, None, module_id),
            "get_feature": lambda: module_service.get_feature(self.db, None, feature_id),
        }
        boom = OperationalError("SELECT", {}, Exception("database is locked"))
        for name, read in reads.items():
            with self.subTest(read=name), patch.object(Session, "execute", side_effect=boom):
                with self.assertRaises(StorageUnavailable):
                    read()

    def test_grant_read_failure_writes_nothing(self) -> None:
        role = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        role_id = role.id
        boom = OperationalError("SELECT", {}, Exception("database is locked"))
        with patch.object(Session, "execute", side_effect=boom):
            with self.assertRaises(StorageUnavailable):
                role_service.grant_permissions(
                    self.db, self.recorder, project_id=None, role_id=role_id, permission_ids=[1]
                )
        self.assertEqual(self.count(RolePermission), 0)
