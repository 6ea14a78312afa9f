"""Tests for effective permission resolution, the module tree cycle guard and tenant isolation."""

from app.core.errors import CycleDetected, NotFound
from app.models import Permission, PermissionType, RolePermission, User, UserRole
from app.services import modules as module_service
from app.services import roles as role_service
from app.services.permission_graph import PermissionGraph
from tests.support import DatabaseTestCase


class GraphTestCase(DatabaseTestCase):
    def add_user(self, username: str, project_id: str | None = None) -> User:
        user = User(
            username=username,
            email=f"{username}@x.com",
            password_hash="x",
            project_id=project_id,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def module(self, code: str, parent_id: int | None = None, project_id: str | None = None):
        return module_service.create_module(
            self.db, self.recorder, project_id=project_id, code=code, name=code.title(), parent_id=parent_id
        )

    def feature(self, module_id: int, code: str, project_id: str | None = None):
        return module_service.create_feature(
            self.db, self.recorder, project_id=project_id, module_id=module_id, code=code, name=code.title()
        )

    def permission_id(self, feature, kind: PermissionType) -> int:
        return next(p.id for p in feature.permissions if p.kind == kind)


class TestEffectivePermissions(GraphTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.alice = self.add_user("alice")
        content = self.module("CONTENT")
        self.articles = self.feature(content.id, "ARTICLES")
        self.comments = self.feature(content.id, "COMMENTS")
        self.editor = role_service.create_role(self.db, self.recorder, project_id=None, name="Editor")
        self.viewer = role_service.create_role(self.db, self.recorder, project_id=None, name="Viewer")
        self.graph = PermissionGraph(self.db, None)

    def test_assign_then_revoke_role(self) -> None:
        write = self.permission_id(self.articles, PermissionType.WRITE)
        role_service.grant_permissions(
            self.db, self.recorder, project_id=None, role_id=self.editor.id, permission_ids=[write], clock=self.clock
        )
        role_service.assign_roles(
            self.db, self.recorder, project_id=None, user_id=self.alice.id, role_ids=[self.editor.id], clock=self.clock
        )
        self.assertTrue(self.graph.has_permission(self.alice.id, "ARTICLES", PermissionType.WRITE))
        self.assertFalse(self.graph.has_permission(self.alice.id, "ARTICLES", PermissionType.DELETE))

        role_service.revoke_roles(
            self.db, self.recorder, project_id=None, user_id=self.alice.id, role_ids=[self.editor.id]
        )
        self.assertFalse(self.graph.has_permission(self.alice.id, "ARTICLES", PermissionType.WRITE))

    def test_union_over_roles(self) -> None:
        role_service.grant_permissions(
            self.db,
            self.recorder,
            project_id=None,
            role_id=self.editor.id,
            permission_ids=[self.permission_id(self.articles, PermissionType.WRITE)],
        )
        role_service.grant_permissions(
            self.db,
            self.recorder,
            project_id=None,
            role_id=self.viewer.id,
            permission_ids=[
                self.permission_id(self.articles, PermissionType.READ),
                self.permission_id(self.comments, PermissionType.READ),
            ],
        )
        role_service.assign_roles(
            self.db,
            self.recorder,
            project_id=None,
            user_id=self.alice.id,
            role_ids=[self.editor.id, self.viewer.id],
        )
        self.assertEqual(
            self.graph.effective_permissions(self.alice.id),
            {
                ("ARTICLES", PermissionType.WRITE),
                ("ARTICLES", PermissionType.READ),
                ("COMMENTS", PermissionType.READ),
            },
        )

    def test_granting_twice_is_idempotent(self) -> None:
        write = self.permission_id(self.articles, PermissionType.WRITE)
        role_service.assign_roles(
            self.db, self.recorder, project_id=None, user_id=self.alice.id, role_ids=[self.editor.id]
        )
        first = role_service.grant_permissions(
            self.db, self.recorder, project_id=None, role_id=self.editor.id, permission_ids=[write]
        )
        once = self.graph.effective_permissions(self.alice.id)
        second = role_service.grant_permissions(
            self.db, self.recorder, project_id=None, role_id=self.editor.id, permission_ids=[write, write]
        )
        self.assertEqual(first, [write])
        self.assertEqual(second, [])
        self.assertEqual(self.graph.effective_permissions(self.alice.id), once)
        self.assertEqual(len(role_service.role_permissions(self.db, None, self.editor.id)), 1)

    def test_user_without_roles_has_nothing(self) -> None:
        self.assertEqual(self.graph.effective_permissions(self.alice.id), set())
        self.assertFalse(self.graph.has_permission(self.alice.id, "ARTICLES", PermissionType.READ))


class TestModuleTree(GraphTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.root = self.module("ROOT")
        self.child = self.module("CHILD", parent_id=self.root.id)
        self.grandchild = self.module("GRANDCHILD", parent_id=self.child.id)
        self.graph = PermissionGraph(self.db, None)

    def test_ancestors_and_children(self) -> None:
        self.assertEqual(self.graph.ancestors(self.grandchild.id), [self.child.id, self.root.id])
        self.assertEqual([m.id for m in self.graph.children(self.root.id)], [self.child.id])
        self.assertEqual([m.id for m in self.graph.children(None)], [self.root.id])

    def test_children_follow_sort_order(self) -> None:
        late = module_service.create_module(
            self.db, self.recorder, project_id=None, code="LATE", name="Late", parent_id=self.root.id, sort_order=5
        )
        early = module_service.create_module(
            self.db, self.recorder, project_id=None, code="EARLY", name="Early", parent_id=self.root.id, sort_order=-1
        )
        ids = [m.id for m in self.graph.children(self.root.id)]
        self.assertEqual(ids, [early.id, self.child.id, late.id])

    def test_moving_under_a_descendant_is_a_cycle(self) -> None:
        for new_parent in (self.child.id, self.grandchild.id):
            with self.subTest(new_parent=new_parent):
                with self.assertRaises(CycleDetected):
                    self.graph.move_module(self.root.id, new_parent)

    def test_moving_under_itself_is_a_cycle(self) -> None:
        with self.assertRaises(CycleDetected):
            self.graph.move_module(self.child.id, self.child.id)

    def test_valid_move_and_move_to_root(self) -> None:
        other = self.module("OTHER")
        self.graph.move_module(self.grandchild.id, other.id)
        self.assertEqual(self.graph.ancestors(self.grandchild.id), [other.id])
        self.graph.move_module(self.grandchild.id, None)
        self.assertEqual(self.graph.ancestors(self.grandchild.id), [])

    def test_unknown_parent_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.graph.move_module(self.child.id, 9999)


class TestTenantIsolation(GraphTestCase):
    def test_scopes_do_not_leak(self) -> None:
        alice = self.add_user("alice", project_id="tenant-a")
        module_a = self.module("CONTENT", project_id="tenant-a")
        module_b = self.module("CONTENT", project_id="tenant-b")
        articles_b = self.feature(module_b.id, "ARTICLES", project_id="tenant-b")
        role_a = role_service.create_role(self.db, self.recorder, project_id="tenant-a", name="Editor")
        role_b = role_service.create_role(self.db, self.recorder, project_id="tenant-b", name="Editor")
        self.assertNotEqual(module_a.id, module_b.id)

        with self.assertRaises(NotFound):
            role_service.grant_permissions(
                self.db,
                self.recorder,
                project_id="tenant-a",
                role_id=role_a.id,
                permission_ids=[self.permission_id(articles_b, PermissionType.WRITE)],
            )
        with self.assertRaises(NotFound):
            role_service.assign_roles(
                self.db, self.recorder, project_id="tenant-a", user_id=alice.id, role_ids=[role_b.id]
            )
        with self.assertRaises(NotFound):
            PermissionGraph(self.db, "tenant-a").get_module(module_b.id)

    def test_rows_from_another_scope_are_ignored_by_resolution(self) -> None:
        # Edges written directly, bypassing the service checks.
        alice = self.add_user("alice", project_id="tenant-a")
        module_b = self.module("CONTENT", project_id="tenant-b")
        articles_b = self.feature(module_b.id, "ARTICLES", project_id="tenant-b")
        role_a = role_service.create_role(self.db, self.recorder, project_id="tenant-a", name="Editor")
        self.db.add(
            RolePermission(
                role_id=role_a.id,
                permission_id=self.permission_id(articles_b, PermissionType.READ),
                granted_at=self.clock.now(),
            )
        )
        self.db.add(UserRole(user_id=alice.id, role_id=role_a.id, assigned_at=self.clock.now()))
        self.db.commit()

        graph = PermissionGraph(self.db, "tenant-a")
        self.assertEqual(graph.effective_permissions(alice.id), set())
        self.assertFalse(graph.has_permission(alice.id, "ARTICLES", PermissionType.READ))
        self.assertEqual(self.db.query(Permission).count(), 4)
