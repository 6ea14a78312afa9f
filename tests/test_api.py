"""HTTP-level tests: routing, error mapping, auth dependencies and rate limiting through the FastAPI app."""

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.database import SessionLocal, engine
from app.core.rate_limit import limiter
from app.core.tokens import TokenAuthority
from app.main import app
from app.models import Base
from app.services.audit import AuditRecorder
from app.services.bootstrap import provision_admin
from tests.support import STRONG_PASSWORD

API = settings.API_V1_PREFIX


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        Base.metadata.drop_all(engine)
        Base.metadata.create_all(engine)
        limiter.reset()
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        Base.metadata.drop_all(engine)

    def register(self, username: str = "alice", password: str = STRONG_PASSWORD):
        return self.client.post(
            f"{API}/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": password},
        )

    def login(self, identifier: str = "alice", password: str = STRONG_PASSWORD) -> dict:
        response = self.client.post(
            f"{API}/auth/login", json={"identifier": identifier, "password": password}
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    @staticmethod
    def bearer(tokens: dict) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRootAndHealth(ApiTestCase):
    def test_root(self) -> None:
        response = self.client.get("/")
        self.assertEqual(response.json(), {"message": "Gatekeeper API"})

    def test_health(self) -> None:
        response = self.client.get(f"{API}/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["database"], "connected")
        self.assertEqual(body["audit_writer"], "sync")


class TestAuthFlow(ApiTestCase):
    def test_register_login_me_refresh(self) -> None:
        response = self.register()
        self.assertEqual(response.status_code, 201, response.text)
        self.assertEqual(response.json()["username"], "alice")
        self.assertNotIn("password_hash", response.json())

        tokens = self.login("alice@example.com")
        self.assertEqual(tokens["token_type"], "bearer")

        me = self.client.get(f"{API}/auth/me", headers=self.bearer(tokens))
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["email"], "alice@example.com")

        refreshed = self.client.post(
            f"{API}/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        self.assertEqual(refreshed.status_code, 200)
        self.assertNotEqual(refreshed.json()["refresh_token"], tokens["refresh_token"])

        replay = self.client.post(
            f"{API}/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        self.assertEqual(replay.status_code, 401)
        self.assertEqual(replay.headers["www-authenticate"], "Bearer")

    def test_weak_password_lists_violations(self) -> None:
        response = self.register(password="weakpass")
        self.assertEqual(response.status_code, 422)
        body = response.json()
        self.assertEqual(body["code"], "policy_violation")
        self.assertTrue(body["violations"])

    def test_duplicate_registration_conflicts(self) -> None:
        self.register()
        self.assertEqual(self.register().status_code, 409)

    def test_bad_credentials_and_missing_token(self) -> None:
        self.register()
        response = self.client.post(
            f"{API}/auth/login", json={"identifier": "alice", "password": "Wr0ng!Pass"}
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.client.get(f"{API}/auth/me").status_code, 401)
        bogus = self.client.get(f"{API}/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(bogus.status_code, 401)

    def test_revoke_all_tokens(self) -> None:
        self.register()
        first = self.login()
        second = self.login()
        response = self.client.post(f"{API}/auth/revoke-all-tokens", headers=self.bearer(second))
        self.assertEqual(response.json(), {"revoked": 2})
        refresh = self.client.post(
            f"{API}/auth/refresh-token", json={"refresh_token": first["refresh_token"]}
        )
        self.assertEqual(refresh.status_code, 401)


class TestAdminRoutes(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        db = SessionLocal()
        try:
            provision_admin(
                db,
                AuditRecorder(SessionLocal, async_mode=False),
                TokenAuthority.from_settings(settings),
                settings,
                username="root",
                email="root@example.com",
                password=STRONG_PASSWORD,
            )
        finally:
            db.close()
        self.admin = self.bearer(self.login("root"))

    def test_plain_user_is_forbidden(self) -> None:
        self.register()
        tokens = self.login()
        response = self.client.get(f"{API}/modules", headers=self.bearer(tokens))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "forbidden")

    def test_module_feature_role_grant_flow(self) -> None:
        module = self.client.post(
            f"{API}/modules", json={"code": "BILLING", "name": "Billing"}, headers=self.admin
        )
        self.assertEqual(module.status_code, 201, module.text)
        module_id = module.json()["id"]

        feature = self.client.post(
            f"{API}/modules/{module_id}/features",
            json={"code": "INVOICES", "name": "Invoices"},
            headers=self.admin,
        )
        self.assertEqual(feature.status_code, 201, feature.text)
        permissions = {p["kind"]: p["id"] for p in feature.json()["permissions"]}
        self.assertEqual(set(permissions), {"read", "write", "delete", "execute"})

        role = self.client.post(f"{API}/roles", json={"name": "Accountant"}, headers=self.admin)
        self.assertEqual(role.status_code, 201)
        role_id = role.json()["id"]
        granted = self.client.post(
            f"{API}/roles/{role_id}/permissions",
            json={"permission_ids": [permissions["read"]]},
            headers=self.admin,
        )
        self.assertEqual(granted.json(), {"changed": [permissions["read"]]})

        user_id = self.register().json()["id"]
        assigned = self.client.post(
            f"{API}/users/{user_id}/roles", json={"role_ids": [role_id]}, headers=self.admin
        )
        self.assertEqual(assigned.json(), {"changed": [role_id]})

        effective = self.client.get(f"{API}/users/{user_id}/permissions", headers=self.admin)
        self.assertEqual(
            effective.json()["permissions"], [{"feature_code": "INVOICES", "kind": "read"}]
        )

        moved = self.client.put(
            f"{API}/modules/{module_id}/parent", json={"parent_id": module_id}, headers=self.admin
        )
        self.assertEqual(moved.status_code, 409)

        not_empty = self.client.delete(f"{API}/modules/{module_id}", headers=self.admin)
        self.assertEqual(not_empty.status_code, 409)
        deleted = self.client.delete(f"{API}/modules/{module_id}?cascade=true", headers=self.admin)
        self.assertEqual(deleted.json(), {"deleted": 1})

    def test_suspending_a_user_blocks_login(self) -> None:
        user_id = self.register().json()["id"]
        response = self.client.put(
            f"{API}/users/{user_id}/status", json={"status": "suspended"}, headers=self.admin
        )
        self.assertEqual(response.json()["status"], "suspended")
        login = self.client.post(
            f"{API}/auth/login", json={"identifier": "alice", "password": STRONG_PASSWORD}
        )
        self.assertEqual(login.status_code, 403)

    def test_audit_log_query(self) -> None:
        response = self.client.get(
            f"{API}/audit-logs", params={"action": "login_success"}, headers=self.admin
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total"], 1)
        self.assertEqual(body["items"][0]["action"], "login_success")

    def test_unknown_user_is_not_found(self) -> None:
        response = self.client.get(f"{API}/users/9999/roles", headers=self.admin)
        self.assertEqual(response.status_code, 404)

    def test_storage_failure_during_permission_check_is_503(self) -> None:
        boom = OperationalError("SELECT", {}, Exception("database is locked"))
        with patch("app.api.v1.auth.PermissionGraph.has_permission", side_effect=boom):
            response = self.client.get(f"{API}/modules", headers=self.admin)
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.headers["retry-after"], "1")
        self.assertEqual(response.json()["code"], "storage_unavailable")


class TestRateLimit(ApiTestCase):
    def test_returns_429_with_retry_after(self) -> None:
        # The budget is shared by every limited route of the caller.
        for _ in range(settings.RATE_LIMIT_REQUESTS - 1):
            self.client.get(f"{API}/auth/me")
        self.assertEqual(self.client.get(f"{API}/roles").status_code, 401)
        response = self.client.get(f"{API}/auth/me")
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["retry-after"], str(settings.RATE_LIMIT_WINDOW_SEC))
        self.assertEqual(response.json()["code"], "rate_limited")
        self.assertEqual(self.client.get(f"{API}/health").status_code, 200)
