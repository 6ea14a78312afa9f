"""API v1 routes. Every router except health is rate limited by SlowAPIMiddleware (see app.core.rate_limit)."""

from fastapi import APIRouter

from app.api.v1 import audit_logs, auth, health, modules, roles, users

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(modules.router, prefix="/modules", tags=["modules"])
router.include_router(roles.router, prefix="/roles", tags=["roles"])
router.include_router(users.router, prefix="/users", tags=["users"])
router.include_router(audit_logs.router, prefix="/audit-logs", tags=["audit"])
