"""
Provision the administration module, the Administrator role and the first admin user.
Run from project root:
  python -m app.scripts.bootstrap_admin USERNAME EMAIL PASSWORD [--project-id TENANT]
Example:
  python -m app.scripts.bootstrap_admin admin admin@example.com 'Str0ng!Pass'
Safe to re-run: existing module, features, role, grants and user are kept.
"""
import argparse
import logging
import sys

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.errors import GatekeeperError
from app.core.tokens import TokenAuthority
from app.services.audit import AuditRecorder
from app.services.bootstrap import provision_admin

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the first Gatekeeper administrator.")
    parser.add_argument("username", help="Username (3-100 chars: letters, digits, underscore)")
    parser.add_argument("email", help="Email address")
    parser.add_argument("password", help="Password (must satisfy the password policy)")
    parser.add_argument("--project-id", default=None, help="Tenant scope (default: global)")
    args = parser.parse_args()

    settings = get_settings()
    # Audit rows are written inline; a CLI run has no background writer.
    recorder = AuditRecorder(SessionLocal, async_mode=False, retries=settings.AUDIT_WRITE_RETRIES)
    db = SessionLocal()
    try:
        user = provision_admin(
            db,
            recorder,
            TokenAuthority.from_settings(settings),
            settings,
            username=args.username.strip(),
            email=args.email,
            password=args.password,
            project_id=args.project_id,
        )
        print(f"Administrator '{user.username}' is ready (id={user.id}).")
        return 0
    except GatekeeperError as e:
        print(f"Bootstrap failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
