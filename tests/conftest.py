"""Test environment: settings are read at import time, so configure them before any app import."""

import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="gatekeeper-tests-")

os.environ["APP_ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR}/app.db"
# Minimum bcrypt cost keeps hashing fast; the algorithm is unchanged.
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-signing-secret-that-is-long-enough-0123456789"
os.environ["AUDIT_ASYNC"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "true"
