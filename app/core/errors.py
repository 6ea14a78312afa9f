"""Typed outcomes raised by the auth and authorization services.

Callers receive only the classification and a short message. Internal detail
(which lookup failed, library exception text) goes to logs and the audit trail.
"""


class GatekeeperError(Exception):
    """Base class for service errors; ``code`` is the stable machine-readable name."""

    code = "error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidCredentials(GatekeeperError):
    """Unknown identifier or wrong password (deliberately indistinguishable)."""

    code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class AccountNotActive(GatekeeperError):
    code = "account_not_active"

    def __init__(self, message: str = "Account is not active") -> None:
        super().__init__(message)


class AlreadyExists(GatekeeperError):
    code = "already_exists"


class NotFound(GatekeeperError):
    code = "not_found"


class Unauthorized(GatekeeperError):
    """Bad, expired or reused token, or wrong current password."""

    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Forbidden(GatekeeperError):
    code = "forbidden"

    def __init__(self, message: str = "Permission denied") -> None:
        super().__init__(message)


class CycleDetected(GatekeeperError):
    code = "cycle_detected"


class ModuleNotEmpty(GatekeeperError):
    code = "module_not_empty"


class PolicyViolation(GatekeeperError):
    """Password or username rejected by policy; ``violations`` lists every failed rule."""

    code = "policy_violation"

    def __init__(self, message: str, violations: list[str] | None = None) -> None:
        self.violations = violations or [message]
        super().__init__(message)


class StorageUnavailable(GatekeeperError):
    """Persistence could not complete the transaction; the caller may retry."""

    code = "storage_unavailable"
    retryable = True

    def __init__(self, message: str = "Storage temporarily unavailable") -> None:
        super().__init__(message)
