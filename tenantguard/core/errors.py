from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for tenantguard."""


class GateDisabledError(TenantGuardError):
    """Configuration flag for a guarded action is turned off."""

    def __init__(self, action: str, flag: str) -> None:
        self.action = action
        self.flag = flag
        super().__init__(f"{action} is not allowed. Set {flag.upper()}=true to enable")


class ConfirmationRequiredError(TenantGuardError):
    """Confirmation token for a guarded action is missing or wrong."""

    def __init__(self, action: str, header: str, token: str) -> None:
        self.action = action
        self.header = header
        self.token = token
        super().__init__(f"Confirmation required. Send header {header}: {token}")


class InvalidBackfillModeError(TenantGuardError):
    """Backfill mode is neither dry_run nor apply."""


class BackfillInProgressError(TenantGuardError):
    """Another backfill run currently holds the maintenance lock."""


class TenantNotFoundError(TenantGuardError):
    """Referenced tenant does not exist."""


class QuarantineError(TenantGuardError):
    """Quarantine manager request cannot be satisfied."""

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message)
