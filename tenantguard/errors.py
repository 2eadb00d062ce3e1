"""Error taxonomy for the access engine.

Expected outcomes (not a member, insufficient role) are ordinary deny
decisions and never appear here. These exceptions cover faults and the
raising variants offered to callers that prefer exceptions.
"""

from __future__ import annotations


class TenantGuardError(Exception):
    """Base class for all engine errors."""

    code = "tenantguard_error"

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class StorageUnavailableError(TenantGuardError):
    """Raised when a backing store cannot be reached or times out."""

    code = "storage_unavailable"

    def __init__(self, operation: str, reason: str = "storage unavailable"):
        self.operation = operation
        super().__init__(f"{operation} failed: {reason}")


class ConfigurationConflictError(TenantGuardError):
    """Raised when the policy rule chain is ambiguous or malformed."""

    code = "configuration_conflict"

    def __init__(self, message: str, rule_ids: list[str] | None = None):
        self.rule_ids = rule_ids or []
        super().__init__(message)


class AuditWriteFailedError(TenantGuardError):
    """Raised by strict audit writes when the event could not be stored."""

    code = "audit_write_failed"

    def __init__(self, channel: str, organization_id: str, reason: str):
        self.channel = channel
        self.organization_id = organization_id
        super().__init__(
            f"Audit write to {channel} channel for organization "
            f"{organization_id} failed: {reason}"
        )


class AuthorizationDeniedError(TenantGuardError):
    """Raised by the raising authorization helpers on a deny decision."""

    code = "authorization_denied"

    def __init__(self, rule: str, message: str = "Access denied"):
        self.rule = rule
        super().__init__(f"{message} (rule: {rule})")


class InvalidIdentifierError(TenantGuardError, ValueError):
    """Raised when a subject or organization identifier is empty."""

    code = "invalid_identifier"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} must be a non-empty identifier")


class LifecycleError(TenantGuardError):
    """Raised for invalid organization or membership transitions."""

    code = "invalid_lifecycle_transition"


class AppendOnlyViolationError(TenantGuardError):
    """Raised when a write would overwrite an existing audit event."""

    code = "append_only_violation"


def require_identifier(value: str | None, field_name: str) -> str:
    """Validate an opaque identifier, returning it unchanged."""
    if not value or not str(value).strip():
        raise InvalidIdentifierError(field_name)
    return value
