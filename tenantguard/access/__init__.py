"""Access-control package.

One call per data access: resolve membership, evaluate the rule chain,
and mirror the decision into the audit trail.

Usage:
    from tenantguard.access import build_access_engine
    from tenantguard.authz import Operation, ResourceType, TenantResource

    engine = build_access_engine()

    decision = await engine.authorize(
        "user-1",
        "org-a",
        TenantResource(resource_type=ResourceType.SENSITIVE_RECORD, organization_id="org-a"),
        Operation.READ,
    )
"""

from tenantguard.access.facade import AccessControlFacade
from tenantguard.access.factory import (
    build_access_engine,
    get_access_engine,
    reset_access_engine,
)

__all__ = [
    "AccessControlFacade",
    "build_access_engine",
    "get_access_engine",
    "reset_access_engine",
]
