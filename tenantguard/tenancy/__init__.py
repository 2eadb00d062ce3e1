"""Tenancy package.

Organizations, memberships and principal context resolution.

Usage:
    from tenantguard.tenancy import PrincipalContextResolver, InMemoryTenancyStorage

    resolver = PrincipalContextResolver(storage, default_timeout=2.0)

    resolution = await resolver.resolve("user-1", "org-a")
    if not resolution.is_active:
        # Treat as deny
        pass
"""

from tenantguard.tenancy.models import (
    ADMIN_ROLES,
    Membership,
    MembershipResolution,
    MembershipRole,
    MembershipStatus,
    Organization,
    OrganizationKind,
    OrganizationState,
    PrincipalContext,
)
from tenantguard.tenancy.storage import (
    FileTenancyStorage,
    InMemoryTenancyStorage,
    PostgresTenancyStorage,
    TenancyStorage,
    get_tenancy_storage,
)
from tenantguard.tenancy.resolver import PrincipalContextResolver
from tenantguard.tenancy.service import MembershipManager, OrganizationManager

__all__ = [
    "ADMIN_ROLES",
    "Membership",
    "MembershipResolution",
    "MembershipRole",
    "MembershipStatus",
    "Organization",
    "OrganizationKind",
    "OrganizationState",
    "PrincipalContext",
    "FileTenancyStorage",
    "InMemoryTenancyStorage",
    "PostgresTenancyStorage",
    "TenancyStorage",
    "get_tenancy_storage",
    "PrincipalContextResolver",
    "MembershipManager",
    "OrganizationManager",
]
