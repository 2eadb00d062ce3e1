"""Shared fixtures: in-memory storages, seeded tenants, alert recorder."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tenantguard.access.facade import AccessControlFacade
from tenantguard.audit.sink import AuditSink
from tenantguard.audit.storage import InMemoryAuditStorage
from tenantguard.monitoring import AlertAdapter, AlertDispatcher, OperationalAlert
from tenantguard.tenancy.models import (
    Membership,
    MembershipRole,
    MembershipStatus,
    Organization,
    OrganizationKind,
)
from tenantguard.tenancy.resolver import PrincipalContextResolver
from tenantguard.tenancy.storage import InMemoryTenancyStorage

ORG_A = "org-a"
ORG_B = "org-b"
ORG_C = "org-c"


class RecordingAlertAdapter(AlertAdapter):
    """Collects alerts for assertions."""

    def __init__(self):
        self.alerts: list[OperationalAlert] = []

    async def send(self, alert: OperationalAlert) -> None:
        self.alerts.append(alert)


class FailingAuditStorage(InMemoryAuditStorage):
    """Audit storage whose appends always fail."""

    async def append(self, draft, seal):
        raise ConnectionError("audit database unreachable")


@pytest.fixture
def tenancy_storage():
    return InMemoryTenancyStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def alert_recorder():
    return RecordingAlertAdapter()


@pytest.fixture
def sink(audit_storage, alert_recorder):
    return AuditSink(audit_storage, alerts=AlertDispatcher([alert_recorder]))


@pytest.fixture
def resolver(tenancy_storage):
    return PrincipalContextResolver(tenancy_storage, default_timeout=1.0)


@pytest.fixture
def facade(resolver, sink):
    return AccessControlFacade(resolver, sink, signing_key=b"test-signing-key")


@pytest_asyncio.fixture
async def seeded(tenancy_storage):
    """Three organizations with members in every role and status.

    org-a (individual-provider):
        u-owner owner, u-admin admin, u-member member, u-billing billing-only,
        u-suspended suspended member, u-invited invited member
    org-b (individual-patient):
        u-patient member, u-b-owner owner
    org-c (multi-member-clinic): no members
    """
    for org_id, kind in (
        (ORG_A, OrganizationKind.INDIVIDUAL_PROVIDER),
        (ORG_B, OrganizationKind.INDIVIDUAL_PATIENT),
        (ORG_C, OrganizationKind.MULTI_MEMBER_CLINIC),
    ):
        await tenancy_storage.save_organization(
            Organization(id=org_id, display_name=org_id.upper(), kind=kind)
        )

    members = [
        ("u-owner", ORG_A, MembershipRole.OWNER, MembershipStatus.ACTIVE),
        ("u-admin", ORG_A, MembershipRole.ADMIN, MembershipStatus.ACTIVE),
        ("u-member", ORG_A, MembershipRole.MEMBER, MembershipStatus.ACTIVE),
        ("u-billing", ORG_A, MembershipRole.BILLING_ONLY, MembershipStatus.ACTIVE),
        ("u-suspended", ORG_A, MembershipRole.MEMBER, MembershipStatus.SUSPENDED),
        ("u-invited", ORG_A, MembershipRole.MEMBER, MembershipStatus.INVITED),
        ("u-patient", ORG_B, MembershipRole.MEMBER, MembershipStatus.ACTIVE),
        ("u-b-owner", ORG_B, MembershipRole.OWNER, MembershipStatus.ACTIVE),
    ]
    for subject_id, org_id, role, status in members:
        await tenancy_storage.save_membership(
            Membership(subject_id=subject_id, organization_id=org_id, role=role, status=status)
        )
    return tenancy_storage
