"""Authorization data models.

Defines operations, resource descriptors and policy decisions.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator

from tenantguard.tenancy.models import MembershipRole


class Operation(str, Enum):
    """Operations a caller may perform on a resource."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"

    @property
    def is_mutation(self) -> bool:
        return self is not Operation.READ


class ResourceType(str, Enum):
    """Kinds of tenant-scoped resources."""

    PROFILE = "profile"
    SCHEDULING_RECORD = "scheduling-record"
    BOOKING = "booking"
    FINANCIAL_TRANSFER = "financial-transfer"
    SENSITIVE_RECORD = "sensitive-record"
    AUDIT_LOG = "audit-log"


# Access to these is mirrored into the domain audit channel
DOMAIN_SENSITIVE_TYPES = frozenset({
    ResourceType.SENSITIVE_RECORD,
    ResourceType.FINANCIAL_TRANSFER,
    ResourceType.BOOKING,
    ResourceType.AUDIT_LOG,
})


class RuleId(str, Enum):
    """Identifiers of the rules in the policy chain."""

    PUBLIC_READ = "public-read"
    NO_MEMBERSHIP = "no-membership"
    DUAL_TENANT_READ = "dual-tenant-read"
    DUAL_TENANT_OWNER_WRITE = "dual-tenant-owner-write"
    MEMBER_READ = "member-read"
    ADMIN_WRITE = "admin-write"
    SELF_WRITE = "self-write"
    INSUFFICIENT_ROLE = "insufficient-role"


class PublicResource(BaseModel):
    """A globally public resource with no owning organization."""

    model_config = {"frozen": True}

    kind: Literal["public"] = "public"
    resource_type: ResourceType
    resource_id: str | None = None

    @property
    def organizations(self) -> tuple[str, ...]:
        return ()

    @property
    def is_domain_sensitive(self) -> bool:
        return self.resource_type in DOMAIN_SENSITIVE_TYPES


class TenantResource(BaseModel):
    """A resource owned by exactly one organization."""

    model_config = {"frozen": True}

    kind: Literal["tenant"] = "tenant"
    resource_type: ResourceType
    resource_id: str | None = None
    organization_id: str = Field(min_length=1, description="Owning organization")
    owner_id: str | None = Field(
        default=None,
        description="Owning principal for strictly owner-scoped records"
    )

    @property
    def organizations(self) -> tuple[str, ...]:
        return (self.organization_id,)

    @property
    def is_domain_sensitive(self) -> bool:
        return self.resource_type in DOMAIN_SENSITIVE_TYPES


class DualTenantResource(BaseModel):
    """A resource spanning two organizations.

    Example: a booking between a provider organization (primary) and a
    patient organization (secondary). ``owner_id`` designates the
    owner-side actor allowed to modify it from the secondary side.
    """

    model_config = {"frozen": True}

    kind: Literal["dual-tenant"] = "dual-tenant"
    resource_type: ResourceType
    resource_id: str | None = None
    organization_id: str = Field(min_length=1, description="Primary organization")
    secondary_organization_id: str = Field(min_length=1, description="Secondary organization")
    owner_id: str | None = Field(default=None, description="Designated owner-side actor")

    @model_validator(mode="after")
    def check_distinct_organizations(self) -> "DualTenantResource":
        if self.organization_id == self.secondary_organization_id:
            raise ValueError("A dual-tenant resource needs two distinct organizations")
        return self

    @property
    def organizations(self) -> tuple[str, ...]:
        return (self.organization_id, self.secondary_organization_id)

    @property
    def is_domain_sensitive(self) -> bool:
        return self.resource_type in DOMAIN_SENSITIVE_TYPES


ResourceDescriptor = Annotated[
    Union[PublicResource, TenantResource, DualTenantResource],
    Field(discriminator="kind"),
]


class PolicyDecision(BaseModel):
    """Result of an authorization decision.

    ``fault`` is set when the principal could not be resolved; the
    decision is then always a deny under ``no-membership``.
    """

    model_config = {"frozen": True}

    allowed: bool = Field(description="Whether access is allowed")
    rule: RuleId = Field(description="Rule that produced the decision")
    subject_id: str = Field(description="Evaluated principal")
    organization_id: str = Field(description="Target organization")
    resource: ResourceDescriptor
    operation: Operation
    role: MembershipRole | None = Field(
        default=None,
        description="Role in the target organization, if any"
    )
    fault: str | None = Field(default=None, description="Resolution error code")
    audit_event_id: str | None = Field(
        default=None,
        description="Audit event written for this decision, if any"
    )

    @property
    def reason(self) -> str:
        if self.fault:
            return f"Denied: membership could not be resolved ({self.fault})"
        verdict = "Allowed" if self.allowed else "Denied"
        return f"{verdict} by rule {self.rule.value}"
