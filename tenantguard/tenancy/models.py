"""Tenancy data models.

Organizations are the tenant boundary; memberships bind a principal
(subject id) to an organization with a role.
"""

from __future__ import annotations

from datetime import datetime, UTC
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class OrganizationKind(str, Enum):
    """Kinds of tenant organizations."""

    INDIVIDUAL_PATIENT = "individual-patient"
    INDIVIDUAL_PROVIDER = "individual-provider"
    MULTI_MEMBER_CLINIC = "multi-member-clinic"
    INSTITUTIONAL = "institutional"


class OrganizationState(str, Enum):
    """Organization lifecycle states."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class MembershipRole(str, Enum):
    """Closed set of membership roles."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    BILLING_ONLY = "billing-only"


class MembershipStatus(str, Enum):
    """Membership status."""

    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"


ADMIN_ROLES = frozenset({MembershipRole.OWNER, MembershipRole.ADMIN})


class Organization(BaseModel):
    """A tenant boundary."""

    id: str = Field(description="Opaque, stable organization identifier")
    display_name: str = Field(description="Human-readable name")
    kind: OrganizationKind = Field(description="Organization kind")
    state: OrganizationState = Field(
        default=OrganizationState.ACTIVE,
        description="Lifecycle state"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.state == OrganizationState.ACTIVE


class Membership(BaseModel):
    """Binding of a principal to an organization.

    Memberships are never hard-deleted; removal is a status change to
    ``suspended`` so that the audit trail stays continuous.
    """

    subject_id: str = Field(description="Principal identifier")
    organization_id: str = Field(description="Organization identifier")
    role: MembershipRole = Field(description="Role within the organization")
    status: MembershipStatus = Field(
        default=MembershipStatus.ACTIVE,
        description="Membership status"
    )
    joined_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.subject_id, self.organization_id)

    def snapshot(self) -> dict[str, Any]:
        """Audit-friendly value snapshot."""
        return {"role": self.role.value, "status": self.status.value}


class MembershipResolution(BaseModel):
    """Outcome of resolving a subject's membership in one organization.

    ``role is None`` means the subject is not a member, which is a
    normal outcome and maps to deny. Storage faults are never encoded
    here; they are raised as ``StorageUnavailableError``.
    """

    model_config = {"frozen": True}

    subject_id: str
    organization_id: str
    role: MembershipRole | None = None
    status: MembershipStatus | None = None

    @classmethod
    def not_a_member(cls, subject_id: str, organization_id: str) -> "MembershipResolution":
        return cls(subject_id=subject_id, organization_id=organization_id)

    @property
    def is_member(self) -> bool:
        return self.role is not None

    @property
    def is_active(self) -> bool:
        return self.is_member and self.status == MembershipStatus.ACTIVE


class PrincipalContext(BaseModel):
    """Resolved principal for exactly one target organization."""

    model_config = {"frozen": True}

    subject_id: str = Field(description="Acting principal")
    organization_id: str = Field(description="Caller-supplied target organization")
    role: MembershipRole | None = Field(
        default=None,
        description="Role in the target organization, if any"
    )
    status: MembershipStatus | None = Field(
        default=None,
        description="Membership status in the target organization"
    )
    fault: str | None = Field(
        default=None,
        description="Error code if membership could not be resolved"
    )

    @classmethod
    def from_resolution(cls, resolution: MembershipResolution) -> "PrincipalContext":
        return cls(
            subject_id=resolution.subject_id,
            organization_id=resolution.organization_id,
            role=resolution.role,
            status=resolution.status,
        )

    @classmethod
    def unresolved(cls, subject_id: str, organization_id: str, fault: str) -> "PrincipalContext":
        """Context for a failed resolution; never grants anything."""
        return cls(subject_id=subject_id, organization_id=organization_id, fault=fault)

    @property
    def has_active_membership(self) -> bool:
        """Suspended, invited and unresolved memberships all count as none."""
        return (
            self.fault is None
            and self.role is not None
            and self.status == MembershipStatus.ACTIVE
        )
