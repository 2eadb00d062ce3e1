"""Organization and membership lifecycle.

Every mutation is written to the tenancy store and mirrored as an
identity-channel audit event with before/after snapshots. Nothing is
ever hard-deleted: deleting an organization marks it ``deleted`` and
suspends its memberships.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from tenantguard.audit.models import AuditChannel, DomainAction, IdentityAction
from tenantguard.errors import LifecycleError, require_identifier
from tenantguard.ids import new_event_id
from tenantguard.tenancy.models import (
    Membership,
    MembershipRole,
    MembershipStatus,
    Organization,
    OrganizationKind,
    OrganizationState,
    utcnow,
)
from tenantguard.tenancy.storage import TenancyStorage

if TYPE_CHECKING:
    from tenantguard.audit.sink import AuditSink

logger = logging.getLogger(__name__)

ORGANIZATION_RESOURCE = "organization"
MEMBERSHIP_RESOURCE = "membership"


def _org_snapshot(organization: Organization) -> dict[str, Any]:
    return {
        "display_name": organization.display_name,
        "kind": organization.kind.value,
        "state": organization.state.value,
    }


class OrganizationManager:
    """Creates organizations and drives their lifecycle.

    Usage:
        manager = OrganizationManager(storage, sink)
        org = await manager.create_organization(
            "Dr. Smith Practice",
            OrganizationKind.INDIVIDUAL_PROVIDER,
            actor_id="user-1",
            owner_id="user-1",
        )
    """

    def __init__(self, storage: TenancyStorage, audit: AuditSink):
        self.storage = storage
        self.audit = audit

    async def get_organization(self, organization_id: str) -> Organization:
        organization = await self.storage.get_organization(organization_id)
        if organization is None:
            raise LifecycleError(f"Organization {organization_id} not found")
        return organization

    async def create_organization(
        self,
        display_name: str,
        kind: OrganizationKind,
        actor_id: str,
        organization_id: str | None = None,
        owner_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Organization:
        """Create an organization, optionally with its first owner.

        Args:
            display_name: Human-readable name
            kind: Organization kind
            actor_id: Principal performing the onboarding
            organization_id: Explicit id (default: generated)
            owner_id: Subject to enrol as active owner
            metadata: Free-form attributes

        Raises:
            LifecycleError: If the organization id is already taken
        """
        require_identifier(actor_id, "actor_id")
        organization_id = organization_id or f"org_{new_event_id()}"

        if await self.storage.get_organization(organization_id) is not None:
            raise LifecycleError(f"Organization {organization_id} already exists")

        organization = Organization(
            id=organization_id,
            display_name=display_name,
            kind=kind,
            metadata=metadata or {},
        )
        await self.storage.save_organization(organization)
        logger.info("Organization created: org=%s kind=%s", organization.id, kind.value)

        await self.audit.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id=organization.id,
            action=IdentityAction.ORGANIZATION_CREATED,
            resource_type=ORGANIZATION_RESOURCE,
            resource_id=organization.id,
            actor_id=actor_id,
            new_values=_org_snapshot(organization),
        )

        if owner_id:
            members = MembershipManager(self.storage, self.audit)
            await members.add_member(organization.id, owner_id, MembershipRole.OWNER, actor_id)

        return organization

    async def _transition(
        self,
        organization_id: str,
        actor_id: str,
        expected: OrganizationState,
        target: OrganizationState,
        action: IdentityAction,
        reason: str | None,
    ) -> Organization:
        organization = await self.get_organization(organization_id)
        if organization.state != expected:
            raise LifecycleError(
                f"Organization {organization_id} is {organization.state.value}, "
                f"expected {expected.value}"
            )

        previous = _org_snapshot(organization)
        updated = organization.model_copy(update={"state": target, "updated_at": utcnow()})
        await self.storage.save_organization(updated)
        logger.info(
            "Organization state changed: org=%s %s -> %s",
            organization_id, expected.value, target.value,
        )

        await self.audit.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id=organization_id,
            action=action,
            resource_type=ORGANIZATION_RESOURCE,
            resource_id=organization_id,
            actor_id=actor_id,
            previous_values=previous,
            new_values=_org_snapshot(updated),
            metadata={"reason": reason} if reason else None,
        )
        return updated

    async def suspend_organization(
        self, organization_id: str, actor_id: str, reason: str | None = None
    ) -> Organization:
        """Suspend an active organization. Its memberships stop granting access."""
        return await self._transition(
            organization_id, actor_id,
            OrganizationState.ACTIVE, OrganizationState.SUSPENDED,
            IdentityAction.ORGANIZATION_SUSPENDED, reason,
        )

    async def reactivate_organization(
        self, organization_id: str, actor_id: str, reason: str | None = None
    ) -> Organization:
        return await self._transition(
            organization_id, actor_id,
            OrganizationState.SUSPENDED, OrganizationState.ACTIVE,
            IdentityAction.ORGANIZATION_REACTIVATED, reason,
        )

    async def delete_organization(
        self, organization_id: str, actor_id: str, reason: str | None = None
    ) -> Organization:
        """Cascading delete.

        Marks the organization deleted and suspends every membership
        (one identity event each), then records ``organization_deleted``
        on the domain channel. Audit history is kept.

        Raises:
            LifecycleError: If the organization is missing or already deleted
        """
        organization = await self.get_organization(organization_id)
        if organization.state == OrganizationState.DELETED:
            raise LifecycleError(f"Organization {organization_id} is already deleted")

        previous = _org_snapshot(organization)
        deleted = organization.model_copy(
            update={"state": OrganizationState.DELETED, "updated_at": utcnow()}
        )
        await self.storage.save_organization(deleted)

        suspended = 0
        for membership in await self.storage.list_memberships(organization_id):
            if membership.status == MembershipStatus.SUSPENDED:
                continue
            updated = membership.model_copy(
                update={"status": MembershipStatus.SUSPENDED, "updated_at": utcnow()}
            )
            await self.storage.save_membership(updated)
            suspended += 1
            await self.audit.record_event(
                channel=AuditChannel.IDENTITY,
                organization_id=organization_id,
                action=IdentityAction.MEMBER_SUSPENDED,
                resource_type=MEMBERSHIP_RESOURCE,
                resource_id=membership.subject_id,
                actor_id=actor_id,
                previous_values=membership.snapshot(),
                new_values=updated.snapshot(),
                metadata={"cause": "organization_deleted"},
            )

        logger.warning(
            "Organization deleted: org=%s memberships_suspended=%d",
            organization_id, suspended,
        )

        await self.audit.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id=organization_id,
            action=DomainAction.ORGANIZATION_DELETED,
            resource_type=ORGANIZATION_RESOURCE,
            resource_id=organization_id,
            actor_id=actor_id,
            previous_values=previous,
            new_values={**_org_snapshot(deleted), "memberships_suspended": suspended},
            metadata={"reason": reason} if reason else None,
        )
        return deleted


class MembershipManager:
    """Membership lifecycle: join, invite, role change, suspension.

    An organization always keeps at least one active owner; changes
    that would remove the last one are rejected.
    """

    def __init__(self, storage: TenancyStorage, audit: AuditSink):
        self.storage = storage
        self.audit = audit

    async def _require_active_organization(self, organization_id: str) -> None:
        organization = await self.storage.get_organization(organization_id)
        if organization is None:
            raise LifecycleError(f"Organization {organization_id} not found")
        if not organization.is_active:
            raise LifecycleError(
                f"Organization {organization_id} is {organization.state.value}"
            )

    async def get_membership(self, organization_id: str, subject_id: str) -> Membership:
        membership = await self.storage.get_membership(subject_id, organization_id)
        if membership is None:
            raise LifecycleError(
                f"Subject {subject_id} has no membership in {organization_id}"
            )
        return membership

    async def _ensure_owner_remains(self, membership: Membership) -> None:
        if membership.role != MembershipRole.OWNER or membership.status != MembershipStatus.ACTIVE:
            return
        owners = [
            m for m in await self.storage.list_memberships(membership.organization_id)
            if m.role == MembershipRole.OWNER
            and m.status == MembershipStatus.ACTIVE
            and m.subject_id != membership.subject_id
        ]
        if not owners:
            raise LifecycleError(
                f"Organization {membership.organization_id} must keep an active owner"
            )

    async def _save_and_audit(
        self,
        previous: Membership | None,
        membership: Membership,
        action: IdentityAction,
        actor_id: str,
    ) -> Membership:
        await self.storage.save_membership(membership)
        logger.info(
            "Membership %s: org=%s subject=%s role=%s status=%s",
            action.value, membership.organization_id, membership.subject_id,
            membership.role.value, membership.status.value,
        )
        await self.audit.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id=membership.organization_id,
            action=action,
            resource_type=MEMBERSHIP_RESOURCE,
            resource_id=membership.subject_id,
            actor_id=actor_id,
            previous_values=previous.snapshot() if previous else None,
            new_values=membership.snapshot(),
        )
        return membership

    async def _create(
        self,
        organization_id: str,
        subject_id: str,
        role: MembershipRole,
        status: MembershipStatus,
        action: IdentityAction,
        actor_id: str,
    ) -> Membership:
        require_identifier(subject_id, "subject_id")
        require_identifier(organization_id, "organization_id")
        await self._require_active_organization(organization_id)

        if await self.storage.get_membership(subject_id, organization_id) is not None:
            raise LifecycleError(
                f"Subject {subject_id} already has a membership in {organization_id}"
            )

        membership = Membership(
            subject_id=subject_id,
            organization_id=organization_id,
            role=role,
            status=status,
        )
        return await self._save_and_audit(None, membership, action, actor_id)

    async def add_member(
        self,
        organization_id: str,
        subject_id: str,
        role: MembershipRole,
        actor_id: str,
    ) -> Membership:
        """Enrol a subject directly (self-registration or onboarding)."""
        return await self._create(
            organization_id, subject_id, role,
            MembershipStatus.ACTIVE, IdentityAction.MEMBER_ADDED, actor_id,
        )

    async def invite_member(
        self,
        organization_id: str,
        subject_id: str,
        role: MembershipRole,
        actor_id: str,
    ) -> Membership:
        """Create an invitation. Invited memberships grant nothing until accepted."""
        return await self._create(
            organization_id, subject_id, role,
            MembershipStatus.INVITED, IdentityAction.MEMBER_INVITED, actor_id,
        )

    async def accept_invitation(self, organization_id: str, subject_id: str) -> Membership:
        await self._require_active_organization(organization_id)
        membership = await self.get_membership(organization_id, subject_id)
        if membership.status != MembershipStatus.INVITED:
            raise LifecycleError(
                f"Membership of {subject_id} in {organization_id} is not an open invitation"
            )
        updated = membership.model_copy(
            update={"status": MembershipStatus.ACTIVE, "updated_at": utcnow()}
        )
        return await self._save_and_audit(
            membership, updated, IdentityAction.INVITATION_ACCEPTED, subject_id
        )

    async def change_role(
        self,
        organization_id: str,
        subject_id: str,
        role: MembershipRole,
        actor_id: str,
    ) -> Membership:
        membership = await self.get_membership(organization_id, subject_id)
        if membership.role == role:
            return membership
        if role != MembershipRole.OWNER:
            await self._ensure_owner_remains(membership)

        updated = membership.model_copy(update={"role": role, "updated_at": utcnow()})
        return await self._save_and_audit(
            membership, updated, IdentityAction.MEMBER_ROLE_CHANGED, actor_id
        )

    async def suspend_member(
        self, organization_id: str, subject_id: str, actor_id: str
    ) -> Membership:
        """Suspend a membership. Treated exactly like no membership by policy."""
        membership = await self.get_membership(organization_id, subject_id)
        if membership.status == MembershipStatus.SUSPENDED:
            raise LifecycleError(f"Membership of {subject_id} is already suspended")
        await self._ensure_owner_remains(membership)

        updated = membership.model_copy(
            update={"status": MembershipStatus.SUSPENDED, "updated_at": utcnow()}
        )
        return await self._save_and_audit(
            membership, updated, IdentityAction.MEMBER_SUSPENDED, actor_id
        )

    async def reactivate_member(
        self, organization_id: str, subject_id: str, actor_id: str
    ) -> Membership:
        await self._require_active_organization(organization_id)
        membership = await self.get_membership(organization_id, subject_id)
        if membership.status != MembershipStatus.SUSPENDED:
            raise LifecycleError(f"Membership of {subject_id} is not suspended")

        updated = membership.model_copy(
            update={"status": MembershipStatus.ACTIVE, "updated_at": utcnow()}
        )
        return await self._save_and_audit(
            membership, updated, IdentityAction.MEMBER_REACTIVATED, actor_id
        )

    async def list_members(self, organization_id: str) -> list[Membership]:
        return await self.storage.list_memberships(organization_id)
