"""Access-control facade.

Composes membership resolution, policy evaluation and audit recording
into the engine's public entry points. Holds no per-request state and
no membership cache; every call resolves against the store.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator

from tenantguard.audit.models import (
    AuditChannel,
    AuditEvent,
    AuditFilters,
    AuditMetadata,
    DomainAction,
    IdentityAction,
)
from tenantguard.audit.sink import AuditSink
from tenantguard.authz.engine import PolicyEvaluator
from tenantguard.authz.models import (
    DualTenantResource,
    Operation,
    PolicyDecision,
    PublicResource,
    ResourceDescriptor,
    RuleId,
)
from tenantguard.compliance.reporter import (
    ComplianceReporter,
    ComplianceSummary,
    ExportManifest,
)
from tenantguard.errors import (
    AuthorizationDeniedError,
    StorageUnavailableError,
    require_identifier,
)
from tenantguard.tenancy.models import MembershipRole, PrincipalContext
from tenantguard.tenancy.resolver import PrincipalContextResolver
from tenantguard.tenancy.service import MembershipManager, OrganizationManager

logger = logging.getLogger(__name__)

DOMAIN_ACTIONS_BY_OPERATION = {
    Operation.READ: DomainAction.RECORD_READ,
    Operation.WRITE: DomainAction.RECORD_WRITTEN,
    Operation.DELETE: DomainAction.RECORD_DELETED,
}


class AccessControlFacade:
    """Primary entry point for the data-access layer.

    Usage:
        facade = AccessControlFacade(resolver, sink)

        decision = await facade.authorize(
            "user-1", "org-a", resource, Operation.READ
        )
        if not decision.allowed:
            # Surface decision.rule to the caller's error layer
            ...

    Safe to call concurrently; all serialization happens in storage.
    """

    def __init__(
        self,
        resolver: PrincipalContextResolver,
        sink: AuditSink,
        evaluator: PolicyEvaluator | None = None,
        signing_key: bytes | None = None,
    ):
        self.resolver = resolver
        self.sink = sink
        self.evaluator = evaluator or PolicyEvaluator()
        self.reporter = ComplianceReporter(self, sink, signing_key=signing_key)
        self.organizations = OrganizationManager(resolver.storage, sink)
        self.memberships = MembershipManager(resolver.storage, sink)

    async def _principal(
        self,
        subject_id: str,
        organization_id: str,
        resource: ResourceDescriptor,
        timeout: float | None,
    ) -> PrincipalContext:
        # Only the target organization is ever consulted, and only when
        # it is one of the resource's own organizations
        if isinstance(resource, PublicResource) or organization_id not in resource.organizations:
            return PrincipalContext(subject_id=subject_id, organization_id=organization_id)

        try:
            return await self.resolver.resolve_context(subject_id, organization_id, timeout=timeout)
        except StorageUnavailableError as exc:
            logger.error(
                "Membership unresolved, denying: subject=%s org=%s error=%s",
                subject_id, organization_id, exc,
            )
            return PrincipalContext.unresolved(subject_id, organization_id, exc.code)

    async def authorize(
        self,
        subject_id: str,
        organization_id: str,
        resource: ResourceDescriptor,
        operation: Operation,
        metadata: dict[str, Any] | AuditMetadata | None = None,
        timeout: float | None = None,
        required_roles: frozenset[MembershipRole] | None = None,
    ) -> PolicyDecision:
        """Decide and record one access.

        Never raises for expected outcomes: not being a member and an
        insufficient role are deny decisions. A storage fault during
        resolution is a deny with ``fault`` set.

        Args:
            subject_id: Verified principal
            organization_id: Target organization (never inferred)
            resource: Resource being accessed
            operation: read, write or delete
            metadata: Caller context for the audit event (IP, user agent, ...)
            timeout: Deadline in seconds for membership resolution
            required_roles: Roles an allow must also hold; any other role
                turns the allow into an ``insufficient-role`` deny before
                anything is recorded

        Returns:
            PolicyDecision, with ``audit_event_id`` of the event written

        Raises:
            InvalidIdentifierError: If an identifier is empty
            ConfigurationConflictError: If the rule chain is ambiguous
        """
        require_identifier(subject_id, "subject_id")
        require_identifier(organization_id, "organization_id")

        principal = await self._principal(subject_id, organization_id, resource, timeout)
        decision = self.evaluator.evaluate(principal, resource, operation)

        if decision.allowed and required_roles is not None and decision.role not in required_roles:
            decision = decision.model_copy(
                update={"allowed": False, "rule": RuleId.INSUFFICIENT_ROLE}
            )

        if not decision.allowed:
            return await self._record_denial(decision, metadata)

        if resource.is_domain_sensitive and decision.rule != RuleId.PUBLIC_READ:
            return await self._record_access(decision, metadata)

        return decision

    async def _record_denial(
        self,
        decision: PolicyDecision,
        metadata: dict[str, Any] | AuditMetadata | None,
    ) -> PolicyDecision:
        resource = decision.resource
        logger.warning(
            "Access denied: subject=%s org=%s resource=%s operation=%s rule=%s",
            decision.subject_id, decision.organization_id, resource.resource_type.value,
            decision.operation.value, decision.rule.value,
        )
        event_id = await self.sink.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id=decision.organization_id,
            action=IdentityAction.ACCESS_DENIED,
            resource_type=resource.resource_type.value,
            resource_id=resource.resource_id,
            actor_id=decision.subject_id,
            metadata=_with_attributes(metadata, {
                "rule": decision.rule.value,
                "operation": decision.operation.value,
                "fault": decision.fault,
            }),
        )
        return decision.model_copy(update={"audit_event_id": event_id})

    async def _record_access(
        self,
        decision: PolicyDecision,
        metadata: dict[str, Any] | AuditMetadata | None,
    ) -> PolicyDecision:
        resource = decision.resource
        logger.info(
            "Sensitive access allowed: subject=%s org=%s resource=%s operation=%s rule=%s",
            decision.subject_id, decision.organization_id, resource.resource_type.value,
            decision.operation.value, decision.rule.value,
        )
        # Non-strict: a failed domain write is escalated, never blocking
        event_id = await self.sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id=decision.organization_id,
            action=DOMAIN_ACTIONS_BY_OPERATION[decision.operation],
            resource_type=resource.resource_type.value,
            resource_id=resource.resource_id,
            actor_id=decision.subject_id,
            metadata=_with_attributes(metadata, {"rule": decision.rule.value}),
        )

        # The owning organization's trail also shows access from the other side
        if isinstance(resource, DualTenantResource) and decision.organization_id != resource.organization_id:
            await self.sink.record_event(
                channel=AuditChannel.DOMAIN,
                organization_id=resource.organization_id,
                action=DOMAIN_ACTIONS_BY_OPERATION[decision.operation],
                resource_type=resource.resource_type.value,
                resource_id=resource.resource_id,
                actor_id=decision.subject_id,
                metadata=_with_attributes(metadata, {
                    "rule": decision.rule.value,
                    "accessed_from": decision.organization_id,
                }),
            )

        return decision.model_copy(update={"audit_event_id": event_id})

    async def require(
        self,
        subject_id: str,
        organization_id: str,
        resource: ResourceDescriptor,
        operation: Operation,
        metadata: dict[str, Any] | AuditMetadata | None = None,
        timeout: float | None = None,
        required_roles: frozenset[MembershipRole] | None = None,
    ) -> PolicyDecision:
        """Like authorize, but raise on deny.

        Raises:
            AuthorizationDeniedError: Carrying the rule that denied
        """
        decision = await self.authorize(
            subject_id, organization_id, resource, operation, metadata, timeout,
            required_roles=required_roles,
        )
        if not decision.allowed:
            raise AuthorizationDeniedError(decision.rule.value)
        return decision

    async def record_event(
        self,
        channel: AuditChannel,
        organization_id: str,
        action: str,
        resource_type: str | None,
        resource_id: str | None,
        actor_id: str,
        metadata: dict[str, Any] | AuditMetadata | None = None,
        previous_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        timeout: float | None = None,
        strict: bool = False,
    ) -> str | None:
        """Explicit audit write for events not tied to one authorization.

        Returns:
            The event id, or None if a non-strict write failed

        Raises:
            AuditWriteFailedError: If ``strict`` and the write failed
        """
        return await self.sink.record_event(
            channel=channel,
            organization_id=organization_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            metadata=metadata,
            previous_values=previous_values,
            new_values=new_values,
            timeout=timeout,
            strict=strict,
        )

    async def query_events(
        self,
        requester_id: str,
        channel: AuditChannel,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        filters: AuditFilters | None = None,
        after_sequence: int = 0,
    ) -> AsyncIterator[AuditEvent]:
        """Authorize, then return a lazy, restartable event iterator.

        Usage:
            async for event in await facade.query_events("admin-1", channel, "org-a"):
                ...

        Raises:
            AuthorizationDeniedError: Unless the requester is an owner or
                admin of the organization
        """
        await self.reporter.require_audit_access(requester_id, organization_id, channel)
        return self.sink.query(
            channel,
            organization_id,
            start_time=start_time,
            end_time=end_time,
            filters=filters,
            after_sequence=after_sequence,
        )

    async def report(
        self,
        requester_id: str,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> ComplianceSummary:
        return await self.reporter.report(requester_id, organization_id, start_time, end_time)

    async def export_events(
        self,
        requester_id: str,
        organization_id: str,
        start_time: datetime | None,
        end_time: datetime | None,
        reason: str,
        channel: AuditChannel = AuditChannel.DOMAIN,
    ) -> tuple[ExportManifest, list[AuditEvent]]:
        """Self-auditing export; see ComplianceReporter.export."""
        return await self.reporter.export(
            requester_id, organization_id, start_time, end_time, reason, channel=channel
        )


def _with_attributes(
    metadata: dict[str, Any] | AuditMetadata | None,
    extra: dict[str, Any],
) -> dict[str, Any] | AuditMetadata:
    """Merge decision details into caller metadata."""
    extra = {k: v for k, v in extra.items() if v is not None}
    if isinstance(metadata, AuditMetadata):
        return metadata.model_copy(update={"attributes": {**metadata.attributes, **extra}})
    return {**(metadata or {}), **extra}
