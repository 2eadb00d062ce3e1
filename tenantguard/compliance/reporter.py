"""Compliance reporting and signed audit exports.

Reports and exports are read-only over the audit trail. Both require
the requester to pass an authorization check on the organization's
audit log with an owner or admin role, and every export is itself
recorded as a domain-channel ``export`` event.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections import Counter
from datetime import datetime, UTC
from typing import Any, Protocol

from pydantic import BaseModel, Field

from tenantguard.audit.chain import canonical_json
from tenantguard.audit.models import AuditChannel, AuditEvent, AuditFilters, DomainAction
from tenantguard.audit.sink import AuditSink
from tenantguard.authz.models import Operation, PolicyDecision, ResourceType, TenantResource
from tenantguard.errors import AuthorizationDeniedError, require_identifier
from tenantguard.ids import new_event_id
from tenantguard.tenancy.models import ADMIN_ROLES, MembershipRole

logger = logging.getLogger(__name__)


class Authorizer(Protocol):
    async def authorize(
        self,
        subject_id: str,
        organization_id: str,
        resource: Any,
        operation: Operation,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
        required_roles: frozenset[MembershipRole] | None = None,
    ) -> PolicyDecision:
        ...


# Category -> (action substrings, resource types)
COMPLIANCE_CATEGORIES: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "sensitive_record_access": (("sensitive_record",), (ResourceType.SENSITIVE_RECORD.value,)),
    "booking_events": (("booking",), (ResourceType.BOOKING.value,)),
    "payment_events": (("payment", "transfer"), (ResourceType.FINANCIAL_TRANSFER.value,)),
    "security_events": (("security", "denied", "authentication_failed"), ()),
    "prescription_events": (("prescription",), ("prescription",)),
}


def categorize(event: AuditEvent) -> list[str]:
    """Compliance categories an event counts towards."""
    categories = []
    for name, (fragments, resource_types) in COMPLIANCE_CATEGORIES.items():
        if any(fragment in event.action for fragment in fragments) or (
            event.resource_type is not None and event.resource_type in resource_types
        ):
            categories.append(name)
    return categories


class ChannelSummary(BaseModel):
    """Aggregated counts for one channel."""

    channel: AuditChannel
    total_events: int = 0
    categories: dict[str, int] = Field(
        default_factory=lambda: {name: 0 for name in COMPLIANCE_CATEGORIES}
    )
    by_action: dict[str, int] = Field(default_factory=dict)
    by_actor: dict[str, int] = Field(default_factory=dict)
    by_day: dict[str, int] = Field(default_factory=dict, description="ISO date -> count")


class ComplianceSummary(BaseModel):
    """Compliance report for one organization and time range."""

    organization_id: str
    start_time: datetime | None
    end_time: datetime | None
    generated_by: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    channels: dict[AuditChannel, ChannelSummary]

    @property
    def total_events(self) -> int:
        return sum(summary.total_events for summary in self.channels.values())


class ExportManifest(BaseModel):
    """Describes one export for the receiving party.

    ``content_hash`` covers the exported events; ``signature`` (when a
    signing key is configured) covers every other manifest field.
    """

    model_config = {"frozen": True}

    export_id: str = Field(default_factory=lambda: f"exp_{new_event_id()}")
    organization_id: str
    channel: AuditChannel
    requester_id: str
    reason: str
    start_time: datetime | None
    end_time: datetime | None
    record_count: int
    first_sequence: int | None
    last_sequence: int | None
    hash_algorithm: str = "sha256"
    content_hash: str
    exported_at: datetime
    export_event_id: str | None = None
    signature: str | None = None

    def signing_payload(self) -> bytes:
        body = self.model_dump(mode="json", exclude={"signature"})
        return canonical_json(body).encode("utf-8")

    def sign(self, key: bytes) -> "ExportManifest":
        digest = hmac.new(key, self.signing_payload(), hashlib.sha256).hexdigest()
        return self.model_copy(update={"signature": digest})

    def verify(self, key: bytes) -> bool:
        """Check the HMAC signature against ``key``."""
        if not self.signature:
            return False
        expected = hmac.new(key, self.signing_payload(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, self.signature)

    def verify_content(self, events: list[AuditEvent]) -> bool:
        """Check that ``events`` are exactly the exported records."""
        return len(events) == self.record_count and content_hash(events) == self.content_hash


def content_hash(events: list[AuditEvent]) -> str:
    payload = canonical_json([event.model_dump(mode="json") for event in events])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ComplianceReporter:
    """Produces compliance summaries and self-auditing exports.

    Usage:
        reporter = ComplianceReporter(facade, sink, signing_key=b"...")

        summary = await reporter.report("admin-1", "org-a", start, end)

        manifest, events = await reporter.export(
            "admin-1", "org-a", start, end, reason="Quarterly HIPAA review"
        )
    """

    def __init__(
        self,
        authorizer: Authorizer,
        sink: AuditSink,
        signing_key: bytes | None = None,
    ):
        self.authorizer = authorizer
        self.sink = sink
        self.signing_key = signing_key

    async def require_audit_access(
        self,
        requester_id: str,
        organization_id: str,
        channel: AuditChannel | None = None,
    ) -> PolicyDecision:
        """Authorize a read of the organization's audit log.

        Raises:
            AuthorizationDeniedError: Unless the decision is an allow and
                the requester is an owner or admin of the organization
        """
        resource = TenantResource(
            resource_type=ResourceType.AUDIT_LOG,
            resource_id=channel.value if channel else None,
            organization_id=organization_id,
        )
        # The role requirement is part of the decision, so a refused
        # requester is recorded as a denial and never as a read
        decision = await self.authorizer.authorize(
            requester_id, organization_id, resource, Operation.READ,
            required_roles=ADMIN_ROLES,
        )
        if not decision.allowed:
            raise AuthorizationDeniedError(decision.rule.value)
        return decision

    async def report(
        self,
        requester_id: str,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        channels: tuple[AuditChannel, ...] = (AuditChannel.IDENTITY, AuditChannel.DOMAIN),
    ) -> ComplianceSummary:
        """Aggregate counts by category, action, actor and day.

        Raises:
            AuthorizationDeniedError: If the requester may not read audit data
            StorageUnavailableError: If the audit store fails
        """
        require_identifier(organization_id, "organization_id")
        await self.require_audit_access(requester_id, organization_id)

        summaries: dict[AuditChannel, ChannelSummary] = {}
        for channel in channels:
            total = 0
            categories: Counter[str] = Counter()
            by_action: Counter[str] = Counter()
            by_actor: Counter[str] = Counter()
            by_day: Counter[str] = Counter()

            async for event in self.sink.query(channel, organization_id, start_time, end_time):
                total += 1
                categories.update(categorize(event))
                by_action[event.action] += 1
                by_actor[event.actor_id] += 1
                by_day[event.timestamp.date().isoformat()] += 1

            summary = ChannelSummary(
                channel=channel,
                total_events=total,
                by_action=dict(by_action),
                by_actor=dict(by_actor),
                by_day=dict(sorted(by_day.items())),
            )
            summary.categories.update(categories)
            summaries[channel] = summary

        result = ComplianceSummary(
            organization_id=organization_id,
            start_time=start_time,
            end_time=end_time,
            generated_by=requester_id,
            channels=summaries,
        )

        await self.sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id=organization_id,
            action=DomainAction.REPORT_GENERATED,
            resource_type=ResourceType.AUDIT_LOG.value,
            resource_id=None,
            actor_id=requester_id,
            new_values={
                "start_time": start_time,
                "end_time": end_time,
                "total_events": result.total_events,
            },
        )
        logger.info(
            "Compliance report generated: org=%s requester=%s events=%d",
            organization_id, requester_id, result.total_events,
        )
        return result

    async def export(
        self,
        requester_id: str,
        organization_id: str,
        start_time: datetime | None,
        end_time: datetime | None,
        reason: str,
        channel: AuditChannel = AuditChannel.DOMAIN,
        filters: AuditFilters | None = None,
    ) -> tuple[ExportManifest, list[AuditEvent]]:
        """Export a range of events, recording the export itself.

        Exactly one domain-channel ``export`` event is written per
        successful call. If it cannot be written the export fails and
        no data is returned.

        Raises:
            AuthorizationDeniedError: If the requester may not read audit data
            AuditWriteFailedError: If the export event could not be recorded
            StorageUnavailableError: If the audit store fails
        """
        require_identifier(organization_id, "organization_id")
        if not reason or not reason.strip():
            raise ValueError("An export reason is required")
        await self.require_audit_access(requester_id, organization_id, channel)

        events = [
            event async for event in self.sink.query(
                channel, organization_id, start_time, end_time, filters
            )
        ]

        manifest = ExportManifest(
            organization_id=organization_id,
            channel=channel,
            requester_id=requester_id,
            reason=reason,
            start_time=start_time,
            end_time=end_time,
            record_count=len(events),
            first_sequence=events[0].sequence_number if events else None,
            last_sequence=events[-1].sequence_number if events else None,
            content_hash=content_hash(events),
            exported_at=datetime.now(UTC),
        )

        export_event_id = await self.sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id=organization_id,
            action=DomainAction.EXPORT,
            resource_type=ResourceType.AUDIT_LOG.value,
            resource_id=manifest.export_id,
            actor_id=requester_id,
            new_values={
                "channel": channel.value,
                "start_time": start_time,
                "end_time": end_time,
                "record_count": manifest.record_count,
                "content_hash": manifest.content_hash,
            },
            metadata={"reason": reason},
            strict=True,
        )

        manifest = manifest.model_copy(update={"export_event_id": export_event_id})
        if self.signing_key:
            manifest = manifest.sign(self.signing_key)

        logger.info(
            "Audit export completed: org=%s channel=%s requester=%s records=%d",
            organization_id, channel.value, requester_id, manifest.record_count,
        )
        return manifest, events
