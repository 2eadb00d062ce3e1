"""Tests for compliance reports and signed exports."""

from datetime import datetime, timedelta, UTC

import pytest

from tenantguard.access.facade import AccessControlFacade
from tenantguard.audit.models import AuditChannel, AuditFilters
from tenantguard.audit.sink import AuditSink
from tenantguard.audit.storage import InMemoryAuditStorage
from tenantguard.authz.models import Operation, ResourceType, TenantResource
from tenantguard.compliance.reporter import categorize, content_hash
from tenantguard.errors import AuditWriteFailedError, AuthorizationDeniedError
from tenantguard.monitoring import AlertDispatcher
from tenantguard.tenancy.resolver import PrincipalContextResolver

from conftest import RecordingAlertAdapter

ORG_A = "org-a"
ORG_B = "org-b"


class ExportFailingAuditStorage(InMemoryAuditStorage):
    """Accepts everything except export events."""

    async def append(self, draft, seal):
        if draft.action == "export":
            raise ConnectionError("audit database unreachable")
        return await super().append(draft, seal)


async def record_activity(sink):
    for action, resource_type in (
        ("sensitive_record_created", "sensitive-record"),
        ("booking_created", "booking"),
        ("booking_cancelled", "booking"),
        ("payment_completed", "financial-transfer"),
        ("record_written", "prescription"),
    ):
        await sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id=ORG_A,
            action=action,
            resource_type=resource_type,
            resource_id="r1",
            actor_id="u-member",
        )
    await sink.record_event(
        channel=AuditChannel.IDENTITY,
        organization_id=ORG_A,
        action="authentication_failed",
        resource_type=None,
        resource_id=None,
        actor_id="u-unknown",
    )


class TestCategorize:
    """Test compliance categories."""

    @pytest.mark.asyncio
    async def test_categories_by_action_and_resource(self, sink):
        await record_activity(sink)
        events = await sink.collect(AuditChannel.DOMAIN, ORG_A)
        assert categorize(events[0]) == ["sensitive_record_access"]
        assert categorize(events[1]) == ["booking_events"]
        assert categorize(events[3]) == ["payment_events"]
        assert categorize(events[4]) == ["prescription_events"]


class TestReport:
    """Test compliance summaries."""

    @pytest.mark.asyncio
    async def test_report_counts(self, seeded, facade, sink):
        await record_activity(sink)

        summary = await facade.report("u-admin", ORG_A)

        domain = summary.channels[AuditChannel.DOMAIN]
        # Includes the audit-log read that authorized the report
        assert domain.total_events == 6
        assert domain.categories["booking_events"] == 2
        assert domain.categories["payment_events"] == 1
        assert domain.by_actor == {"u-member": 5, "u-admin": 1}
        assert domain.by_action["booking_created"] == 1

        identity = summary.channels[AuditChannel.IDENTITY]
        assert identity.categories["security_events"] == 1
        assert summary.total_events == 7
        assert summary.generated_by == "u-admin"

    @pytest.mark.asyncio
    async def test_report_is_recorded(self, seeded, facade, sink):
        await facade.report("u-owner", ORG_A)
        actions = [e.action for e in await sink.collect(AuditChannel.DOMAIN, ORG_A)]
        assert actions[-1] == "report_generated"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requester", ["u-member", "u-billing", "u-suspended", "u-patient"])
    async def test_report_requires_admin(self, seeded, facade, requester):
        with pytest.raises(AuthorizationDeniedError):
            await facade.report(requester, ORG_A)

    @pytest.mark.asyncio
    async def test_report_is_scoped_to_organization(self, seeded, facade, sink):
        await record_activity(sink)
        summary = await facade.report("u-b-owner", ORG_B)
        domain = summary.channels[AuditChannel.DOMAIN]
        assert domain.total_events == 1
        assert domain.by_actor == {"u-b-owner": 1}


class TestExport:
    """Test signed, self-auditing exports."""

    @pytest.mark.asyncio
    async def test_export_manifest(self, seeded, facade, sink):
        await record_activity(sink)

        manifest, events = await facade.export_events(
            "u-admin", ORG_A, None, None, reason="Quarterly review"
        )

        # Five recorded events plus the audit-log read that authorized the export
        assert len(events) == 6
        assert events[-1].action == "record_read"
        assert manifest.record_count == 6
        assert manifest.first_sequence == events[0].sequence_number
        assert manifest.last_sequence == events[-1].sequence_number
        assert manifest.content_hash == content_hash(events)
        assert manifest.export_id.startswith("exp_")
        assert manifest.verify(b"test-signing-key")
        assert not manifest.verify(b"other-key")
        assert manifest.verify_content(events)
        assert not manifest.verify_content(events[1:])

    @pytest.mark.asyncio
    async def test_tampered_manifest_fails_verification(self, seeded, facade, sink):
        await record_activity(sink)
        manifest, _ = await facade.export_events("u-admin", ORG_A, None, None, reason="audit")
        tampered = manifest.model_copy(update={"record_count": 1})
        assert not tampered.verify(b"test-signing-key")

    @pytest.mark.asyncio
    async def test_export_records_exactly_one_event(self, seeded, facade, sink):
        await record_activity(sink)
        manifest, _ = await facade.export_events("u-admin", ORG_A, None, None, reason="audit")

        exports = [
            e for e in await sink.collect(AuditChannel.DOMAIN, ORG_A) if e.action == "export"
        ]
        assert len(exports) == 1
        assert exports[0].event_id == manifest.export_event_id
        assert exports[0].actor_id == "u-admin"
        assert exports[0].resource_id == manifest.export_id
        assert exports[0].metadata.attributes == {"reason": "audit"}
        assert exports[0].new_values["record_count"] == manifest.record_count

    @pytest.mark.asyncio
    async def test_export_time_range_and_filters(self, seeded, facade, sink):
        await record_activity(sink)
        now = datetime.now(UTC)

        _, events = await facade.export_events(
            "u-admin", ORG_A, now - timedelta(hours=1), now + timedelta(hours=1),
            reason="audit", channel=AuditChannel.IDENTITY,
        )
        assert [e.action for e in events] == ["authentication_failed"]

        manifest, events = await facade.reporter.export(
            "u-admin", ORG_A, None, None, reason="audit",
            filters=AuditFilters(resource_type="booking"),
        )
        assert manifest.record_count == 2

        _, events = await facade.export_events(
            "u-admin", ORG_A, now + timedelta(days=1), None, reason="audit"
        )
        assert events == []

    @pytest.mark.asyncio
    async def test_reason_required(self, seeded, facade):
        with pytest.raises(ValueError):
            await facade.export_events("u-admin", ORG_A, None, None, reason="  ")

    @pytest.mark.asyncio
    async def test_member_cannot_export(self, seeded, facade):
        with pytest.raises(AuthorizationDeniedError):
            await facade.export_events("u-member", ORG_A, None, None, reason="curious")

    @pytest.mark.asyncio
    async def test_export_fails_when_export_event_cannot_be_written(self, seeded):
        """No data leaves without its export event."""
        recorder = RecordingAlertAdapter()
        sink = AuditSink(ExportFailingAuditStorage(), alerts=AlertDispatcher([recorder]))
        facade = AccessControlFacade(PrincipalContextResolver(seeded), sink)

        with pytest.raises(AuditWriteFailedError):
            await facade.export_events("u-admin", ORG_A, None, None, reason="audit")
        assert recorder.alerts[0].code == "audit_write_failed"

    @pytest.mark.asyncio
    async def test_unsigned_without_key(self, seeded, resolver, sink):
        facade = AccessControlFacade(resolver, sink)
        manifest, _ = await facade.export_events("u-owner", ORG_A, None, None, reason="audit")
        assert manifest.signature is None
        assert not manifest.verify(b"anything")


class TestQueryEvents:
    """Test authorized audit queries."""

    @pytest.mark.asyncio
    async def test_admin_can_query(self, seeded, facade, sink):
        await record_activity(sink)
        events = [e async for e in await facade.query_events("u-admin", AuditChannel.DOMAIN, ORG_A)]
        # Five recorded events plus the audit-log read that authorized the query
        assert len(events) == 6
        assert events[-1].action == "record_read"

    @pytest.mark.asyncio
    async def test_member_denied_before_iteration(self, seeded, facade):
        with pytest.raises(AuthorizationDeniedError):
            await facade.query_events("u-member", AuditChannel.DOMAIN, ORG_A)

    @pytest.mark.asyncio
    async def test_audit_access_is_itself_audited(self, seeded, facade, sink):
        await facade.query_events("u-admin", AuditChannel.IDENTITY, ORG_A)
        [event] = await sink.collect(AuditChannel.DOMAIN, ORG_A)
        assert event.action == "record_read"
        assert event.resource_type == ResourceType.AUDIT_LOG.value
        assert event.resource_id == "identity"

    @pytest.mark.asyncio
    async def test_audit_log_resource_denied_across_tenants(self, seeded, facade):
        resource = TenantResource(resource_type=ResourceType.AUDIT_LOG, organization_id=ORG_B)
        decision = await facade.authorize("u-owner", ORG_B, resource, Operation.READ)
        assert not decision.allowed


class TestAuditAccessRefusal:
    """Refused audit access is a denial, never a read."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entry_point", ["query", "report", "export"])
    async def test_member_refusal_recorded_as_denial(self, seeded, facade, sink, entry_point):
        with pytest.raises(AuthorizationDeniedError) as exc_info:
            if entry_point == "query":
                await facade.query_events("u-member", AuditChannel.DOMAIN, ORG_A)
            elif entry_point == "report":
                await facade.report("u-member", ORG_A)
            else:
                await facade.export_events("u-member", ORG_A, None, None, reason="curious")
        assert exc_info.value.rule == "insufficient-role"

        assert await sink.collect(AuditChannel.DOMAIN, ORG_A) == []
        [event] = await sink.collect(AuditChannel.IDENTITY, ORG_A)
        assert event.action == "access_denied"
        assert event.actor_id == "u-member"
        assert event.resource_type == ResourceType.AUDIT_LOG.value
        assert event.metadata.attributes["rule"] == "insufficient-role"

    @pytest.mark.asyncio
    async def test_billing_only_refusal_leaves_no_read(self, seeded, facade, sink):
        with pytest.raises(AuthorizationDeniedError):
            await facade.query_events("u-billing", AuditChannel.IDENTITY, ORG_A)

        assert await sink.collect(AuditChannel.DOMAIN, ORG_A) == []
        [event] = await sink.collect(AuditChannel.IDENTITY, ORG_A)
        assert event.action == "access_denied"
        assert event.actor_id == "u-billing"
