"""Tests for the audit sink, hash chain, storage backends and retention."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, UTC

import pytest

from tenantguard.audit.chain import AuditChain
from tenantguard.audit.models import (
    AuditChannel,
    AuditEventDraft,
    AuditFilters,
    DomainAction,
    IdentityAction,
    RetentionPolicy,
)
from tenantguard.audit.redaction import REDACTED, anonymize_ip_address, redact_sensitive_fields
from tenantguard.audit.sink import AuditSink
from tenantguard.audit.storage import FileAuditStorage, InMemoryAuditStorage
from tenantguard.errors import AppendOnlyViolationError, AuditWriteFailedError
from tenantguard.ids import uuid7
from tenantguard.monitoring import AlertDispatcher

from conftest import FailingAuditStorage, RecordingAlertAdapter


class SlowAuditStorage(InMemoryAuditStorage):
    async def append(self, draft, seal):
        await asyncio.sleep(1)
        return await super().append(draft, seal)


async def record_booking(sink, org="org-a", actor="u1", resource_id="bk-1", **kwargs):
    return await sink.record_event(
        channel=AuditChannel.DOMAIN,
        organization_id=org,
        action=DomainAction.BOOKING_COMPLETED,
        resource_type="booking",
        resource_id=resource_id,
        actor_id=actor,
        **kwargs,
    )


class TestEventIds:
    """Test time-ordered identifiers."""

    def test_uuid7_version_and_order(self):
        ids = [uuid7() for _ in range(1000)]
        assert all(u.version == 7 for u in ids)
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)


class TestAuditSinkRecord:
    """Test recording events."""

    @pytest.mark.asyncio
    async def test_record_and_read_back(self, sink):
        """A successful record is readable by the next query."""
        event_id = await record_booking(sink, metadata={"ip_address": "10.0.0.1", "step": 3})

        [event] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert event.event_id == event_id
        assert event.sequence_number == 1
        assert event.previous_hash == ""
        assert event.record_hash
        assert event.metadata.ip_address == "10.0.0.1"
        assert event.metadata.attributes == {"step": 3}

    @pytest.mark.asyncio
    async def test_action_must_match_channel(self, sink):
        with pytest.raises(ValueError):
            await sink.record_event(
                channel=AuditChannel.IDENTITY,
                organization_id="org-a",
                action=DomainAction.PAYMENT_COMPLETED,
                resource_type="payment",
                resource_id="p1",
                actor_id="u1",
            )

    @pytest.mark.asyncio
    async def test_sequence_and_links(self, sink):
        for i in range(5):
            await record_booking(sink, resource_id=f"bk-{i}")

        events = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert [e.sequence_number for e in events] == [1, 2, 3, 4, 5]
        for previous, current in zip(events, events[1:]):
            assert current.previous_hash == previous.record_hash
            assert current.timestamp >= previous.timestamp

    @pytest.mark.asyncio
    async def test_channels_are_independent_chains(self, sink):
        await record_booking(sink)
        await sink.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id="org-a",
            action=IdentityAction.SESSION_STARTED,
            resource_type=None,
            resource_id=None,
            actor_id="u1",
        )
        [identity] = await sink.collect(AuditChannel.IDENTITY, "org-a")
        assert identity.sequence_number == 1

    @pytest.mark.asyncio
    async def test_snapshots_are_redacted(self, sink):
        await record_booking(
            sink,
            previous_values={"status": "pending", "guest_email": "a@b.c"},
            new_values={"status": "done", "contact": {"phone_number": "555"}},
        )
        [event] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert event.previous_values == {"status": "pending", "guest_email": REDACTED}
        assert event.new_values == {"status": "done", "contact": {"phone_number": REDACTED}}

    @pytest.mark.asyncio
    async def test_ip_anonymization(self, audit_storage):
        sink = AuditSink(audit_storage, anonymize_ips=True)
        await record_booking(sink, metadata={"ip_address": "192.168.1.100"})
        [event] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert event.metadata.ip_address == "192.168.1.0"

    @pytest.mark.asyncio
    async def test_datetime_snapshots_keep_valid_hashes(self, sink):
        """Snapshot values are normalized before hashing."""
        await record_booking(sink, new_values={"starts_at": datetime(2026, 1, 5, 9, tzinfo=UTC)})
        valid, error = await sink.verify_chain(AuditChannel.DOMAIN, "org-a")
        assert valid, error


class TestAuditWriteFailures:
    """Test failure handling on both channels."""

    @pytest.mark.asyncio
    async def test_identity_failure_is_logged_not_escalated(self, caplog):
        recorder = RecordingAlertAdapter()
        sink = AuditSink(FailingAuditStorage(), alerts=AlertDispatcher([recorder]))

        with caplog.at_level(logging.WARNING):
            result = await sink.record_event(
                channel=AuditChannel.IDENTITY,
                organization_id="org-a",
                action=IdentityAction.SESSION_STARTED,
                resource_type=None,
                resource_id=None,
                actor_id="u1",
            )

        assert result is None
        assert recorder.alerts == []
        assert any("identity write failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_domain_failure_is_escalated(self, caplog):
        recorder = RecordingAlertAdapter()
        sink = AuditSink(FailingAuditStorage(), alerts=AlertDispatcher([recorder]))

        with caplog.at_level(logging.CRITICAL):
            result = await record_booking(sink)

        assert result is None
        [alert] = recorder.alerts
        assert alert.code == "audit_write_failed"
        assert alert.organization_id == "org-a"
        assert alert.context["action"] == "booking_completed"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_timeout_takes_escalation_path(self):
        """A record deadline miss is escalated, never silently dropped."""
        recorder = RecordingAlertAdapter()
        sink = AuditSink(SlowAuditStorage(), alerts=AlertDispatcher([recorder]))

        result = await record_booking(sink, timeout=0.01)

        assert result is None
        assert len(recorder.alerts) == 1
        assert "timed out" in recorder.alerts[0].message

    @pytest.mark.asyncio
    async def test_strict_write_raises(self):
        sink = AuditSink(FailingAuditStorage(), alerts=AlertDispatcher([RecordingAlertAdapter()]))
        with pytest.raises(AuditWriteFailedError) as exc_info:
            await record_booking(sink, strict=True)
        assert exc_info.value.channel == "domain"
        assert exc_info.value.organization_id == "org-a"

    @pytest.mark.asyncio
    async def test_broken_alert_adapter_does_not_propagate(self):
        class BrokenAdapter(RecordingAlertAdapter):
            async def send(self, alert):
                raise RuntimeError("pager down")

        recorder = RecordingAlertAdapter()
        dispatcher = AlertDispatcher([BrokenAdapter(), recorder])
        sink = AuditSink(FailingAuditStorage(), alerts=dispatcher)

        assert await record_booking(sink) is None
        assert len(recorder.alerts) == 1


class TestAuditQuery:
    """Test querying."""

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, sink):
        await record_booking(sink, org="org-a")
        await record_booking(sink, org="org-b")

        events_a = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert len(events_a) == 1
        assert all(e.organization_id == "org-a" for e in events_a)

    @pytest.mark.asyncio
    async def test_concurrent_writers_across_organizations(self, sink):
        """Interleaved writers never leak into each other's chains."""
        await asyncio.gather(*[
            record_booking(sink, org=f"org-{i % 3}", resource_id=f"bk-{i}")
            for i in range(30)
        ])
        for n in range(3):
            org = f"org-{n}"
            events = await sink.collect(AuditChannel.DOMAIN, org)
            assert len(events) == 10
            assert {e.organization_id for e in events} == {org}
            assert [e.sequence_number for e in events] == list(range(1, 11))
            valid, error = await sink.verify_chain(AuditChannel.DOMAIN, org)
            assert valid, error

    @pytest.mark.asyncio
    async def test_lazy_paging_is_restartable(self, audit_storage):
        sink = AuditSink(audit_storage, page_size=3)
        for i in range(7):
            await record_booking(sink, resource_id=f"bk-{i}")

        page = await sink.query_page(AuditChannel.DOMAIN, "org-a")
        assert len(page.events) == 3
        assert page.next_cursor == 3

        seen = []
        async for event in sink.query(AuditChannel.DOMAIN, "org-a"):
            seen.append(event)
            if len(seen) == 4:
                break

        resumed = [
            e async for e in sink.query(
                AuditChannel.DOMAIN, "org-a", after_sequence=seen[-1].sequence_number
            )
        ]
        assert [e.sequence_number for e in seen + resumed] == list(range(1, 8))

    @pytest.mark.asyncio
    async def test_time_range_and_filters(self, sink):
        await record_booking(sink, actor="u1", resource_id="bk-1")
        await record_booking(sink, actor="u2", resource_id="bk-2")
        await sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id="org-a",
            action=DomainAction.PAYMENT_COMPLETED,
            resource_type="financial-transfer",
            resource_id="tx-1",
            actor_id="u1",
        )

        payments = await sink.collect(
            AuditChannel.DOMAIN, "org-a", filters=AuditFilters(actions=["payment_completed"])
        )
        assert [e.resource_id for e in payments] == ["tx-1"]

        assert len(await sink.actor_trail(AuditChannel.DOMAIN, "org-a", "u1")) == 2
        trail = await sink.resource_trail(AuditChannel.DOMAIN, "org-a", "booking", "bk-2")
        assert [e.actor_id for e in trail] == ["u2"]

        future = datetime.now(UTC) + timedelta(days=1)
        assert await sink.collect(AuditChannel.DOMAIN, "org-a", start_time=future) == []

    @pytest.mark.asyncio
    async def test_returned_events_cannot_alter_storage(self, sink):
        """Mutating a query result never changes what is stored."""
        await record_booking(sink, new_values={"status": "done"})
        [event] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        event.new_values["status"] = "tampered"

        [again] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert again.new_values == {"status": "done"}


class TestAuditChain:
    """Test hash chain verification."""

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, sink):
        assert await sink.verify_chain(AuditChannel.DOMAIN, "org-empty") == (True, None)

    @pytest.mark.asyncio
    async def test_file_chain_detects_tampering(self, tmp_path):
        """Editing a stored line breaks verification."""
        storage = FileAuditStorage(tmp_path)
        sink = AuditSink(storage)
        for i in range(3):
            await record_booking(sink, resource_id=f"bk-{i}")

        valid, _ = await sink.verify_chain(AuditChannel.DOMAIN, "org-a")
        assert valid

        file_path = storage._chain_file(AuditChannel.DOMAIN, "org-a")
        lines = file_path.read_text().splitlines()
        record = json.loads(lines[1])
        record["actor_id"] = "attacker"
        lines[1] = json.dumps(record)
        file_path.write_text("\n".join(lines) + "\n")

        valid, error = await sink.verify_chain(AuditChannel.DOMAIN, "org-a")
        assert not valid
        assert "sequence 2" in error

        status = await sink.chain_status(AuditChannel.DOMAIN, "org-a")
        assert not status.chain_valid
        assert status.total_records == 3

    @pytest.mark.asyncio
    async def test_file_storage_survives_reopen(self, tmp_path):
        await record_booking(AuditSink(FileAuditStorage(tmp_path)))
        sink = AuditSink(FileAuditStorage(tmp_path))
        await record_booking(sink)

        events = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert [e.sequence_number for e in events] == [1, 2]
        assert (await sink.verify_chain(AuditChannel.DOMAIN, "org-a"))[0]

    def test_timestamps_never_go_backwards(self):
        chain = AuditChain(InMemoryAuditStorage())
        draft = AuditEventDraft(
            channel=AuditChannel.DOMAIN, organization_id="org-a",
            actor_id="u1", action="booking_completed",
        )
        later = datetime(2026, 1, 2, tzinfo=UTC)
        first = chain.seal(draft, None, now=later)
        second = chain.seal(draft.model_copy(update={"event_id": "x"}), first,
                            now=later - timedelta(hours=1))
        assert second.timestamp == first.timestamp
        assert second.sequence_number == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "file"])
    async def test_duplicate_event_id_rejected(self, backend, tmp_path):
        """Both backends refuse to store an event id twice."""
        storage = InMemoryAuditStorage() if backend == "memory" else FileAuditStorage(tmp_path)
        chain = AuditChain(storage)
        draft = AuditEventDraft(
            channel=AuditChannel.DOMAIN, organization_id="org-a",
            actor_id="u1", action="booking_completed",
        )
        await storage.append(draft, lambda prev: chain.seal(draft, prev))
        with pytest.raises(AppendOnlyViolationError):
            await storage.append(draft, lambda prev: chain.seal(draft, prev))
        assert await storage.count(AuditChannel.DOMAIN, "org-a") == 1

    @pytest.mark.asyncio
    async def test_file_duplicate_of_archived_event_rejected(self, tmp_path):
        storage = FileAuditStorage(tmp_path)
        chain = AuditChain(storage)
        draft = AuditEventDraft(
            channel=AuditChannel.DOMAIN, organization_id="org-a",
            actor_id="u1", action="booking_completed",
        )
        await storage.append(draft, lambda prev: chain.seal(draft, prev))
        await storage.archive_before(
            AuditChannel.DOMAIN, "org-a", datetime.now(UTC) + timedelta(days=1)
        )
        with pytest.raises(AppendOnlyViolationError):
            await storage.append(draft, lambda prev: chain.seal(draft, prev))


class TestRetention:
    """Test retention archival."""

    @pytest.mark.asyncio
    async def test_apply_retention_archives_old_events(self, audit_storage):
        sink = AuditSink(
            audit_storage,
            retention=RetentionPolicy(identity=timedelta(days=30), domain=timedelta(days=365)),
        )
        for _ in range(3):
            await sink.record_event(
                channel=AuditChannel.IDENTITY,
                organization_id="org-a",
                action=IdentityAction.SESSION_STARTED,
                resource_type=None,
                resource_id=None,
                actor_id="u1",
            )

        # Nothing is old enough yet
        assert await sink.apply_retention(AuditChannel.IDENTITY, "org-a") == 0

        archived = await sink.apply_retention(
            AuditChannel.IDENTITY, "org-a", now=datetime.now(UTC) + timedelta(days=31)
        )
        assert archived == 3
        assert await sink.collect(AuditChannel.IDENTITY, "org-a") == []
        assert len(await audit_storage.get_archived(AuditChannel.IDENTITY, "org-a")) == 3

        [purge] = await sink.collect(AuditChannel.DOMAIN, "org-a")
        assert purge.action == "retention_applied"
        assert purge.metadata.attributes["archived"] == 3

    @pytest.mark.asyncio
    async def test_chain_continues_after_archival(self, audit_storage):
        sink = AuditSink(audit_storage, retention=RetentionPolicy(identity=timedelta(days=1)))

        async def session():
            await sink.record_event(
                channel=AuditChannel.IDENTITY,
                organization_id="org-a",
                action=IdentityAction.SESSION_STARTED,
                resource_type=None,
                resource_id=None,
                actor_id="u1",
            )

        await session()
        await session()
        await sink.apply_retention(
            AuditChannel.IDENTITY, "org-a", now=datetime.now(UTC) + timedelta(days=2)
        )
        await session()

        [event] = await sink.collect(AuditChannel.IDENTITY, "org-a")
        assert event.sequence_number == 3
        assert (await sink.verify_chain(AuditChannel.IDENTITY, "org-a")) == (True, None)

    @pytest.mark.asyncio
    async def test_file_storage_archival(self, tmp_path):
        storage = FileAuditStorage(tmp_path)
        sink = AuditSink(storage, retention=RetentionPolicy(identity=timedelta(days=1)))
        await sink.record_event(
            channel=AuditChannel.IDENTITY,
            organization_id="org-a",
            action=IdentityAction.SESSION_ENDED,
            resource_type=None,
            resource_id=None,
            actor_id="u1",
        )
        archived = await sink.apply_retention(
            AuditChannel.IDENTITY, "org-a", now=datetime.now(UTC) + timedelta(days=2)
        )
        assert archived == 1
        assert await storage.count(AuditChannel.IDENTITY, "org-a") == 0
        assert len(await storage.get_archived(AuditChannel.IDENTITY, "org-a")) == 1

    def test_policy_windows(self):
        policy = RetentionPolicy()
        now = datetime(2026, 6, 1, tzinfo=UTC)
        assert policy.cutoff(AuditChannel.IDENTITY, now) == now - timedelta(days=30)
        assert policy.window(AuditChannel.DOMAIN) == timedelta(days=2190)


class TestRedaction:
    """Test PII minimisation helpers."""

    def test_redacts_nested_keys(self):
        values = {"email": "x@y.z", "profile": {"homeAddress": "1 Main", "city": "Oslo"}}
        assert redact_sensitive_fields(values) == {
            "email": REDACTED,
            "profile": {"homeAddress": REDACTED, "city": "Oslo"},
        }
        # Original untouched
        assert values["email"] == "x@y.z"

    def test_ip_address_key_not_redacted(self):
        assert redact_sensitive_fields({"ip_address": "1.2.3.4"}) == {"ip_address": "1.2.3.4"}

    def test_none_passthrough(self):
        assert redact_sensitive_fields(None) is None

    @pytest.mark.parametrize("ip,expected", [
        ("192.168.1.100", "192.168.1.0"),
        ("2001:0db8:85a3:0000:0000:8a2e:0370:7334", "2001:db8:85a3::"),
        ("not-an-ip", "unknown"),
        (None, None),
    ])
    def test_anonymize_ip(self, ip, expected):
        assert anonymize_ip_address(ip) == expected
