"""Audit sink.

Append-only recording and organization-scoped querying over the two
audit channels:

- identity channel: short retention, best-effort. A failed write is
  logged and the triggering operation continues.
- domain channel: long retention. A failed write is logged at CRITICAL
  and escalated through the alert dispatcher, but still does not block
  the business operation unless the caller asks for a strict write.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, UTC
from typing import Any, AsyncIterator

from tenantguard.audit.chain import AuditChain
from tenantguard.audit.models import (
    AuditChainStatus,
    AuditChannel,
    AuditEvent,
    AuditEventDraft,
    AuditFilters,
    AuditMetadata,
    AuditPage,
    AuditQuery,
    DomainAction,
    RetentionPolicy,
    validate_action,
)
from tenantguard.audit.redaction import anonymize_ip_address, redact_sensitive_fields
from tenantguard.audit.storage import AuditStorage
from tenantguard.errors import (
    AuditWriteFailedError,
    StorageUnavailableError,
    require_identifier,
)
from tenantguard.monitoring import AlertDispatcher, AlertSeverity, OperationalAlert

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:tenantguard"


class AuditSink:
    """Records and queries audit events.

    Usage:
        sink = AuditSink(InMemoryAuditStorage())

        event_id = await sink.record_event(
            channel=AuditChannel.DOMAIN,
            organization_id="org-a",
            action=DomainAction.BOOKING_COMPLETED,
            resource_type="booking",
            resource_id="bk-1",
            actor_id="user-1",
        )

        async for event in sink.query(AuditChannel.DOMAIN, "org-a"):
            ...
    """

    def __init__(
        self,
        storage: AuditStorage,
        alerts: AlertDispatcher | None = None,
        retention: RetentionPolicy | None = None,
        record_timeout: float | None = None,
        query_timeout: float | None = None,
        page_size: int = 500,
        redact_sensitive: bool = True,
        anonymize_ips: bool = False,
    ):
        self.storage = storage
        self.chain = AuditChain(storage)
        self.alerts = alerts or AlertDispatcher()
        self.retention = retention or RetentionPolicy()
        self.record_timeout = record_timeout
        self.query_timeout = query_timeout
        self.page_size = page_size
        self.redact_sensitive = redact_sensitive
        self.anonymize_ips = anonymize_ips

    # =========================================================================
    # Write path
    # =========================================================================

    def _prepare(self, draft: AuditEventDraft) -> AuditEventDraft:
        """Apply privacy rules before the draft is sealed."""
        updates: dict[str, Any] = {}
        if self.redact_sensitive:
            updates["previous_values"] = redact_sensitive_fields(draft.previous_values)
            updates["new_values"] = redact_sensitive_fields(draft.new_values)
            updates["metadata"] = draft.metadata.model_copy(
                update={"attributes": redact_sensitive_fields(draft.metadata.attributes) or {}}
            )
        if self.anonymize_ips and draft.metadata.ip_address:
            metadata = updates.get("metadata", draft.metadata)
            updates["metadata"] = metadata.model_copy(
                update={"ip_address": anonymize_ip_address(metadata.ip_address)}
            )
        return draft.model_copy(update=updates) if updates else draft

    async def record(
        self,
        draft: AuditEventDraft,
        timeout: float | None = None,
        strict: bool = False,
    ) -> str | None:
        """Durably append one event.

        Args:
            draft: Event to record
            timeout: Deadline in seconds (default: sink default)
            strict: Raise AuditWriteFailedError instead of degrading

        Returns:
            The event id, or None if the write failed non-strictly
        """
        require_identifier(draft.organization_id, "organization_id")
        require_identifier(draft.actor_id, "actor_id")
        validate_action(draft.channel, draft.action)

        prepared = self._prepare(draft)
        deadline = timeout if timeout is not None else self.record_timeout

        try:
            event = await asyncio.wait_for(
                self.storage.append(prepared, lambda previous: self.chain.seal(prepared, previous)),
                timeout=deadline,
            )
        except TimeoutError:
            await self._handle_write_failure(prepared, f"timed out after {deadline}s", strict)
            return None
        except Exception as exc:
            await self._handle_write_failure(prepared, str(exc) or type(exc).__name__, strict)
            return None

        logger.debug(
            "Recorded audit event: channel=%s org=%s action=%s id=%s",
            event.channel.value, event.organization_id, event.action, event.event_id,
        )
        return event.event_id

    async def _handle_write_failure(
        self,
        draft: AuditEventDraft,
        reason: str,
        strict: bool,
    ) -> None:
        details = {
            "event_id": draft.event_id,
            "action": draft.action,
            "resource_type": draft.resource_type,
            "resource_id": draft.resource_id,
            "actor_id": draft.actor_id,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        if draft.channel == AuditChannel.DOMAIN:
            logger.critical(
                "[AUDIT FAILURE - CRITICAL] domain write failed: org=%s reason=%s event=%s",
                draft.organization_id, reason, details,
            )
            await self.alerts.dispatch(
                OperationalAlert(
                    code="audit_write_failed",
                    message=f"Domain audit write failed: {reason}",
                    severity=AlertSeverity.CRITICAL,
                    organization_id=draft.organization_id,
                    context=details,
                )
            )
        else:
            logger.warning(
                "[AUDIT FAILURE] identity write failed: org=%s reason=%s event=%s",
                draft.organization_id, reason, details,
            )

        if strict:
            raise AuditWriteFailedError(draft.channel.value, draft.organization_id, reason)

    async def record_event(
        self,
        channel: AuditChannel,
        organization_id: str,
        action: str | DomainAction,
        resource_type: str | None,
        resource_id: str | None,
        actor_id: str,
        metadata: dict[str, Any] | AuditMetadata | None = None,
        previous_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        timeout: float | None = None,
        strict: bool = False,
    ) -> str | None:
        """Explicit audit-write path for events not tied to one decision.

        ``metadata`` may be an AuditMetadata or a plain dict; in a dict
        the keys ``ip_address``, ``user_agent`` and ``correlation_id`` are
        lifted into their fields and the rest become free-form attributes.
        """
        draft = AuditEventDraft(
            channel=channel,
            organization_id=organization_id,
            actor_id=actor_id,
            action=validate_action(channel, action),
            resource_type=resource_type,
            resource_id=resource_id,
            previous_values=previous_values,
            new_values=new_values,
            metadata=build_metadata(metadata),
        )
        return await self.record(draft, timeout=timeout, strict=strict)

    # =========================================================================
    # Read path
    # =========================================================================

    async def query_page(
        self,
        channel: AuditChannel,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        filters: AuditFilters | None = None,
        after_sequence: int = 0,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> AuditPage:
        """Fetch one page of events from a single organization's chain.

        Raises:
            StorageUnavailableError: If the store fails or the deadline passes
        """
        require_identifier(organization_id, "organization_id")
        query = AuditQuery(
            channel=channel,
            organization_id=organization_id,
            start_time=start_time,
            end_time=end_time,
            filters=filters or AuditFilters(),
            after_sequence=after_sequence,
            limit=limit or self.page_size,
        )
        deadline = timeout if timeout is not None else self.query_timeout

        try:
            events = await asyncio.wait_for(self.storage.fetch(query), timeout=deadline)
        except TimeoutError as exc:
            raise StorageUnavailableError("query", f"timed out after {deadline}s") from exc
        except Exception as exc:
            logger.error(
                "Audit query failed: channel=%s org=%s error=%s",
                channel.value, organization_id, exc,
            )
            raise StorageUnavailableError("query", str(exc)) from exc

        next_cursor = events[-1].sequence_number if len(events) >= query.limit else None
        return AuditPage(events=events, next_cursor=next_cursor)

    async def query(
        self,
        channel: AuditChannel,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        filters: AuditFilters | None = None,
        after_sequence: int = 0,
        timeout: float | None = None,
    ) -> AsyncIterator[AuditEvent]:
        """Lazily iterate matching events in ascending timestamp order.

        Pages are fetched on demand. To restart after an interruption,
        pass the last seen event's ``sequence_number`` as ``after_sequence``.
        """
        cursor = after_sequence
        while True:
            page = await self.query_page(
                channel,
                organization_id,
                start_time=start_time,
                end_time=end_time,
                filters=filters,
                after_sequence=cursor,
                timeout=timeout,
            )
            for event in page.events:
                yield event
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    async def collect(
        self,
        channel: AuditChannel,
        organization_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        filters: AuditFilters | None = None,
    ) -> list[AuditEvent]:
        """Materialize a query into a list."""
        return [
            event async for event in self.query(
                channel, organization_id, start_time, end_time, filters
            )
        ]

    async def resource_trail(
        self,
        channel: AuditChannel,
        organization_id: str,
        resource_type: str,
        resource_id: str,
    ) -> list[AuditEvent]:
        """All events touching one resource (activity history)."""
        return await self.collect(
            channel,
            organization_id,
            filters=AuditFilters(resource_type=resource_type, resource_id=resource_id),
        )

    async def actor_trail(
        self,
        channel: AuditChannel,
        organization_id: str,
        actor_id: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[AuditEvent]:
        """All events by one principal within an organization."""
        return await self.collect(
            channel,
            organization_id,
            start_time=start_time,
            end_time=end_time,
            filters=AuditFilters(actor_id=actor_id),
        )

    # =========================================================================
    # Retention
    # =========================================================================

    async def apply_retention(
        self,
        channel: AuditChannel,
        organization_id: str,
        now: datetime | None = None,
    ) -> int:
        """Archive events older than the channel's retention window.

        The archival itself is recorded on the domain channel.

        Returns:
            Number of events archived
        """
        now = now or datetime.now(UTC)
        cutoff = self.retention.cutoff(channel, now)
        archived = await self.storage.archive_before(channel, organization_id, cutoff)

        if archived:
            logger.info(
                "Retention applied: channel=%s org=%s archived=%d cutoff=%s",
                channel.value, organization_id, archived, cutoff.isoformat(),
            )
            await self.record_event(
                channel=AuditChannel.DOMAIN,
                organization_id=organization_id,
                action=DomainAction.RETENTION_APPLIED,
                resource_type="audit-log",
                resource_id=channel.value,
                actor_id=SYSTEM_ACTOR,
                metadata={"archived": archived, "cutoff": cutoff.isoformat()},
            )
        return archived

    # =========================================================================
    # Integrity
    # =========================================================================

    async def verify_chain(
        self,
        channel: AuditChannel,
        organization_id: str,
    ) -> tuple[bool, str | None]:
        """Verify one organization's chain on a channel."""
        return await self.chain.verify_chain(channel, organization_id)

    async def chain_status(
        self,
        channel: AuditChannel,
        organization_id: str,
    ) -> AuditChainStatus:
        return await self.chain.get_chain_status(channel, organization_id)


def build_metadata(metadata: dict[str, Any] | AuditMetadata | None) -> AuditMetadata:
    """Normalize caller-supplied metadata."""
    if metadata is None:
        return AuditMetadata()
    if isinstance(metadata, AuditMetadata):
        return metadata

    attributes = dict(metadata)
    return AuditMetadata(
        ip_address=attributes.pop("ip_address", None),
        user_agent=attributes.pop("user_agent", None),
        correlation_id=attributes.pop("correlation_id", None),
        attributes=attributes,
    )
