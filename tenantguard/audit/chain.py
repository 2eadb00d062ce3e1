"""Audit hash chain implementation.

Provides tamper-evident audit logging through cryptographic hash chaining.
Each record links to its predecessor within the same channel and
organization, forming an immutable chain per tenant.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, UTC
from typing import Any

from tenantguard.audit.models import (
    AuditChainStatus,
    AuditChannel,
    AuditEvent,
    AuditEventDraft,
)
from tenantguard.audit.storage import AuditStorage

logger = logging.getLogger(__name__)


def canonical_json(content: Any) -> str:
    """Canonical JSON serialization (sorted keys, no whitespace)."""
    return json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)


class AuditChain:
    """Seals drafts into chained records and verifies chains.

    Usage:
        chain = AuditChain(storage)

        valid, error = await chain.verify_chain(AuditChannel.DOMAIN, "org-123")
    """

    HASH_ALGORITHM = "sha256"

    def __init__(self, storage: AuditStorage):
        """Initialize audit chain with storage backend."""
        self.storage = storage

    def compute_record_hash(self, record: AuditEvent) -> str:
        """Compute SHA-256 over the record's canonical JSON.

        Includes previous_hash to form the chain.
        """
        canonical = canonical_json(record.to_hash_content())
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def seal(
        self,
        draft: AuditEventDraft,
        previous: AuditEvent | None,
        now: datetime | None = None,
    ) -> AuditEvent:
        """Turn a draft into the next record of its chain.

        Assigns the sequence number, links the previous hash, and clamps
        the timestamp so it never goes backwards within the chain.
        """
        timestamp = now or datetime.now(UTC)
        if previous is not None and timestamp < previous.timestamp:
            timestamp = previous.timestamp

        unsealed = AuditEvent(
            event_id=draft.event_id,
            channel=draft.channel,
            sequence_number=previous.sequence_number + 1 if previous else 1,
            organization_id=draft.organization_id,
            actor_id=draft.actor_id,
            action=draft.action,
            resource_type=draft.resource_type,
            resource_id=draft.resource_id,
            previous_values=draft.previous_values,
            new_values=draft.new_values,
            metadata=draft.metadata,
            timestamp=timestamp,
            previous_hash=previous.record_hash if previous else "",
        )
        return unsealed.model_copy(update={"record_hash": self.compute_record_hash(unsealed)})

    async def verify_chain(
        self,
        channel: AuditChannel,
        organization_id: str,
    ) -> tuple[bool, str | None]:
        """Verify integrity of one audit chain.

        Walks the chain and validates:
        1. Each record's hash matches its content
        2. Each record's previous_hash matches the prior record
        3. Sequence numbers are continuous

        After retention archival the first live record is trusted as the
        anchor; only a chain starting at sequence 1 must have an empty
        previous_hash.

        Returns:
            Tuple of (is_valid, error_message)
        """
        records = await self.storage.get_all(channel, organization_id)

        if not records:
            return True, None  # Empty chain is valid

        records.sort(key=lambda r: r.sequence_number)

        first = records[0]
        if first.sequence_number == 1 and first.previous_hash != "":
            return False, "Genesis record (seq=1) has non-empty previous_hash"

        previous: AuditEvent | None = None
        for record in records:
            if previous is not None:
                if record.sequence_number != previous.sequence_number + 1:
                    return False, (
                        f"Sequence gap: expected {previous.sequence_number + 1}, "
                        f"got {record.sequence_number}"
                    )
                if record.previous_hash != previous.record_hash:
                    return False, (
                        f"Chain break at sequence {record.sequence_number}: "
                        f"previous_hash mismatch"
                    )

            computed = self.compute_record_hash(record)
            if computed != record.record_hash:
                return False, (
                    f"Hash mismatch at sequence {record.sequence_number}: "
                    f"tampering detected"
                )
            previous = record

        logger.info(
            "Chain verification passed: channel=%s org=%s records=%d",
            channel.value,
            organization_id,
            len(records),
        )
        return True, None

    async def get_chain_status(
        self,
        channel: AuditChannel,
        organization_id: str,
    ) -> AuditChainStatus:
        """Get current status of one audit chain."""
        count = await self.storage.count(channel, organization_id)
        latest = await self.storage.get_latest(channel, organization_id)
        valid, error = await self.verify_chain(channel, organization_id)

        if not valid:
            logger.critical(
                "Audit chain verification FAILED: channel=%s org=%s error=%s",
                channel.value, organization_id, error,
            )

        return AuditChainStatus(
            channel=channel,
            organization_id=organization_id,
            total_records=count,
            last_event_id=latest.event_id if latest else None,
            last_sequence=latest.sequence_number if latest else 0,
            last_timestamp=latest.timestamp if latest else None,
            chain_valid=valid,
            last_verified_at=datetime.now(UTC),
            error_message=error,
        )
