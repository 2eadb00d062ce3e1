"""Audit data models.

Immutable audit events with per-(channel, organization) hash chaining
for tamper-evident logging.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_core import to_jsonable_python

from tenantguard.ids import new_event_id


class AuditChannel(str, Enum):
    """Logical audit channels with independent retention."""

    IDENTITY = "identity"
    DOMAIN = "domain"


class IdentityAction(str, Enum):
    """Session, membership and authentication-adjacent events."""

    # Sessions
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    AUTHENTICATION_FAILED = "authentication_failed"

    # Authorization
    ACCESS_DENIED = "access_denied"

    # Membership lifecycle
    MEMBER_ADDED = "member_added"
    MEMBER_INVITED = "member_invited"
    INVITATION_ACCEPTED = "invitation_accepted"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    MEMBER_SUSPENDED = "member_suspended"
    MEMBER_REACTIVATED = "member_reactivated"

    # Organization lifecycle
    ORGANIZATION_CREATED = "organization_created"
    ORGANIZATION_SUSPENDED = "organization_suspended"
    ORGANIZATION_REACTIVATED = "organization_reactivated"


class DomainAction(str, Enum):
    """Sensitive business record access, payments and mutations."""

    # Record access through authorization
    RECORD_READ = "record_read"
    RECORD_WRITTEN = "record_written"
    RECORD_DELETED = "record_deleted"

    # Sensitive records
    SENSITIVE_RECORD_CREATED = "sensitive_record_created"
    SENSITIVE_RECORD_UPDATED = "sensitive_record_updated"
    SENSITIVE_RECORD_EXPORTED = "sensitive_record_exported"

    # Bookings
    BOOKING_CREATED = "booking_created"
    BOOKING_UPDATED = "booking_updated"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"

    # Payments
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    TRANSFER_COMPLETED = "transfer_completed"

    # Workflows
    WORKFLOW_COMPLETED = "workflow_completed"

    # Organization
    ORGANIZATION_DELETED = "organization_deleted"

    # Security
    SECURITY_ALERT = "security_alert"

    # Compliance (reserved)
    EXPORT = "export"
    REPORT_GENERATED = "report_generated"
    RETENTION_APPLIED = "retention_applied"


CHANNEL_ACTIONS: dict[AuditChannel, frozenset[str]] = {
    AuditChannel.IDENTITY: frozenset(a.value for a in IdentityAction),
    AuditChannel.DOMAIN: frozenset(a.value for a in DomainAction),
}


def validate_action(channel: AuditChannel, action: str | Enum) -> str:
    """Check an action against the channel's closed vocabulary."""
    value = action.value if isinstance(action, Enum) else action
    if value not in CHANNEL_ACTIONS[channel]:
        raise ValueError(f"Action '{value}' is not valid on the {channel.value} channel")
    return value


class AuditMetadata(BaseModel):
    """Contextual metadata captured with an event."""

    model_config = {"frozen": True}

    ip_address: str | None = Field(default=None, description="Caller IP address")
    user_agent: str | None = Field(default=None, description="Caller user agent")
    correlation_id: str | None = Field(
        default=None,
        description="Request correlation ID for tracing"
    )
    attributes: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form key/value pairs"
    )

    @field_validator("attributes", mode="after")
    @classmethod
    def normalize_attributes(cls, value: dict[str, Any]) -> dict[str, Any]:
        return to_jsonable_python(value)


class AuditEventDraft(BaseModel):
    """An event as submitted, before the sink assigns chain fields."""

    event_id: str = Field(default_factory=new_event_id)
    channel: AuditChannel
    organization_id: str
    actor_id: str
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    previous_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)

    @field_validator("previous_values", "new_values", mode="after")
    @classmethod
    def normalize_snapshot(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        # Hash input must survive a JSON round-trip unchanged
        return to_jsonable_python(value) if value is not None else None


class AuditEvent(BaseModel):
    """Tamper-evident, immutable audit record.

    Chain integrity:
    - ``record_hash`` is computed from the record contents + ``previous_hash``
    - ``previous_hash`` links to the prior record of the same channel and
      organization
    - Genesis record has empty ``previous_hash``
    """

    model_config = {"frozen": True}

    # Identity
    event_id: str = Field(description="Time-ordered UUIDv7")
    channel: AuditChannel = Field(description="identity or domain")
    sequence_number: int = Field(
        description="Monotonically increasing sequence within channel and organization"
    )
    organization_id: str = Field(description="Organization this event belongs to")

    # Event details
    actor_id: str = Field(description="Acting principal")
    action: str = Field(description="Action from the channel vocabulary")
    resource_type: str | None = Field(default=None)
    resource_id: str | None = Field(default=None)
    previous_values: dict[str, Any] | None = Field(
        default=None,
        description="Snapshot before the change"
    )
    new_values: dict[str, Any] | None = Field(
        default=None,
        description="Snapshot after the change"
    )
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)

    # Timing (server-assigned, non-decreasing per chain)
    timestamp: datetime

    # Chain integrity
    previous_hash: str = Field(default="")
    record_hash: str = Field(default="")

    def to_hash_content(self) -> dict[str, Any]:
        """Deterministic dictionary of fields to hash.

        Excludes ``record_hash`` as that's what we're computing.
        """
        return {
            "event_id": self.event_id,
            "channel": self.channel.value,
            "sequence_number": self.sequence_number,
            "organization_id": self.organization_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "previous_values": self.previous_values,
            "new_values": self.new_values,
            "metadata": self.metadata.model_dump(mode="json"),
            "timestamp": self.timestamp.isoformat(),
            "previous_hash": self.previous_hash,
        }


class AuditFilters(BaseModel):
    """Optional filters for audit queries."""

    actions: list[str] | None = None
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None

    def matches(self, event: AuditEvent) -> bool:
        if self.actions and event.action not in self.actions:
            return False
        if self.actor_id and event.actor_id != self.actor_id:
            return False
        if self.resource_type and event.resource_type != self.resource_type:
            return False
        if self.resource_id and event.resource_id != self.resource_id:
            return False
        return True


class AuditQuery(BaseModel):
    """Storage-level query for one channel and organization."""

    channel: AuditChannel
    organization_id: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    filters: AuditFilters = Field(default_factory=AuditFilters)
    after_sequence: int = Field(default=0, ge=0, description="Resume cursor")
    limit: int = Field(default=500, ge=1)

    def matches(self, event: AuditEvent) -> bool:
        if event.sequence_number <= self.after_sequence:
            return False
        if self.start_time and event.timestamp < self.start_time:
            return False
        if self.end_time and event.timestamp > self.end_time:
            return False
        return self.filters.matches(event)


class AuditPage(BaseModel):
    """One page of query results."""

    events: list[AuditEvent]
    next_cursor: int | None = Field(
        default=None,
        description="Pass as after_sequence to continue; None when exhausted"
    )


class AuditChainStatus(BaseModel):
    """Status of one audit chain."""

    channel: AuditChannel
    organization_id: str
    total_records: int
    last_event_id: str | None
    last_sequence: int
    last_timestamp: datetime | None
    chain_valid: bool
    last_verified_at: datetime | None
    error_message: str | None = None


class RetentionPolicy(BaseModel):
    """Per-channel retention windows."""

    identity: timedelta = Field(default=timedelta(days=30))
    domain: timedelta = Field(default=timedelta(days=2190))

    def window(self, channel: AuditChannel) -> timedelta:
        return self.identity if channel == AuditChannel.IDENTITY else self.domain

    def cutoff(self, channel: AuditChannel, now: datetime) -> datetime:
        """Events strictly older than the cutoff are outside retention."""
        return now - self.window(channel)
