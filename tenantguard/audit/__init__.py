"""Audit package.

Tamper-evident, append-only audit logging over two channels:

- identity: sessions, memberships, denials (short retention, best-effort)
- domain: sensitive record access, payments, mutations (long retention,
  failures escalated)

Features:
- Per-(channel, organization) cryptographic hash chaining
- Chain integrity verification
- PII redaction and IP anonymization
- Lazy, restartable organization-scoped queries
- Retention archival

Usage:
    from tenantguard.audit import AuditSink, AuditChannel, DomainAction

    sink = AuditSink(storage)

    # Record an event
    event_id = await sink.record_event(
        channel=AuditChannel.DOMAIN,
        organization_id="org-a",
        action=DomainAction.WORKFLOW_COMPLETED,
        resource_type="booking",
        resource_id="bk-1",
        actor_id="user-1",
    )

    # Verify chain integrity
    valid, error = await sink.verify_chain(AuditChannel.DOMAIN, "org-a")
"""

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
    IdentityAction,
    RetentionPolicy,
)
from tenantguard.audit.chain import AuditChain
from tenantguard.audit.storage import (
    AuditStorage,
    FileAuditStorage,
    InMemoryAuditStorage,
    PostgresAuditStorage,
    get_audit_storage,
)
from tenantguard.audit.sink import AuditSink

__all__ = [
    "AuditChainStatus",
    "AuditChannel",
    "AuditEvent",
    "AuditEventDraft",
    "AuditFilters",
    "AuditMetadata",
    "AuditPage",
    "AuditQuery",
    "DomainAction",
    "IdentityAction",
    "RetentionPolicy",
    "AuditChain",
    "AuditStorage",
    "FileAuditStorage",
    "InMemoryAuditStorage",
    "PostgresAuditStorage",
    "get_audit_storage",
    "AuditSink",
]
