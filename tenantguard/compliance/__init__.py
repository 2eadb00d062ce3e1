"""Compliance package.

Summaries of an organization's audit trail and self-auditing,
tamper-evident exports.

Usage:
    from tenantguard.compliance import ComplianceReporter

    reporter = ComplianceReporter(facade, sink, signing_key=key)

    manifest, events = await reporter.export(
        "admin-1", "org-a", start, end, reason="Patient records request"
    )
    assert manifest.verify(key)
"""

from tenantguard.compliance.reporter import (
    COMPLIANCE_CATEGORIES,
    ChannelSummary,
    ComplianceReporter,
    ComplianceSummary,
    ExportManifest,
    categorize,
    content_hash,
)

__all__ = [
    "COMPLIANCE_CATEGORIES",
    "ChannelSummary",
    "ComplianceReporter",
    "ComplianceSummary",
    "ExportManifest",
    "categorize",
    "content_hash",
]
