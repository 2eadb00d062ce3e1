"""Engine assembly from settings."""

from __future__ import annotations

import logging
from typing import Any

from tenantguard.access.facade import AccessControlFacade
from tenantguard.audit.sink import AuditSink
from tenantguard.audit.storage import get_audit_storage
from tenantguard.config import EngineSettings
from tenantguard.monitoring import AlertAdapter, AlertDispatcher
from tenantguard.tenancy.resolver import PrincipalContextResolver
from tenantguard.tenancy.storage import get_tenancy_storage

logger = logging.getLogger(__name__)


def build_access_engine(
    settings: EngineSettings | None = None,
    connection_pool: Any = None,
    alert_adapters: list[AlertAdapter] | None = None,
) -> AccessControlFacade:
    """Wire storage, resolver, sink and facade from settings.

    Args:
        settings: Engine settings (default: loaded from environment)
        connection_pool: asyncpg pool, required for postgres storage
        alert_adapters: Escalation targets (default: logging only)
    """
    settings = settings or EngineSettings()

    tenancy_storage = get_tenancy_storage(
        {"type": settings.storage_type, "path": f"{settings.storage_path}/tenancy"},
        connection_pool,
    )
    audit_storage = get_audit_storage(
        {"type": settings.storage_type, "path": f"{settings.storage_path}/audit"},
        connection_pool,
    )

    sink = AuditSink(
        audit_storage,
        alerts=AlertDispatcher(alert_adapters),
        retention=settings.retention_policy(),
        record_timeout=settings.record_timeout_seconds,
        query_timeout=settings.query_timeout_seconds,
        page_size=settings.query_page_size,
        redact_sensitive=settings.redact_sensitive_fields,
        anonymize_ips=settings.anonymize_ip_addresses,
    )
    resolver = PrincipalContextResolver(
        tenancy_storage, default_timeout=settings.resolve_timeout_seconds
    )

    logger.info(
        "Access engine built: environment=%s storage=%s",
        settings.environment, settings.storage_type,
    )
    return AccessControlFacade(resolver, sink, signing_key=settings.signing_key_bytes())


# Singleton instance
_access_engine: AccessControlFacade | None = None


def get_access_engine() -> AccessControlFacade:
    """Get the process-wide engine, built from environment settings."""
    global _access_engine
    if _access_engine is None:
        _access_engine = build_access_engine()
    return _access_engine


def reset_access_engine() -> None:
    """Drop the process-wide engine (tests, reconfiguration)."""
    global _access_engine
    _access_engine = None
