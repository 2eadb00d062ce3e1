"""Engine configuration via pydantic-settings.

Environment-aware settings that enforce deployment requirements.
Retention windows are operational and legal decisions, so they are
injected here rather than hard-coded in the audit sink.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tenantguard.audit.models import RetentionPolicy


class EngineSettings(BaseSettings):
    """Access engine settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="TENANTGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["production", "staging", "development", "test"] = "development"

    # Storage
    storage_type: Literal["memory", "file", "postgres"] = "memory"
    storage_path: str = "data/tenantguard"

    # Retention (days)
    identity_retention_days: int = 30
    domain_retention_days: int = 2190

    # Deadlines (seconds)
    resolve_timeout_seconds: float = 2.0
    record_timeout_seconds: float = 2.0
    query_timeout_seconds: float = 10.0

    # Query paging
    query_page_size: int = 500

    # Privacy
    redact_sensitive_fields: bool = True
    anonymize_ip_addresses: bool = False

    # Exports
    export_signing_key: SecretStr | None = None

    @model_validator(mode="after")
    def validate_settings(self) -> "EngineSettings":
        """Enforce retention sanity and production requirements."""
        if self.identity_retention_days <= 0 or self.domain_retention_days <= 0:
            raise ValueError("Retention windows must be positive")

        if self.domain_retention_days < self.identity_retention_days:
            raise ValueError(
                "Domain retention must be at least as long as identity retention"
            )

        for name in ("resolve_timeout_seconds", "record_timeout_seconds", "query_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if self.query_page_size <= 0:
            raise ValueError("query_page_size must be positive")

        if self.environment == "production":
            if self.storage_type == "memory":
                raise ValueError(
                    "SECURITY ERROR: In-memory storage is not durable and is "
                    "forbidden in production. Configure file or postgres storage."
                )
            if self.export_signing_key is None:
                raise ValueError(
                    "SECURITY ERROR: Production mode requires an export signing key. "
                    "Set TENANTGUARD_EXPORT_SIGNING_KEY."
                )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def retention_policy(self) -> RetentionPolicy:
        """Get the per-channel retention policy."""
        return RetentionPolicy(
            identity=timedelta(days=self.identity_retention_days),
            domain=timedelta(days=self.domain_retention_days),
        )

    def signing_key_bytes(self) -> bytes | None:
        """Get the export signing key as bytes, if configured."""
        if self.export_signing_key is None:
            return None
        return self.export_signing_key.get_secret_value().encode("utf-8")
