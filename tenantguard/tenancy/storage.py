"""Tenancy storage backends.

Membership reads must reflect the most recently committed state and
are never cached across requests. Memberships are upserted on role or
status change and are never deleted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from tenantguard.tenancy.models import (
    Membership,
    MembershipRole,
    MembershipStatus,
    Organization,
    OrganizationKind,
    OrganizationState,
)

logger = logging.getLogger(__name__)


async def set_tenant_context(conn: Any, organization_id: str) -> None:
    """Scope row-level security to one organization.

    Transaction-scoped, so it must run inside ``conn.transaction()``.
    SET LOCAL takes no bind parameters; ``set_config(..., true)`` is the
    parameterized equivalent.

    Args:
        conn: asyncpg connection
        organization_id: Tenant organization ID
    """
    await conn.execute("SELECT set_config('app.org_id', $1, true)", organization_id)


class TenancyStorage(Protocol):
    """Protocol for organization and membership storage."""

    async def get_membership(self, subject_id: str, organization_id: str) -> Membership | None:
        """Get the membership for a subject in an organization."""
        ...

    async def save_membership(self, membership: Membership) -> None:
        """Insert or update a membership."""
        ...

    async def list_memberships(self, organization_id: str) -> list[Membership]:
        """List all memberships of an organization."""
        ...

    async def list_subject_memberships(self, subject_id: str) -> list[Membership]:
        """List all memberships held by a subject."""
        ...

    async def get_organization(self, organization_id: str) -> Organization | None:
        """Get an organization by ID."""
        ...

    async def save_organization(self, organization: Organization) -> None:
        """Insert or update an organization."""
        ...


class InMemoryTenancyStorage:
    """In-process storage for tests and single-process development.

    Returns copies so callers can never mutate committed state.
    """

    def __init__(self) -> None:
        self._memberships: dict[tuple[str, str], Membership] = {}
        self._organizations: dict[str, Organization] = {}

    async def get_membership(self, subject_id: str, organization_id: str) -> Membership | None:
        membership = self._memberships.get((subject_id, organization_id))
        return membership.model_copy() if membership else None

    async def save_membership(self, membership: Membership) -> None:
        self._memberships[membership.key] = membership.model_copy()

    async def list_memberships(self, organization_id: str) -> list[Membership]:
        return [
            m.model_copy() for m in self._memberships.values()
            if m.organization_id == organization_id
        ]

    async def list_subject_memberships(self, subject_id: str) -> list[Membership]:
        return [
            m.model_copy() for m in self._memberships.values()
            if m.subject_id == subject_id
        ]

    async def get_organization(self, organization_id: str) -> Organization | None:
        organization = self._organizations.get(organization_id)
        return organization.model_copy() if organization else None

    async def save_organization(self, organization: Organization) -> None:
        self._organizations[organization.id] = organization.model_copy()


class FileTenancyStorage:
    """JSON file storage for development and small deployments.

    WARNING: Not suitable for concurrent multi-process writers.
    Use PostgresTenancyStorage for production deployments.
    """

    def __init__(self, storage_path: str | Path):
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info("FileTenancyStorage initialized at %s", self.storage_path)

    @property
    def _memberships_file(self) -> Path:
        return self.storage_path / "memberships.json"

    @property
    def _organizations_file(self) -> Path:
        return self.storage_path / "organizations.json"

    def _read(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        # Write-then-rename so readers never observe a partial file
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _membership_key(subject_id: str, organization_id: str) -> str:
        return f"{organization_id}:{subject_id}"

    async def get_membership(self, subject_id: str, organization_id: str) -> Membership | None:
        data = self._read(self._memberships_file)
        raw = data.get(self._membership_key(subject_id, organization_id))
        return Membership.model_validate(raw) if raw else None

    async def save_membership(self, membership: Membership) -> None:
        async with self._lock:
            data = self._read(self._memberships_file)
            key = self._membership_key(membership.subject_id, membership.organization_id)
            data[key] = membership.model_dump(mode="json")
            self._write(self._memberships_file, data)

    async def list_memberships(self, organization_id: str) -> list[Membership]:
        data = self._read(self._memberships_file)
        return [
            Membership.model_validate(raw) for raw in data.values()
            if raw["organization_id"] == organization_id
        ]

    async def list_subject_memberships(self, subject_id: str) -> list[Membership]:
        data = self._read(self._memberships_file)
        return [
            Membership.model_validate(raw) for raw in data.values()
            if raw["subject_id"] == subject_id
        ]

    async def get_organization(self, organization_id: str) -> Organization | None:
        data = self._read(self._organizations_file)
        raw = data.get(organization_id)
        return Organization.model_validate(raw) if raw else None

    async def save_organization(self, organization: Organization) -> None:
        async with self._lock:
            data = self._read(self._organizations_file)
            data[organization.id] = organization.model_dump(mode="json")
            self._write(self._organizations_file, data)


class PostgresTenancyStorage:
    """PostgreSQL-based tenancy storage for production.

    Uses the ``organizations`` and ``memberships`` tables created by the
    ``001_access_engine_schema`` migration.
    """

    def __init__(self, connection_pool: Any):
        """Initialize PostgreSQL storage.

        Args:
            connection_pool: asyncpg connection pool
        """
        self.pool = connection_pool
        logger.info("PostgresTenancyStorage initialized")

    async def get_membership(self, subject_id: str, organization_id: str) -> Membership | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                row = await conn.fetchrow(
                    """
                    SELECT * FROM memberships
                    WHERE subject_id = $1 AND organization_id = $2
                    """,
                    subject_id,
                    organization_id,
                )
            return self._row_to_membership(row) if row else None

    async def save_membership(self, membership: Membership) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, membership.organization_id)
                await conn.execute(
                    """
                    INSERT INTO memberships (
                        subject_id, organization_id, role, status, joined_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (subject_id, organization_id) DO UPDATE
                    SET role = EXCLUDED.role,
                        status = EXCLUDED.status,
                        updated_at = EXCLUDED.updated_at
                    """,
                    membership.subject_id,
                    membership.organization_id,
                    membership.role.value,
                    membership.status.value,
                    membership.joined_at,
                    membership.updated_at,
                )

    async def list_memberships(self, organization_id: str) -> list[Membership]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                rows = await conn.fetch(
                    "SELECT * FROM memberships WHERE organization_id = $1 ORDER BY joined_at",
                    organization_id,
                )
            return [self._row_to_membership(row) for row in rows]

    async def list_subject_memberships(self, subject_id: str) -> list[Membership]:
        # Spans organizations, so no tenant context is set; the policy
        # admits every row when app.org_id is unset
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM memberships WHERE subject_id = $1 ORDER BY joined_at",
                subject_id,
            )
            return [self._row_to_membership(row) for row in rows]

    async def get_organization(self, organization_id: str) -> Organization | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM organizations WHERE id = $1",
                organization_id,
            )
            return self._row_to_organization(row) if row else None

    async def save_organization(self, organization: Organization) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO organizations (
                    id, display_name, kind, state, created_at, updated_at, metadata
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE
                SET display_name = EXCLUDED.display_name,
                    state = EXCLUDED.state,
                    updated_at = EXCLUDED.updated_at,
                    metadata = EXCLUDED.metadata
                """,
                organization.id,
                organization.display_name,
                organization.kind.value,
                organization.state.value,
                organization.created_at,
                organization.updated_at,
                json.dumps(organization.metadata),
            )

    def _row_to_membership(self, row: Any) -> Membership:
        return Membership(
            subject_id=row["subject_id"],
            organization_id=row["organization_id"],
            role=MembershipRole(row["role"]),
            status=MembershipStatus(row["status"]),
            joined_at=row["joined_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_organization(self, row: Any) -> Organization:
        metadata = row["metadata"]
        return Organization(
            id=row["id"],
            display_name=row["display_name"],
            kind=OrganizationKind(row["kind"]),
            state=OrganizationState(row["state"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=metadata if isinstance(metadata, dict) else json.loads(metadata or "{}"),
        )


def get_tenancy_storage(config: dict[str, Any] | None = None, connection_pool: Any = None):
    """Get tenancy storage instance based on configuration."""
    storage_type = (config or {}).get("type", "memory")

    if storage_type == "postgres":
        if connection_pool is None:
            raise ValueError("PostgreSQL storage requires a connection pool")
        return PostgresTenancyStorage(connection_pool)

    if storage_type == "file":
        return FileTenancyStorage((config or {}).get("path", "data/tenantguard/tenancy"))

    return InMemoryTenancyStorage()
