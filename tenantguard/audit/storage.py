"""Audit storage backends.

Provides append-only storage implementations for audit events. Every
backend keeps one chain per (channel, organization) and serializes
appends to a chain itself, so callers need no cross-writer locking.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from tenantguard.audit.models import (
    AuditChannel,
    AuditEvent,
    AuditEventDraft,
    AuditMetadata,
    AuditQuery,
)
from tenantguard.errors import AppendOnlyViolationError
from tenantguard.tenancy.storage import set_tenant_context

logger = logging.getLogger(__name__)

Sealer = Callable[[AuditEvent | None], AuditEvent]
ChainKey = tuple[AuditChannel, str]


class AuditStorage(Protocol):
    """Protocol for audit storage backends.

    Implementations must provide append-only semantics. There is no
    update or delete; the only removal path is retention archival.
    """

    async def append(self, draft: AuditEventDraft, seal: Sealer) -> AuditEvent:
        """Seal a draft against the chain tail and append it atomically."""
        ...

    async def get_latest(self, channel: AuditChannel, organization_id: str) -> AuditEvent | None:
        """Get the most recent event of a chain."""
        ...

    async def get_all(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        """Get every live event of a chain, ordered by sequence."""
        ...

    async def fetch(self, query: AuditQuery) -> list[AuditEvent]:
        """Get up to ``query.limit`` matching events, ordered by sequence."""
        ...

    async def count(self, channel: AuditChannel, organization_id: str) -> int:
        """Get the number of live events in a chain."""
        ...

    async def archive_before(
        self, channel: AuditChannel, organization_id: str, cutoff: datetime
    ) -> int:
        """Move events older than ``cutoff`` out of the live chain."""
        ...


class InMemoryAuditStorage:
    """In-process audit storage for tests and development.

    Returns deep copies so stored events can never be mutated in place.
    """

    def __init__(self) -> None:
        self._chains: dict[ChainKey, list[AuditEvent]] = {}
        self._archive: dict[ChainKey, list[AuditEvent]] = {}
        self._locks: dict[ChainKey, asyncio.Lock] = {}
        self._event_ids: set[str] = set()

    def _lock(self, key: ChainKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def append(self, draft: AuditEventDraft, seal: Sealer) -> AuditEvent:
        key = (draft.channel, draft.organization_id)
        async with self._lock(key):
            if draft.event_id in self._event_ids:
                raise AppendOnlyViolationError(f"Event {draft.event_id} already exists")

            chain = self._chains.setdefault(key, [])
            previous = chain[-1] if chain else self._tail_from_archive(key)
            event = seal(previous)
            chain.append(event.model_copy(deep=True))
            self._event_ids.add(event.event_id)

        logger.debug(
            "Appended audit event: channel=%s org=%s seq=%d",
            event.channel.value, event.organization_id, event.sequence_number,
        )
        return event

    def _tail_from_archive(self, key: ChainKey) -> AuditEvent | None:
        archived = self._archive.get(key)
        return archived[-1] if archived else None

    async def get_latest(self, channel: AuditChannel, organization_id: str) -> AuditEvent | None:
        chain = self._chains.get((channel, organization_id))
        return chain[-1].model_copy(deep=True) if chain else None

    async def get_all(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        return [
            e.model_copy(deep=True)
            for e in self._chains.get((channel, organization_id), [])
        ]

    async def fetch(self, query: AuditQuery) -> list[AuditEvent]:
        results = []
        for event in self._chains.get((query.channel, query.organization_id), []):
            if query.matches(event):
                results.append(event.model_copy(deep=True))
                if len(results) >= query.limit:
                    break
        return results

    async def count(self, channel: AuditChannel, organization_id: str) -> int:
        return len(self._chains.get((channel, organization_id), []))

    async def archive_before(
        self, channel: AuditChannel, organization_id: str, cutoff: datetime
    ) -> int:
        key = (channel, organization_id)
        async with self._lock(key):
            chain = self._chains.get(key, [])
            expired = [e for e in chain if e.timestamp < cutoff]
            if expired:
                self._archive.setdefault(key, []).extend(expired)
                self._chains[key] = chain[len(expired):]
        return len(expired)

    async def get_archived(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        """Get archived events of a chain (for inspection)."""
        return [
            e.model_copy(deep=True)
            for e in self._archive.get((channel, organization_id), [])
        ]


class FileAuditStorage:
    """File-based audit storage for development and small deployments.

    Stores events in JSONL (JSON Lines) format, one event per line.
    Each channel and organization gets its own file for isolation.

    WARNING: This is NOT suitable for high-volume production use.
    Use PostgresAuditStorage for production deployments.
    """

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory to store audit files
        """
        self.storage_path = Path(storage_path)
        for channel in AuditChannel:
            (self.storage_path / channel.value / "archive").mkdir(parents=True, exist_ok=True)
        self._locks: dict[ChainKey, asyncio.Lock] = {}
        logger.info("FileAuditStorage initialized at %s", self.storage_path)

    def _lock(self, key: ChainKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    @staticmethod
    def _file_name(organization_id: str) -> str:
        # Sanitize to prevent path traversal; the digest keeps distinct ids distinct
        safe_id = "".join(c for c in organization_id if c.isalnum() or c in "-_")[:64]
        digest = hashlib.sha256(organization_id.encode("utf-8")).hexdigest()[:12]
        return f"audit_{safe_id}_{digest}.jsonl"

    def _chain_file(self, channel: AuditChannel, organization_id: str) -> Path:
        """Get the file path for a chain's live log."""
        return self.storage_path / channel.value / self._file_name(organization_id)

    def _archive_file(self, channel: AuditChannel, organization_id: str) -> Path:
        return self.storage_path / channel.value / "archive" / self._file_name(organization_id)

    @staticmethod
    def _read_events(path: Path) -> list[AuditEvent]:
        if not path.exists():
            return []
        events = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    events.append(AuditEvent.model_validate_json(line))
        return events

    @staticmethod
    def _last_event(path: Path) -> AuditEvent | None:
        if not path.exists():
            return None
        last_line = None
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last_line = line
        return AuditEvent.model_validate_json(last_line) if last_line else None

    async def append(self, draft: AuditEventDraft, seal: Sealer) -> AuditEvent:
        """Append an event to its chain file."""
        key = (draft.channel, draft.organization_id)
        file_path = self._chain_file(*key)

        async with self._lock(key):
            live = self._read_events(file_path)
            archived = self._read_events(self._archive_file(*key))
            if any(e.event_id == draft.event_id for e in live + archived):
                raise AppendOnlyViolationError(f"Event {draft.event_id} already exists")

            previous = live[-1] if live else (archived[-1] if archived else None)
            event = seal(previous)

            with open(file_path, "a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
                f.flush()

        logger.debug(
            "Appended audit event: channel=%s org=%s seq=%d",
            event.channel.value, event.organization_id, event.sequence_number,
        )
        return event

    async def get_latest(self, channel: AuditChannel, organization_id: str) -> AuditEvent | None:
        return self._last_event(self._chain_file(channel, organization_id))

    async def get_all(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        events = self._read_events(self._chain_file(channel, organization_id))
        return sorted(events, key=lambda e: e.sequence_number)

    async def fetch(self, query: AuditQuery) -> list[AuditEvent]:
        results = []
        for event in await self.get_all(query.channel, query.organization_id):
            if query.matches(event):
                results.append(event)
                if len(results) >= query.limit:
                    break
        return results

    async def count(self, channel: AuditChannel, organization_id: str) -> int:
        file_path = self._chain_file(channel, organization_id)
        if not file_path.exists():
            return 0
        with open(file_path, "r", encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())

    async def archive_before(
        self, channel: AuditChannel, organization_id: str, cutoff: datetime
    ) -> int:
        key = (channel, organization_id)
        live_path = self._chain_file(*key)

        async with self._lock(key):
            events = self._read_events(live_path)
            expired = [e for e in events if e.timestamp < cutoff]
            if not expired:
                return 0

            with open(self._archive_file(*key), "a", encoding="utf-8") as f:
                for event in expired:
                    f.write(event.model_dump_json() + "\n")

            tmp = live_path.with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                for event in events[len(expired):]:
                    f.write(event.model_dump_json() + "\n")
            tmp.replace(live_path)

        return len(expired)

    async def get_archived(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        return self._read_events(self._archive_file(channel, organization_id))


class PostgresAuditStorage:
    """PostgreSQL-based audit storage for production.

    Uses the ``audit_identity`` and ``audit_domain`` tables, whose
    triggers reject UPDATE and DELETE outside retention archival. Appends
    take a transaction-scoped advisory lock per chain. Every statement runs
    in a transaction scoped to its organization for row-level security.
    """

    TABLES = {
        AuditChannel.IDENTITY: "audit_identity",
        AuditChannel.DOMAIN: "audit_domain",
    }

    def __init__(self, connection_pool: Any):
        """Initialize PostgreSQL storage.

        Args:
            connection_pool: asyncpg connection pool
        """
        self.pool = connection_pool
        logger.info("PostgresAuditStorage initialized")

    async def append(self, draft: AuditEventDraft, seal: Sealer) -> AuditEvent:
        table = self.TABLES[draft.channel]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, draft.organization_id)
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{draft.channel.value}:{draft.organization_id}",
                )
                row = await conn.fetchrow(
                    f"""
                    SELECT * FROM {table}
                    WHERE organization_id = $1
                    ORDER BY sequence_number DESC
                    LIMIT 1
                    """,
                    draft.organization_id,
                )
                if row is None:
                    # Chain fully archived: continue from the archived tail
                    row = await conn.fetchrow(
                        f"""
                        SELECT * FROM {table}_archive
                        WHERE organization_id = $1
                        ORDER BY sequence_number DESC
                        LIMIT 1
                        """,
                        draft.organization_id,
                    )
                event = seal(self._row_to_event(row, draft.channel) if row else None)
                await conn.execute(
                    f"""
                    INSERT INTO {table} (
                        event_id, sequence_number, organization_id, actor_id,
                        action, resource_type, resource_id, previous_values,
                        new_values, metadata, timestamp, previous_hash, record_hash
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13
                    )
                    """,
                    event.event_id,
                    event.sequence_number,
                    event.organization_id,
                    event.actor_id,
                    event.action,
                    event.resource_type,
                    event.resource_id,
                    json.dumps(event.previous_values) if event.previous_values is not None else None,
                    json.dumps(event.new_values) if event.new_values is not None else None,
                    event.metadata.model_dump_json(),
                    event.timestamp,
                    event.previous_hash,
                    event.record_hash,
                )
        return event

    async def get_latest(self, channel: AuditChannel, organization_id: str) -> AuditEvent | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                row = await conn.fetchrow(
                    f"""
                    SELECT * FROM {self.TABLES[channel]}
                    WHERE organization_id = $1
                    ORDER BY sequence_number DESC
                    LIMIT 1
                    """,
                    organization_id,
                )
            return self._row_to_event(row, channel) if row else None

    async def get_all(self, channel: AuditChannel, organization_id: str) -> list[AuditEvent]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM {self.TABLES[channel]}
                    WHERE organization_id = $1
                    ORDER BY sequence_number
                    """,
                    organization_id,
                )
            return [self._row_to_event(row, channel) for row in rows]

    async def fetch(self, query: AuditQuery) -> list[AuditEvent]:
        conditions = ["organization_id = $1", "sequence_number > $2"]
        params: list[Any] = [query.organization_id, query.after_sequence]
        param_num = 3

        if query.start_time:
            conditions.append(f"timestamp >= ${param_num}")
            params.append(query.start_time)
            param_num += 1

        if query.end_time:
            conditions.append(f"timestamp <= ${param_num}")
            params.append(query.end_time)
            param_num += 1

        filters = query.filters
        if filters.actions:
            conditions.append(f"action = ANY(${param_num})")
            params.append(list(filters.actions))
            param_num += 1

        for column in ("actor_id", "resource_type", "resource_id"):
            value = getattr(filters, column)
            if value:
                conditions.append(f"{column} = ${param_num}")
                params.append(value)
                param_num += 1

        where_clause = " AND ".join(conditions)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, query.organization_id)
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM {self.TABLES[query.channel]}
                    WHERE {where_clause}
                    ORDER BY sequence_number ASC
                    LIMIT ${param_num}
                    """,
                    *params,
                    query.limit,
                )
            return [self._row_to_event(row, query.channel) for row in rows]

    async def count(self, channel: AuditChannel, organization_id: str) -> int:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                result = await conn.fetchval(
                    f"SELECT COUNT(*) FROM {self.TABLES[channel]} WHERE organization_id = $1",
                    organization_id,
                )
            return result or 0

    async def archive_before(
        self, channel: AuditChannel, organization_id: str, cutoff: datetime
    ) -> int:
        table = self.TABLES[channel]
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await set_tenant_context(conn, organization_id)
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{channel.value}:{organization_id}",
                )
                # Unlocks the append-only trigger for this transaction only
                await conn.execute("SET LOCAL tenantguard.retention = 'on'")
                await conn.execute(
                    f"""
                    INSERT INTO {table}_archive
                    SELECT * FROM {table}
                    WHERE organization_id = $1 AND timestamp < $2
                    """,
                    organization_id,
                    cutoff,
                )
                result = await conn.execute(
                    f"DELETE FROM {table} WHERE organization_id = $1 AND timestamp < $2",
                    organization_id,
                    cutoff,
                )
        # asyncpg returns a status string such as "DELETE 3"
        return int(str(result).split()[-1]) if result else 0

    def _row_to_event(self, row: Any, channel: AuditChannel) -> AuditEvent:
        """Convert database row to event."""

        def _json(value: Any) -> Any:
            if value is None or isinstance(value, dict):
                return value
            return json.loads(value)

        return AuditEvent(
            event_id=str(row["event_id"]),
            channel=channel,
            sequence_number=row["sequence_number"],
            organization_id=row["organization_id"],
            actor_id=row["actor_id"],
            action=row["action"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            previous_values=_json(row["previous_values"]),
            new_values=_json(row["new_values"]),
            metadata=AuditMetadata.model_validate(_json(row["metadata"]) or {}),
            timestamp=row["timestamp"],
            previous_hash=row["previous_hash"],
            record_hash=row["record_hash"],
        )


def get_audit_storage(config: dict[str, Any] | None = None, connection_pool: Any = None):
    """Get audit storage instance based on configuration."""
    storage_type = (config or {}).get("type", "memory")

    if storage_type == "postgres":
        if connection_pool is None:
            raise ValueError("PostgreSQL storage requires a connection pool")
        return PostgresAuditStorage(connection_pool)

    if storage_type == "file":
        return FileAuditStorage((config or {}).get("path", "data/tenantguard/audit"))

    return InMemoryAuditStorage()
