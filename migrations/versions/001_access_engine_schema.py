"""Access engine schema with Row-Level Security.

Creates the tenancy tables and the two append-only audit channels.
Audit tables reject UPDATE, DELETE and TRUNCATE; the only exception is
retention archival, which deletes from a live table inside a
transaction that has set ``tenantguard.retention = 'on'``.

Revision ID: 001_access_engine_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision = '001_access_engine_schema'
down_revision = None
branch_labels = None
depends_on = None

AUDIT_TABLES = ['audit_identity', 'audit_domain']
ARCHIVE_TABLES = [f'{table}_archive' for table in AUDIT_TABLES]

# Tables carrying organization_id, isolated per tenant
TENANT_TABLES = ['memberships', *AUDIT_TABLES, *ARCHIVE_TABLES]


def _audit_columns() -> list[sa.Column]:
    # Live and archive tables share column order (INSERT ... SELECT *)
    return [
        sa.Column('event_id', sa.String(36), primary_key=True),
        sa.Column('sequence_number', sa.BigInteger(), nullable=False),
        sa.Column('organization_id', sa.String(255), nullable=False),
        sa.Column('actor_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('resource_type', sa.String(64), nullable=True),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('previous_values', postgresql.JSONB(), nullable=True),
        sa.Column('new_values', postgresql.JSONB(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('previous_hash', sa.String(64), nullable=False, server_default=''),
        sa.Column('record_hash', sa.String(64), nullable=False),
    ]


def upgrade() -> None:
    """Create tables, append-only triggers and tenant isolation policies."""

    op.create_table(
        'organizations',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('state', sa.String(16), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.CheckConstraint(
            "kind IN ('individual-patient', 'individual-provider', "
            "'multi-member-clinic', 'institutional')",
            name='ck_organizations_kind',
        ),
        sa.CheckConstraint(
            "state IN ('active', 'suspended', 'deleted')",
            name='ck_organizations_state',
        ),
    )

    op.create_table(
        'memberships',
        sa.Column('subject_id', sa.String(255), primary_key=True),
        sa.Column(
            'organization_id',
            sa.String(255),
            sa.ForeignKey('organizations.id'),
            primary_key=True,
        ),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "role IN ('owner', 'admin', 'member', 'billing-only')",
            name='ck_memberships_role',
        ),
        sa.CheckConstraint(
            "status IN ('active', 'invited', 'suspended')",
            name='ck_memberships_status',
        ),
    )
    op.create_index('ix_memberships_organization', 'memberships', ['organization_id'])

    for table in AUDIT_TABLES + ARCHIVE_TABLES:
        op.create_table(
            table,
            *_audit_columns(),
            sa.UniqueConstraint(
                'organization_id', 'sequence_number', name=f'uq_{table}_chain'
            ),
        )
        op.create_index(f'ix_{table}_org_time', table, ['organization_id', 'timestamp'])

    # Append-only enforcement
    op.execute("""
        CREATE OR REPLACE FUNCTION tenantguard_reject_audit_mutation()
        RETURNS trigger AS $$
        BEGIN
            IF TG_OP = 'DELETE'
               AND TG_ARGV[0] = 'live'
               AND coalesce(current_setting('tenantguard.retention', true), '') = 'on' THEN
                RETURN OLD;
            END IF;
            RAISE EXCEPTION 'audit records are append-only: % on % rejected',
                TG_OP, TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in AUDIT_TABLES + ARCHIVE_TABLES:
        mode = 'archive' if table.endswith('_archive') else 'live'
        op.execute(f"""
            CREATE TRIGGER {table}_append_only
                BEFORE UPDATE OR DELETE ON {table}
                FOR EACH ROW EXECUTE FUNCTION tenantguard_reject_audit_mutation('{mode}');
            CREATE TRIGGER {table}_no_truncate
                BEFORE TRUNCATE ON {table}
                FOR EACH STATEMENT EXECUTE FUNCTION tenantguard_reject_audit_mutation('archive');
        """)

    # Memberships are suspended, never deleted
    op.execute("""
        CREATE OR REPLACE FUNCTION tenantguard_reject_membership_delete()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'memberships are never deleted; suspend instead';
        END;
        $$ LANGUAGE plpgsql;

        CREATE TRIGGER memberships_no_delete
            BEFORE DELETE ON memberships
            FOR EACH ROW EXECUTE FUNCTION tenantguard_reject_membership_delete();
    """)

    # Tenant isolation
    for table in TENANT_TABLES:
        op.execute(f"""
            ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;
            ALTER TABLE {table} FORCE ROW LEVEL SECURITY;

            DROP POLICY IF EXISTS tenant_isolation_policy ON {table};
            CREATE POLICY tenant_isolation_policy ON {table}
                FOR ALL
                USING (
                    organization_id = current_setting('app.org_id', true)
                    OR current_setting('app.org_id', true) IS NULL
                    OR current_setting('app.org_id', true) = ''
                )
                WITH CHECK (
                    organization_id = current_setting('app.org_id', true)
                    OR current_setting('app.org_id', true) IS NULL
                    OR current_setting('app.org_id', true) = ''
                );
        """)


def downgrade() -> None:
    """Drop the access engine schema."""

    for table in reversed(TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_policy ON {table};")

    for table in reversed(AUDIT_TABLES + ARCHIVE_TABLES):
        op.drop_index(f'ix_{table}_org_time', table_name=table)
        op.drop_table(table)

    op.drop_index('ix_memberships_organization', table_name='memberships')
    op.drop_table('memberships')
    op.drop_table('organizations')

    op.execute("DROP FUNCTION IF EXISTS tenantguard_reject_audit_mutation();")
    op.execute("DROP FUNCTION IF EXISTS tenantguard_reject_membership_delete();")
