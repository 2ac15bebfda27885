"""Reject UPDATE and DELETE on audit_entries at the database level.

Revision ID: 20261018_01
Revises: 20261018_00
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op


revision = "20261018_01"
down_revision = "20261018_00"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE OR REPLACE FUNCTION audit_entries_append_only()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_entries is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER audit_entries_no_update_delete
        BEFORE UPDATE OR DELETE ON audit_entries
        FOR EACH ROW EXECUTE FUNCTION audit_entries_append_only()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS audit_entries_no_update_delete ON audit_entries")
    op.execute("DROP FUNCTION IF EXISTS audit_entries_append_only()")
