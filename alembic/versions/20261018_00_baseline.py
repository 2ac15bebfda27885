"""Baseline schema.

Revision ID: 20261018_00
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op

from nhs_interop.models import Base


revision = "20261018_00"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
