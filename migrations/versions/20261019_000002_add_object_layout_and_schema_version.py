"""add object layout and schema version

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 12:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "20261019_000002"
down_revision = "20261019_000001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("object_definitions", sa.Column("field_groups", sa.JSON(), nullable=True))
    op.add_column("object_definitions", sa.Column("wizard_config", sa.JSON(), nullable=True))
    op.add_column(
        "object_definitions",
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
    )


def downgrade() -> None:
    op.drop_column("object_definitions", "schema_version")
    op.drop_column("object_definitions", "wizard_config")
    op.drop_column("object_definitions", "field_groups")
