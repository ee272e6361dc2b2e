"""create metadata tables

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "field_definitions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("short_name", sa.String(length=40), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("datatype", sa.String(length=50), nullable=False),
        sa.Column("datatype_properties", sa.JSON(), nullable=False),
        sa.Column("validation_rules", sa.JSON(), nullable=False),
        sa.Column("mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("short_name", name="uq_field_definitions_short_name"),
    )

    op.create_table(
        "object_definitions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("short_name", sa.String(length=40), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("display_properties", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("short_name", name="uq_object_definitions_short_name"),
    )

    op.create_table(
        "object_field_references",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("object_id", sa.Uuid(), nullable=False),
        sa.Column("field_id", sa.Uuid(), nullable=False),
        sa.Column("mandatory", sa.Boolean(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["object_id"], ["object_definitions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["field_id"], ["field_definitions.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("object_id", "field_id", name="uq_object_field_references_object_field"),
    )
    op.create_index(
        "ix_object_field_references_field_id", "object_field_references", ["field_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_object_field_references_field_id", table_name="object_field_references")
    op.drop_table("object_field_references")
    op.drop_table("object_definitions")
    op.drop_table("field_definitions")
