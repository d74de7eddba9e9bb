"""create extension field definition

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "extension_field_definition",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("entity_table", sa.String(length=100), nullable=False),
        sa.Column("field_name", sa.String(length=100), nullable=False),
        sa.Column("field_type", sa.String(length=16), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_required", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_searchable", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_filterable", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_sortable", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("default_value", sa.JSON(), nullable=True),
        sa.Column("validation_rules", sa.JSON(), nullable=False),
        sa.Column("ui_config", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_extension_field_definition_tenant_table_active",
        "extension_field_definition",
        ["tenant_id", "entity_table", "is_active"],
        unique=False,
    )
    op.create_index(
        "ix_extension_field_definition_tenant_table_name",
        "extension_field_definition",
        ["tenant_id", "entity_table", "field_name"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_extension_field_definition_tenant_table_name", table_name="extension_field_definition")
    op.drop_index("ix_extension_field_definition_tenant_table_active", table_name="extension_field_definition")
    op.drop_table("extension_field_definition")
