"""create conversion rules and execution history

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "entity_conversion_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("source_entity", sa.String(length=100), nullable=False),
        sa.Column("target_entity", sa.String(length=100), nullable=False),
        sa.Column("trigger_conditions", sa.JSON(), nullable=True),
        sa.Column("field_mapping", sa.JSON(), nullable=False),
        sa.Column("extension_field_mapping", sa.JSON(), nullable=False),
        sa.Column("conversion_settings", sa.JSON(), nullable=False),
        sa.Column("target_name_template", sa.Text(), nullable=True),
        sa.Column("default_values", sa.JSON(), nullable=False),
        sa.Column("approval_settings", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_entity_conversion_rule_tenant_name"),
    )
    op.create_index(
        "ix_entity_conversion_rule_tenant_source_active",
        "entity_conversion_rule",
        ["tenant_id", "source_entity", "is_active"],
        unique=False,
    )

    op.create_table(
        "conversion_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("rule_id", sa.Uuid(), nullable=False),
        sa.Column("rule_name", sa.String(length=200), nullable=False),
        sa.Column("source_entity", sa.String(length=100), nullable=False),
        sa.Column("target_entity", sa.String(length=100), nullable=False),
        sa.Column("source_record_id", sa.String(length=64), nullable=False),
        sa.Column("target_record_id", sa.String(length=64), nullable=True),
        sa.Column("conversion_type", sa.String(length=16), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=False),
        sa.Column("converted_fields", sa.JSON(), nullable=False),
        sa.Column("skipped_fields", sa.JSON(), nullable=False),
        sa.Column("converted_extension_fields", sa.JSON(), nullable=False),
        sa.Column("skipped_extension_fields", sa.JSON(), nullable=False),
        sa.Column("execution_time_ms", sa.Float(), nullable=False),
        sa.Column("performed_by", sa.String(length=64), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_conversion_execution_tenant_rule_created",
        "conversion_execution",
        ["tenant_id", "rule_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_conversion_execution_tenant_rule_created", table_name="conversion_execution")
    op.drop_table("conversion_execution")

    op.drop_index("ix_entity_conversion_rule_tenant_source_active", table_name="entity_conversion_rule")
    op.drop_table("entity_conversion_rule")
