"""create sales tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "sales_property",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("property_name", sa.String(length=255), nullable=True),
        sa.Column("property_category", sa.String(length=32), nullable=True),
        sa.Column("property_type", sa.String(length=64), nullable=True),
        sa.Column("property_subtype", sa.String(length=64), nullable=True),
        sa.Column("unit_number", sa.String(length=64), nullable=True),
        sa.Column("carpet_area", sa.Numeric(12, 2), nullable=True),
        sa.Column("address_line", sa.Text(), nullable=True),
        sa.Column("city", sa.String(length=128), nullable=False),
        sa.Column("pincode", sa.String(length=16), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "sales_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_number", sa.String(length=64), nullable=True),
        sa.Column("client_name", sa.String(length=255), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("assigned_to", sa.String(length=255), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_by", sa.String(length=255), nullable=True),
        sa.Column("service_type", sa.String(length=32), nullable=True),
        sa.Column("budget_range", sa.String(length=32), nullable=True),
        sa.Column("project_scope", sa.Text(), nullable=True),
        sa.Column("target_start_date", sa.Date(), nullable=True),
        sa.Column("target_end_date", sa.Date(), nullable=True),
        sa.Column("property_id", sa.Uuid(), nullable=True),
        sa.Column("disqualification_reason", sa.String(length=64), nullable=True),
        sa.Column("disqualification_notes", sa.Text(), nullable=True),
        sa.Column("lost_reason", sa.String(length=64), nullable=True),
        sa.Column("lost_to_competitor", sa.String(length=255), nullable=True),
        sa.Column("lost_notes", sa.Text(), nullable=True),
        sa.Column("won_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("won_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contract_signed_date", sa.Date(), nullable=True),
        sa.Column("expected_project_start", sa.Date(), nullable=True),
        sa.Column("selected_quotation_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["property_id"], ["sales_property.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_lead_tenant_stage", "sales_lead", ["tenant_id", "stage", "created_at"], unique=False)
    op.create_index("ix_sales_lead_assigned_to", "sales_lead", ["assigned_to"], unique=False)

    op.create_table(
        "sales_lead_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("activity_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["sales_lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sales_lead_activity_lead", "sales_lead_activity", ["lead_id", "created_at"], unique=False)

    op.create_table(
        "sales_tenant_settings",
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("auto_create_project_on_won", sa.Boolean(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )


def downgrade() -> None:
    op.drop_table("sales_tenant_settings")
    op.drop_index("ix_sales_lead_activity_lead", table_name="sales_lead_activity")
    op.drop_table("sales_lead_activity")
    op.drop_index("ix_sales_lead_assigned_to", table_name="sales_lead")
    op.drop_index("ix_sales_lead_tenant_stage", table_name="sales_lead")
    op.drop_table("sales_lead")
    op.drop_table("sales_property")
