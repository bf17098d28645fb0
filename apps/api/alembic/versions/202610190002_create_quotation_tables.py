"""create quotation catalog, template and quotation tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _catalog_table(name: str, *extra: sa.Column) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        *extra,
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "slug", name=f"uq_{name}_slug"),
    )


def upgrade() -> None:
    _catalog_table("quote_space_type")
    _catalog_table("quote_component_type")
    _catalog_table(
        "quote_cost_item",
        sa.Column("unit_code", sa.String(length=32), nullable=False),
        sa.Column("default_rate", sa.Numeric(18, 2), nullable=False, server_default="0"),
    )

    op.create_table(
        "quote_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "quote_template_space",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("space_type_id", sa.Uuid(), nullable=False),
        sa.Column("default_name", sa.String(length=255), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["template_id"], ["quote_template.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["space_type_id"], ["quote_space_type.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quote_template_space_template", "quote_template_space", ["template_id", "display_order"], unique=False
    )

    op.create_table(
        "quote_template_line_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("template_space_id", sa.Uuid(), nullable=True),
        sa.Column("component_type_id", sa.Uuid(), nullable=True),
        sa.Column("component_variant_id", sa.Uuid(), nullable=True),
        sa.Column("cost_item_id", sa.Uuid(), nullable=False),
        sa.Column("rate", sa.Numeric(18, 2), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["template_id"], ["quote_template.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["template_space_id"], ["quote_template_space.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["component_type_id"], ["quote_component_type.id"]),
        sa.ForeignKeyConstraint(["cost_item_id"], ["quote_cost_item.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quote_template_line_item_template",
        "quote_template_line_item",
        ["template_id", "display_order"],
        unique=False,
    )

    op.create_table(
        "quotation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("quotation_number", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("parent_quotation_id", sa.Uuid(), nullable=True),
        sa.Column("source_quotation_id", sa.Uuid(), nullable=True),
        sa.Column("template_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("subtotal", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("grand_total", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("locked_for_project_id", sa.Uuid(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quotation_number_version", "quotation", ["tenant_id", "quotation_number", "version"], unique=False
    )
    op.create_index("ix_quotation_lead", "quotation", ["lead_id", "status"], unique=False)
    op.create_index("ix_quotation_project", "quotation", ["project_id"], unique=False)

    op.create_table(
        "quotation_space",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("space_type_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subtotal", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotation.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quotation_space_quotation", "quotation_space", ["quotation_id", "display_order"], unique=False
    )

    op.create_table(
        "quotation_component",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("space_id", sa.Uuid(), nullable=False),
        sa.Column("component_type_id", sa.Uuid(), nullable=False),
        sa.Column("component_variant_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subtotal", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotation.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["space_id"], ["quotation_space.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quotation_component_space", "quotation_component", ["space_id", "display_order"], unique=False
    )

    op.create_table(
        "quotation_line_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("space_id", sa.Uuid(), nullable=True),
        sa.Column("component_id", sa.Uuid(), nullable=True),
        sa.Column("cost_item_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit_code", sa.String(length=32), nullable=False),
        sa.Column("rate", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=True),
        sa.Column("length", sa.Numeric(18, 4), nullable=True),
        sa.Column("width", sa.Numeric(18, 4), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotation.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["space_id"], ["quotation_space.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["component_id"], ["quotation_component.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quotation_line_item_quotation", "quotation_line_item", ["quotation_id", "display_order"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_quotation_line_item_quotation", table_name="quotation_line_item")
    op.drop_table("quotation_line_item")
    op.drop_index("ix_quotation_component_space", table_name="quotation_component")
    op.drop_table("quotation_component")
    op.drop_index("ix_quotation_space_quotation", table_name="quotation_space")
    op.drop_table("quotation_space")
    op.drop_index("ix_quotation_project", table_name="quotation")
    op.drop_index("ix_quotation_lead", table_name="quotation")
    op.drop_index("ix_quotation_number_version", table_name="quotation")
    op.drop_table("quotation")
    op.drop_index("ix_quote_template_line_item_template", table_name="quote_template_line_item")
    op.drop_table("quote_template_line_item")
    op.drop_index("ix_quote_template_space_template", table_name="quote_template_space")
    op.drop_table("quote_template_space")
    op.drop_table("quote_template")
    op.drop_table("quote_cost_item")
    op.drop_table("quote_component_type")
    op.drop_table("quote_space_type")
