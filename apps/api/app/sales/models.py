from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Property(Base):
    __tablename__ = "sales_property"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    property_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    property_category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    property_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    property_subtype: Mapped[str | None] = mapped_column(String(64), nullable=True)
    unit_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    carpet_area: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    address_line: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str] = mapped_column(String(128), nullable=False)
    pincode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Lead(Base):
    __tablename__ = "sales_lead"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="new", server_default="new")
    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    service_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    budget_range: Mapped[str | None] = mapped_column(String(32), nullable=True)
    project_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    target_end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    property_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_property.id", ondelete="SET NULL"),
        nullable=True,
    )
    disqualification_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    disqualification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lost_to_competitor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lost_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    won_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    won_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    contract_signed_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    expected_project_start: Mapped[date | None] = mapped_column(Date(), nullable=True)
    selected_quotation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    property: Mapped[Property | None] = relationship("app.sales.models.Property", lazy="joined")

    __table_args__ = (
        Index("ix_sales_lead_tenant_stage", "tenant_id", "stage", "created_at"),
        Index("ix_sales_lead_assigned_to", "assigned_to"),
    )


class LeadActivity(Base):
    __tablename__ = "sales_lead_activity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sales_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_sales_lead_activity_lead", "lead_id", "created_at"),)


class TenantSettings(Base):
    __tablename__ = "sales_tenant_settings"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    auto_create_project_on_won: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
