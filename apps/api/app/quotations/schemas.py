from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class QuotationFromTemplateCreate(BaseModel):
    template_id: UUID
    lead_id: UUID | None = None
    title: str | None = Field(default=None, max_length=255)


class QuotationSpaceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    space_type_id: UUID | None
    name: str
    display_order: int
    subtotal: Decimal


class QuotationComponentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    space_id: UUID
    component_type_id: UUID
    component_variant_id: UUID | None
    name: str
    display_order: int
    subtotal: Decimal


class QuotationLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    space_id: UUID | None
    component_id: UUID | None
    cost_item_id: UUID | None
    name: str
    unit_code: str
    rate: Decimal
    quantity: Decimal | None
    length: Decimal | None
    width: Decimal | None
    amount: Decimal
    display_order: int
    notes: str | None


class MaterializationSummaryRead(BaseModel):
    spaces_created: int
    components_created: int
    line_items_created: int
    rows_skipped: int


class QuotationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    quotation_number: str
    version: int
    parent_quotation_id: UUID | None
    source_quotation_id: UUID | None
    template_id: UUID | None
    lead_id: UUID | None
    project_id: UUID | None
    title: str | None
    status: str
    subtotal: Decimal
    grand_total: Decimal
    locked_for_project_id: UUID | None
    locked_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    spaces: list[QuotationSpaceRead] = Field(default_factory=list)
    components: list[QuotationComponentRead] = Field(default_factory=list)
    line_items: list[QuotationLineItemRead] = Field(default_factory=list)
    materialization: MaterializationSummaryRead | None = None
