from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


LeadStage = Literal[
    "new",
    "qualified",
    "requirement_discussion",
    "proposal_discussion",
    "won",
    "lost",
    "disqualified",
]
PropertyCategory = Literal["residential", "commercial"]
ServiceType = Literal["turnkey", "modular", "renovation", "consultation", "commercial_fitout", "other"]
BudgetRange = Literal[
    "below_10l",
    "around_10l",
    "around_20l",
    "around_30l",
    "around_40l",
    "around_50l",
    "above_50l",
    "not_disclosed",
]
DisqualificationReason = Literal[
    "budget_mismatch",
    "timeline_mismatch",
    "location_not_serviceable",
    "not_serious_buyer",
    "duplicate_lead",
    "invalid_contact",
    "competitor_already_hired",
    "project_cancelled",
    "other",
]
LostReason = Literal[
    "price_too_high",
    "chose_competitor",
    "project_cancelled",
    "timeline_not_met",
    "scope_mismatch",
    "no_response",
    "budget_reduced",
    "other",
]
ProjectPriority = Literal["low", "medium", "high", "urgent"]


class StageTransitionRequest(BaseModel):
    to_stage: LeadStage

    property_category: PropertyCategory | None = None
    property_type: str | None = Field(default=None, max_length=64)
    property_subtype: str | None = Field(default=None, max_length=64)
    property_name: str | None = Field(default=None, max_length=255)
    carpet_area: Decimal | None = Field(default=None, gt=0)
    unit_number: str | None = Field(default=None, max_length=64)
    property_address: str | None = None
    property_city: str | None = Field(default=None, max_length=128)
    property_pincode: str | None = Field(default=None, max_length=16)

    service_type: ServiceType | None = None
    target_start_date: date | None = None
    target_end_date: date | None = None
    budget_range: BudgetRange | None = None
    project_scope: str | None = None
    assigned_to: str | None = None
    change_reason: str | None = None

    disqualification_reason: DisqualificationReason | None = None
    disqualification_notes: str | None = None
    lost_reason: LostReason | None = None
    lost_to_competitor: str | None = Field(default=None, max_length=255)
    lost_notes: str | None = None

    selected_quotation_id: UUID | None = None
    won_amount: Decimal | None = None
    contract_signed_date: date | None = None
    expected_project_start: date | None = None
    expected_project_end: date | None = None
    project_manager_id: str | None = None
    project_priority: ProjectPriority | None = None
    skip_project_creation: bool = False


class PropertyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    property_name: str | None
    property_category: str | None
    property_type: str | None
    property_subtype: str | None
    unit_number: str | None
    carpet_area: Decimal | None
    address_line: str | None
    city: str
    pincode: str | None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    lead_number: str | None
    client_name: str
    stage: LeadStage
    assigned_to: str | None
    assigned_at: datetime | None
    assigned_by: str | None
    service_type: str | None
    budget_range: str | None
    project_scope: str | None
    target_start_date: date | None
    target_end_date: date | None
    property_id: UUID | None
    disqualification_reason: str | None
    disqualification_notes: str | None
    lost_reason: str | None
    lost_to_competitor: str | None
    lost_notes: str | None
    won_amount: Decimal | None
    won_at: datetime | None
    contract_signed_date: date | None
    expected_project_start: date | None
    selected_quotation_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    property: PropertyRead | None = None


class LeadActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    activity_type: str
    title: str
    description: str | None
    metadata_json: str | None
    created_by: str
    created_at: datetime


class StageTransitionResponse(BaseModel):
    lead: LeadRead
    project_id: UUID | None = None
    project_created: bool = False
    baseline_quotation_id: UUID | None = None
    warnings: list[str] = Field(default_factory=list)
