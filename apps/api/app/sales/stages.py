from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

NEW = "new"
QUALIFIED = "qualified"
REQUIREMENT_DISCUSSION = "requirement_discussion"
PROPOSAL_DISCUSSION = "proposal_discussion"
WON = "won"
LOST = "lost"
DISQUALIFIED = "disqualified"

FORWARD_STAGES: tuple[str, ...] = (NEW, QUALIFIED, REQUIREMENT_DISCUSSION, PROPOSAL_DISCUSSION, WON)
TERMINAL_STAGES = frozenset({WON, LOST, DISQUALIFIED})
LEAD_STAGES: tuple[str, ...] = (*FORWARD_STAGES, LOST, DISQUALIFIED)

STAGE_LABELS: dict[str, str] = {
    NEW: "New",
    QUALIFIED: "Qualified",
    REQUIREMENT_DISCUSSION: "Requirement Discussion",
    PROPOSAL_DISCUSSION: "Proposal & Negotiation",
    WON: "Won",
    LOST: "Lost",
    DISQUALIFIED: "Disqualified",
}

INVALID_TRANSITION = "INVALID_TRANSITION"
MISSING_FIELDS = "MISSING_FIELDS"


def _build_transitions() -> dict[str, set[str]]:
    transitions: dict[str, set[str]] = {stage: set() for stage in LEAD_STAGES}
    for current, following in zip(FORWARD_STAGES, FORWARD_STAGES[1:]):
        transitions[current].add(following)
    for stage in LEAD_STAGES:
        if stage not in TERMINAL_STAGES:
            transitions[stage].update({LOST, DISQUALIFIED})
    return transitions


VALID_STAGE_TRANSITIONS: dict[str, set[str]] = _build_transitions()

# Each forward stage adds to everything required by the stages before it.
CUMULATIVE_REQUIREMENTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        QUALIFIED,
        (
            "property_category",
            "property_type",
            "property_subtype",
            "service_type",
            "property_name",
            "target_start_date",
            "target_end_date",
        ),
    ),
    (REQUIREMENT_DISCUSSION, ("carpet_area", "unit_number", "budget_range")),
    (PROPOSAL_DISCUSSION, ("change_reason",)),
    (
        WON,
        (
            "selected_quotation_id",
            "won_amount",
            "contract_signed_date",
            "expected_project_start",
            "change_reason",
        ),
    ),
)

EXIT_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    DISQUALIFIED: ("disqualification_reason",),
    LOST: ("lost_reason", "lost_notes"),
}

FIELD_LABELS: dict[str, str] = {
    "property_category": "Property Category",
    "property_type": "Property Type",
    "property_subtype": "Property Subtype",
    "service_type": "Service Type",
    "property_name": "Property Name",
    "target_start_date": "Target Start Date",
    "target_end_date": "Target End Date",
    "carpet_area": "Carpet Area",
    "unit_number": "Flat/Unit Number",
    "budget_range": "Budget Range",
    "change_reason": "Notes",
    "selected_quotation_id": "Selected Quotation",
    "won_amount": "Won Amount",
    "contract_signed_date": "Contract Signed Date",
    "expected_project_start": "Expected Project Start",
    "disqualification_reason": "Disqualification Reason",
    "lost_reason": "Lost Reason",
    "lost_notes": "Lost Notes",
}


@dataclass(slots=True)
class ValidationResult:
    ok: bool
    missing_fields: list[str] = field(default_factory=list)
    error_code: str | None = None


def is_valid_transition(from_stage: str, to_stage: str) -> bool:
    return to_stage in VALID_STAGE_TRANSITIONS.get(from_stage, set())


def required_fields(to_stage: str) -> list[str]:
    """Fold the per-stage additions up to and including ``to_stage``."""
    if to_stage in EXIT_REQUIREMENTS:
        return list(EXIT_REQUIREMENTS[to_stage])

    required: list[str] = []
    for stage, additions in CUMULATIVE_REQUIREMENTS:
        for name in additions:
            if name not in required:
                required.append(name)
        if stage == to_stage:
            return required
    return []


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def missing_fields(to_stage: str, requested: Mapping[str, Any], existing: Mapping[str, Any]) -> list[str]:
    missing: list[str] = []
    for name in required_fields(to_stage):
        value = requested.get(name)
        if not is_present(value):
            value = existing.get(name)
        if not is_present(value):
            missing.append(FIELD_LABELS.get(name, name))
    return missing


def validate(
    from_stage: str,
    to_stage: str,
    requested: Mapping[str, Any],
    existing: Mapping[str, Any],
) -> ValidationResult:
    if not is_valid_transition(from_stage, to_stage):
        return ValidationResult(ok=False, error_code=INVALID_TRANSITION)

    missing = missing_fields(to_stage, requested, existing)
    if missing:
        return ValidationResult(ok=False, missing_fields=missing, error_code=MISSING_FIELDS)
    return ValidationResult(ok=True)
