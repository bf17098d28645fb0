from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import observe_side_channel_failure
from app.sales.models import Lead, Property
from app.sales.stages import is_present


logger = logging.getLogger("app.sales.properties")

# transition field -> property column
PROPERTY_FIELDS: dict[str, str] = {
    "property_name": "property_name",
    "property_category": "property_category",
    "property_type": "property_type",
    "property_subtype": "property_subtype",
    "unit_number": "unit_number",
    "carpet_area": "carpet_area",
    "property_address": "address_line",
    "property_city": "city",
    "property_pincode": "pincode",
}
PROPERTY_PLACEHOLDERS: dict[str, Any] = {"city": "Unknown"}


@dataclass(slots=True)
class PropertyResolution:
    property_id: uuid.UUID | None
    created: bool = False
    warning: str | None = None


def property_snapshot(property_row: Property | None) -> dict[str, Any]:
    if property_row is None:
        return {}
    return {field: getattr(property_row, column) for field, column in PROPERTY_FIELDS.items()}


def supplied_property_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {
        column: fields[field]
        for field, column in PROPERTY_FIELDS.items()
        if field in fields and is_present(fields[field])
    }


class PropertyResolver:
    """Creates or updates the property implied by a transition; failures never block the transition."""

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, lead: Lead, fields: Mapping[str, Any], actor_user_id: str) -> PropertyResolution:
        values = supplied_property_values(fields)
        if not values:
            return PropertyResolution(property_id=lead.property_id)

        existing = self.session.get(Property, lead.property_id) if lead.property_id is not None else None
        if existing is not None:
            return self._update(lead, existing, values)
        return self._create(lead, values, actor_user_id)

    def _update(self, lead: Lead, property_row: Property, values: dict[str, Any]) -> PropertyResolution:
        property_id = property_row.id
        for column, value in values.items():
            setattr(property_row, column, value)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            return self._failed(lead, property_id, "property_update", exc)
        return PropertyResolution(property_id=property_id)

    def _create(self, lead: Lead, values: dict[str, Any], actor_user_id: str) -> PropertyResolution:
        data = {**PROPERTY_PLACEHOLDERS, **values}
        property_row = Property(id=uuid.uuid4(), tenant_id=lead.tenant_id, created_by=actor_user_id, **data)
        self.session.add(property_row)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            return self._failed(lead, lead.property_id, "property_create", exc)
        return PropertyResolution(property_id=property_row.id, created=True)

    def _failed(self, lead: Lead, property_id: uuid.UUID | None, step: str, exc: SQLAlchemyError) -> PropertyResolution:
        observe_side_channel_failure(step)
        logger.warning(
            "sales.property.write_failed",
            extra={"lead_id": str(lead.id), "error_code": step, "error": str(exc)},
        )
        return PropertyResolution(property_id=property_id, warning=f"{step} failed: {exc}")
