from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import Base
from app.metrics import observe_materialization_skip, observe_materialized_rows
from app.quotations.models import (
    ComponentType,
    CostItem,
    QuotationComponent,
    QuotationLineItem,
    QuotationSpace,
    SpaceType,
    TemplateLineItem,
    TemplateSpace,
)


logger = logging.getLogger("app.quotations.materializer")
tracer = trace.get_tracer("app.quotations.materializer")

GENERAL_ITEMS = "General Items"
UNNAMED_SPACE = "Unnamed Space"
UNNAMED_ITEM = "Unnamed Item"
DEFAULT_UNIT_CODE = "nos"
UNGROUPED = "none"


@dataclass(slots=True)
class SourceSpace:
    id: uuid.UUID
    space_type_id: uuid.UUID | None
    display_order: int = 0
    name_override: str | None = None


@dataclass(slots=True)
class SourceLineEntry:
    id: uuid.UUID
    source_space_id: uuid.UUID | None
    component_type_id: uuid.UUID | None
    cost_item_id: uuid.UUID | None
    display_order: int = 0
    component_variant_id: uuid.UUID | None = None
    rate_override: Decimal | None = None
    name_override: str | None = None
    unit_code_override: str | None = None
    notes: str | None = None


@dataclass(slots=True)
class EntryGroup:
    source_space_id: uuid.UUID | None
    component_type_id: uuid.UUID | None
    component_variant_id: uuid.UUID | None
    entries: list[SourceLineEntry] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return group_key(self.source_space_id, self.component_type_id)


@dataclass(slots=True)
class MaterializationSummary:
    spaces_created: int = 0
    components_created: int = 0
    line_items_created: int = 0
    rows_skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "spaces_created": self.spaces_created,
            "components_created": self.components_created,
            "line_items_created": self.line_items_created,
            "rows_skipped": self.rows_skipped,
        }


def group_key(source_space_id: uuid.UUID | None, component_type_id: uuid.UUID | None) -> tuple[str, str]:
    return (
        str(source_space_id) if source_space_id is not None else UNGROUPED,
        str(component_type_id) if component_type_id is not None else UNGROUPED,
    )


def order_spaces(spaces: Iterable[SourceSpace]) -> list[SourceSpace]:
    return sorted(spaces, key=lambda space: space.display_order)


def order_entries(spaces: Sequence[SourceSpace], entries: Iterable[SourceLineEntry]) -> list[SourceLineEntry]:
    """Sort by source space position, then component type, then display order."""
    space_position = {space.id: index for index, space in enumerate(order_spaces(spaces))}
    unplaced = len(space_position)

    def sort_key(entry: SourceLineEntry) -> tuple[int, int, str, int]:
        position = space_position.get(entry.source_space_id, unplaced) if entry.source_space_id else unplaced
        has_type = 0 if entry.component_type_id is not None else 1
        return (position, has_type, str(entry.component_type_id or ""), entry.display_order)

    return sorted(entries, key=sort_key)


def group_entries(spaces: Sequence[SourceSpace], entries: Iterable[SourceLineEntry]) -> list[EntryGroup]:
    groups: dict[tuple[str, str], EntryGroup] = {}
    for entry in order_entries(spaces, entries):
        key = group_key(entry.source_space_id, entry.component_type_id)
        group = groups.get(key)
        if group is None:
            # variant metadata is taken from the first entry seen for the group
            group = EntryGroup(
                source_space_id=entry.source_space_id,
                component_type_id=entry.component_type_id,
                component_variant_id=entry.component_variant_id,
            )
            groups[key] = group
        group.entries.append(entry)
    return list(groups.values())


class QuotationMaterializer:
    """Writes a space -> component -> line item hierarchy into a destination quotation.

    Rows are written one savepoint at a time: a row that fails to insert is logged and
    skipped, the rest of the copy proceeds. Unresolvable space and cost item names fall
    back to placeholders. The caller owns the commit.
    """

    def __init__(self, session: Session, *, source: str) -> None:
        self.session = session
        self.source = source

    def materialize(
        self,
        source_spaces: Sequence[SourceSpace],
        source_entries: Sequence[SourceLineEntry],
        destination_quotation_id: uuid.UUID,
    ) -> MaterializationSummary:
        summary = MaterializationSummary()
        with tracer.start_as_current_span("quotations.materialize") as span:
            span.set_attribute("quotation_id", str(destination_quotation_id))
            span.set_attribute("materialization.source", self.source)

            space_names = self._space_type_names(source_spaces)
            component_names = self._component_type_names(source_entries)
            cost_items = self._cost_items(source_entries)

            space_map: dict[uuid.UUID, uuid.UUID] = {}
            for space in order_spaces(source_spaces):
                name = space.name_override or space_names.get(space.space_type_id) or UNNAMED_SPACE
                row = QuotationSpace(
                    id=uuid.uuid4(),
                    quotation_id=destination_quotation_id,
                    space_type_id=space.space_type_id,
                    name=name,
                    display_order=space.display_order,
                )
                if self._insert(row, summary, "space", destination_quotation_id):
                    space_map[space.id] = row.id
                    summary.spaces_created += 1

            components_per_space: dict[uuid.UUID, int] = {}
            for group in group_entries(source_spaces, source_entries):
                destination_space_id = space_map.get(group.source_space_id) if group.source_space_id else None
                component_id: uuid.UUID | None = None
                if destination_space_id is not None and group.component_type_id is not None:
                    position = components_per_space.get(destination_space_id, 0)
                    component = QuotationComponent(
                        id=uuid.uuid4(),
                        quotation_id=destination_quotation_id,
                        space_id=destination_space_id,
                        component_type_id=group.component_type_id,
                        component_variant_id=group.component_variant_id,
                        name=component_names.get(group.component_type_id) or GENERAL_ITEMS,
                        display_order=position,
                    )
                    if self._insert(component, summary, "component", destination_quotation_id):
                        component_id = component.id
                        components_per_space[destination_space_id] = position + 1
                        summary.components_created += 1

                for entry in group.entries:
                    line_item = self._build_line_item(
                        entry,
                        cost_items.get(entry.cost_item_id) if entry.cost_item_id else None,
                        destination_quotation_id,
                        destination_space_id,
                        component_id,
                    )
                    if self._insert(line_item, summary, "line_item", destination_quotation_id):
                        summary.line_items_created += 1

            span.set_attribute("spaces_created", summary.spaces_created)
            span.set_attribute("components_created", summary.components_created)
            span.set_attribute("line_items_created", summary.line_items_created)
            span.set_attribute("rows_skipped", summary.rows_skipped)

        observe_materialized_rows(self.source, "space", summary.spaces_created)
        observe_materialized_rows(self.source, "component", summary.components_created)
        observe_materialized_rows(self.source, "line_item", summary.line_items_created)
        logger.info(
            "quotation.materialized",
            extra={"quotation_id": str(destination_quotation_id), "rows_skipped": summary.rows_skipped},
        )
        return summary

    @staticmethod
    def _build_line_item(
        entry: SourceLineEntry,
        cost_item: CostItem | None,
        quotation_id: uuid.UUID,
        space_id: uuid.UUID | None,
        component_id: uuid.UUID | None,
    ) -> QuotationLineItem:
        name = entry.name_override or (cost_item.name if cost_item is not None else None) or UNNAMED_ITEM
        unit_code = entry.unit_code_override or (cost_item.unit_code if cost_item is not None else None) or DEFAULT_UNIT_CODE

        if entry.rate_override is not None:
            rate = entry.rate_override
        elif cost_item is not None:
            rate = cost_item.default_rate
        else:
            rate = Decimal("0")

        return QuotationLineItem(
            id=uuid.uuid4(),
            quotation_id=quotation_id,
            space_id=space_id,
            component_id=component_id,
            cost_item_id=cost_item.id if cost_item is not None else None,
            name=name,
            unit_code=unit_code,
            rate=rate,
            quantity=None,
            length=None,
            width=None,
            amount=Decimal("0"),
            display_order=entry.display_order,
            notes=entry.notes,
        )

    def _insert(self, row: Base, summary: MaterializationSummary, kind: str, quotation_id: uuid.UUID) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except SQLAlchemyError as exc:
            self._skip(summary, kind, quotation_id, str(exc))
            return False
        return True

    def _skip(self, summary: MaterializationSummary, kind: str, quotation_id: uuid.UUID, error: str) -> None:
        summary.rows_skipped += 1
        observe_materialization_skip(self.source, kind)
        logger.warning(
            "quotation.materialize.row_skipped",
            extra={"quotation_id": str(quotation_id), "row_kind": kind, "error": error},
        )

    def _space_type_names(self, spaces: Sequence[SourceSpace]) -> dict[uuid.UUID | None, str]:
        ids = {space.space_type_id for space in spaces if space.space_type_id is not None}
        if not ids:
            return {}
        rows = self.session.execute(select(SpaceType.id, SpaceType.name).where(SpaceType.id.in_(ids))).all()
        return {row.id: row.name for row in rows}

    def _component_type_names(self, entries: Sequence[SourceLineEntry]) -> dict[uuid.UUID | None, str]:
        ids = {entry.component_type_id for entry in entries if entry.component_type_id is not None}
        if not ids:
            return {}
        rows = self.session.execute(select(ComponentType.id, ComponentType.name).where(ComponentType.id.in_(ids))).all()
        return {row.id: row.name for row in rows}

    def _cost_items(self, entries: Sequence[SourceLineEntry]) -> dict[uuid.UUID, CostItem]:
        ids = {entry.cost_item_id for entry in entries if entry.cost_item_id is not None}
        if not ids:
            return {}
        return {item.id: item for item in self.session.scalars(select(CostItem).where(CostItem.id.in_(ids)))}


def load_template_source(session: Session, template_id: uuid.UUID) -> tuple[list[SourceSpace], list[SourceLineEntry]]:
    spaces = [
        SourceSpace(
            id=row.id,
            space_type_id=row.space_type_id,
            display_order=row.display_order,
            name_override=row.default_name,
        )
        for row in session.scalars(select(TemplateSpace).where(TemplateSpace.template_id == template_id))
    ]
    entries = [
        SourceLineEntry(
            id=row.id,
            source_space_id=row.template_space_id,
            component_type_id=row.component_type_id,
            component_variant_id=row.component_variant_id,
            cost_item_id=row.cost_item_id,
            rate_override=row.rate,
            display_order=row.display_order,
            notes=row.notes,
        )
        for row in session.scalars(select(TemplateLineItem).where(TemplateLineItem.template_id == template_id))
    ]
    return spaces, entries


def load_quotation_source(session: Session, quotation_id: uuid.UUID) -> tuple[list[SourceSpace], list[SourceLineEntry]]:
    spaces = [
        SourceSpace(
            id=row.id,
            space_type_id=row.space_type_id,
            display_order=row.display_order,
            name_override=row.name,
        )
        for row in session.scalars(select(QuotationSpace).where(QuotationSpace.quotation_id == quotation_id))
    ]
    components = {
        row.id: row
        for row in session.scalars(select(QuotationComponent).where(QuotationComponent.quotation_id == quotation_id))
    }
    entries: list[SourceLineEntry] = []
    for row in session.scalars(select(QuotationLineItem).where(QuotationLineItem.quotation_id == quotation_id)):
        component = components.get(row.component_id) if row.component_id else None
        entries.append(
            SourceLineEntry(
                id=row.id,
                source_space_id=row.space_id,
                component_type_id=component.component_type_id if component is not None else None,
                component_variant_id=component.component_variant_id if component is not None else None,
                cost_item_id=row.cost_item_id,
                rate_override=row.rate,
                name_override=row.name,
                unit_code_override=row.unit_code,
                display_order=row.display_order,
                notes=row.notes,
            )
        )
    return spaces, entries
