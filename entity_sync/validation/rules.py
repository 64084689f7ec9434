"""
Row Validation — local checks run before anything is dispatched.

Behavioral Contract:
- Violations are reported per offending row, never as one generic error
- A row without an identity (no item selected yet) is not validated
- Empty dates are allowed; unparseable dates are violations
"""

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.models.schema import EntitySchema
from entity_sync.models.validation import RowViolation
from entity_sync.snapshot.normalizer import canonical, to_number


def _label(name: str) -> str:
    return name.replace("_", " ")


def parse_date(value: Any) -> Optional[date]:
    """ISO date (or datetime) to a date; empty values are None. Raises ValueError."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if "T" in text or " " in text:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)


class Validator:
    """Validates rows against their schemas and their aggregate."""

    def __init__(self, entity_schemas: Dict[str, EntitySchema]):
        self.entity_schemas = entity_schemas

    def schema_for(self, entity: Entity) -> EntitySchema:
        return self.entity_schemas.get(entity.kind) or EntitySchema(kind=entity.kind)

    def validate(
        self,
        entity: Entity,
        aggregate: Optional[AggregateRoot] = None,
        siblings: Optional[Iterable[Entity]] = None,
        changed_field: Optional[str] = None,
    ) -> List[RowViolation]:
        schema = self.schema_for(entity)
        violations: List[RowViolation] = []
        violations.extend(self._check_positive(entity, schema, siblings))
        violations.extend(self._check_dates(entity, schema, aggregate, changed_field))
        return violations

    def validate_rows(self, aggregate: AggregateRoot, entities: List[Entity]) -> List[RowViolation]:
        """Every row of an aggregate, in display order."""
        violations: List[RowViolation] = []
        for entity in entities:
            violations.extend(self.validate(entity, aggregate, entities))
        return violations

    # --- Positive numbers ---

    def _row_position(
        self, entity: Entity, schema: EntitySchema, siblings: Optional[Iterable[Entity]]
    ) -> Optional[int]:
        if siblings is None:
            return None
        group = entity.fields.get(schema.group_field) if schema.group_field else None
        same_group = [
            s for s in siblings
            if s.kind == entity.kind
            and (not schema.group_field or s.fields.get(schema.group_field) == group)
        ]
        for position, sibling in enumerate(same_group, start=1):
            if sibling.id == entity.id:
                return position
        return None

    def _check_positive(
        self, entity: Entity, schema: EntitySchema, siblings: Optional[Iterable[Entity]]
    ) -> List[RowViolation]:
        if not schema.positive_fields:
            return []
        identity = entity.fields.get(schema.identity_field) if schema.identity_field else entity.id
        if canonical(identity) is None:
            return []

        label = entity.fields.get(schema.label_field) if schema.label_field else None
        label = label or identity
        group = entity.fields.get(schema.group_field) if schema.group_field else None
        group = canonical(group) or entity.kind
        row = self._row_position(entity, schema, siblings)
        where = f'Item "{label}" in {group}'
        if row is not None:
            where += f" (row {row})"

        violations = []
        for name in schema.positive_fields:
            raw = entity.fields.get(name)
            if canonical(raw) is None:
                violations.append(RowViolation(
                    entity_id=entity.id, row=row, field=name,
                    message=f"{where} has an empty {_label(name)}. Please enter a {_label(name)}.",
                ))
                continue
            number = to_number(raw)
            if number is None or number <= 0:
                violations.append(RowViolation(
                    entity_id=entity.id, row=row, field=name,
                    message=(
                        f"{where} has a {_label(name)} of {raw}. "
                        f"{_label(name).capitalize()} must be greater than 0."
                    ),
                ))
        return violations

    # --- Dates ---

    def _date(self, entity_id: str, name: str, value: Any, violations: List[RowViolation]) -> Optional[date]:
        try:
            return parse_date(value)
        except ValueError:
            violations.append(RowViolation(
                entity_id=entity_id, field=name,
                message=f"{_label(name).capitalize()} is not a valid date: {value}",
            ))
            return None

    def _check_dates(
        self,
        entity: Entity,
        schema: EntitySchema,
        aggregate: Optional[AggregateRoot],
        changed_field: Optional[str],
    ) -> List[RowViolation]:
        violations: List[RowViolation] = []

        if schema.date_order:
            start_name, end_name = schema.date_order
            start = self._date(entity.id, start_name, entity.fields.get(start_name), violations)
            end = self._date(entity.id, end_name, entity.fields.get(end_name), violations)
            if start and end and start > end:
                if changed_field == start_name:
                    message = f"{_label(start_name).capitalize()} cannot be set after {_label(end_name)}"
                    field = start_name
                else:
                    message = f"{_label(end_name).capitalize()} cannot be set before {_label(start_name)}"
                    field = end_name
                violations.append(RowViolation(entity_id=entity.id, field=field, message=message))

        if aggregate is None:
            return violations
        owner = _label(aggregate.kind)
        kind = _label(entity.kind).capitalize()
        for name, (lower_name, upper_name) in schema.date_window.items():
            if changed_field is not None and name != changed_field:
                continue
            if any(v.field == name for v in violations):
                continue
            value = self._date(entity.id, name, entity.fields.get(name), violations)
            if value is None:
                continue
            lower = parse_date_or_none(aggregate.fields.get(lower_name)) if lower_name else None
            upper = parse_date_or_none(aggregate.fields.get(upper_name)) if upper_name else None
            if lower and value < lower:
                violations.append(RowViolation(
                    entity_id=entity.id, field=name,
                    message=f"{kind} {_label(name)} cannot be before the {owner} {_label(lower_name)}",
                ))
            elif upper and value > upper:
                violations.append(RowViolation(
                    entity_id=entity.id, field=name,
                    message=f"{kind} {_label(name)} cannot be after the {owner} {_label(upper_name)}",
                ))
        return violations


def parse_date_or_none(value: Any) -> Optional[date]:
    """Aggregate bounds that fail to parse impose no limit."""
    try:
        return parse_date(value)
    except ValueError:
        return None
