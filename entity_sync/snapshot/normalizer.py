"""
Snapshot Normalizer — turns an aggregate's editable state into a canonical,
order-independent value.

Behavioral Contract:
- Pure and deterministic: the same logical state always yields an equal Snapshot
- Total: never raises; incomplete rows are excluded, not errors
- Collections are sorted, empty values collapse to None
"""

import json
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.models.schema import AggregateSchema, EntitySchema
from entity_sync.models.snapshot import EntitySnapshot, Snapshot


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def to_number(value: Any) -> Optional[Any]:
    """Coerce a numeric input (possibly typed text) to int/float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN
            return None
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        if number != number:
            return None
        return int(number) if number.is_integer() else number
    return None


def canonical(value: Any) -> Any:
    """Canonical comparable form of a field value."""
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (set, frozenset, list, tuple)):
        items = [canonical(v) for v in value]
        items = [v for v in items if v is not None]
        if not items:
            return None
        return tuple(sorted(items, key=_sort_key))
    if isinstance(value, dict):
        items = [(str(k), canonical(v)) for k, v in value.items()]
        items = [(k, v) for k, v in items if v is not None]
        if not items:
            return None
        return tuple(sorted(items))
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (bool, int, float)):
        return value
    return str(value)


def _relations(
    relationships: Dict[str, Iterable[str]],
    names: Optional[List[str]] = None,
) -> Tuple[Tuple[str, Tuple[str, ...]], ...]:
    result = []
    for name in sorted(relationships):
        if names is not None and name not in names:
            continue
        members = tuple(sorted(str(m) for m in relationships[name] if m))
        if members:
            result.append((name, members))
    return tuple(result)


class SnapshotNormalizer:
    """Normalizes aggregates and rows according to their schemas."""

    def __init__(
        self,
        aggregate_schema: AggregateSchema,
        entity_schemas: Dict[str, EntitySchema],
    ):
        self.aggregate_schema = aggregate_schema
        self.entity_schemas = entity_schemas

    def schema_for(self, entity: Entity) -> EntitySchema:
        schema = self.entity_schemas.get(entity.kind)
        if schema is None:
            return EntitySchema(kind=entity.kind)
        return schema

    def field_value(self, schema: EntitySchema, name: str, value: Any) -> Any:
        if name in schema.numeric_fields:
            return to_number(value)
        return canonical(value)

    def identity_of(self, entity: Entity) -> Optional[str]:
        schema = self.schema_for(entity)
        if schema.identity_field:
            value = canonical(entity.fields.get(schema.identity_field))
            return None if value is None else str(value)
        return entity.template_key or entity.id

    def is_complete(self, entity: Entity) -> bool:
        """A row counts as data once it has an identity and every required value."""
        schema = self.schema_for(entity)
        if self.identity_of(entity) is None:
            return False
        for name in schema.required_fields:
            value = self.field_value(schema, name, entity.fields.get(name))
            if value is None:
                return False
            if name in schema.numeric_fields and value == 0:
                return False
        return True

    def normalize_entity(self, entity: Entity) -> Optional[EntitySnapshot]:
        """Comparison shape of one row, or None if the row is incomplete."""
        if not self.is_complete(entity):
            return None
        schema = self.schema_for(entity)
        names = schema.compared_fields
        if names is None:
            names = sorted(entity.fields)
        fields = []
        for name in sorted(set(names)):
            value = self.field_value(schema, name, entity.fields.get(name))
            if value is not None:
                fields.append((name, value))
        return EntitySnapshot(
            kind=entity.kind,
            identity=self.identity_of(entity),
            fields=tuple(fields),
            relationships=_relations(entity.relationships, schema.relations or None),
        )

    def normalize(self, aggregate: AggregateRoot, entities: Iterable[Entity]) -> Snapshot:
        """Canonical Snapshot of an aggregate and its complete rows."""
        schema = self.aggregate_schema
        fields = []
        for name in sorted(set(schema.compared_fields)):
            value = canonical(aggregate.fields.get(name))
            if value is not None:
                fields.append((name, value))

        rows = [self.normalize_entity(e) for e in entities]
        rows = [r for r in rows if r is not None]
        rows.sort(key=lambda r: (r.kind, r.identity, _sort_key(r.model_dump(mode="json"))))

        return Snapshot(
            aggregate_kind=aggregate.kind,
            fields=tuple(fields),
            relationships=_relations(aggregate.relationships, schema.relations or None),
            entities=tuple(rows),
        )
