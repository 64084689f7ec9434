"""Snapshots — immutable, order-independent projections used only for equality."""

from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class EntitySnapshot(BaseModel):
    """Comparison shape of one complete row."""

    model_config = ConfigDict(frozen=True)

    kind: str
    identity: str
    fields: Tuple[Tuple[str, Any], ...] = ()
    relationships: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()


class Snapshot(BaseModel):
    """Comparison shape of an Aggregate Root and its complete rows."""

    model_config = ConfigDict(frozen=True)

    aggregate_kind: str
    fields: Tuple[Tuple[str, Any], ...] = ()
    relationships: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    entities: Tuple[EntitySnapshot, ...] = ()

    def is_empty(self) -> bool:
        return not (self.fields or self.relationships or self.entities)

    def field(self, name: str) -> Optional[Any]:
        for key, value in self.fields:
            if key == name:
                return value
        return None
