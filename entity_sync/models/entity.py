"""Entities and Aggregate Roots — the units of state the engine keeps in sync."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PersistenceStatus(str, Enum):
    """Per-object persistence state machine.

    VIRTUAL -> MATERIALIZING -> PERSISTED
    PERSISTED -> SAVING -> PERSISTED (confirmed or rolled back)
    any -> DELETED (removed from the registry)
    """
    VIRTUAL = "virtual"
    MATERIALIZING = "materializing"
    PERSISTED = "persisted"
    SAVING = "saving"
    DELETED = "deleted"


class Entity(BaseModel):
    """A single row owned by exactly one Aggregate Root."""

    id: str                                 # server id or deterministic placeholder
    kind: str                               # e.g., "stage", "line_item"
    aggregate_id: str
    template_key: Optional[str] = None      # predefined row name for virtual rows
    is_virtual: bool = False
    status: PersistenceStatus = PersistenceStatus.PERSISTED
    fields: Dict[str, Any] = {}
    relationships: Dict[str, Set[str]] = {}
    last_updated: datetime = Field(default_factory=_now)


class AggregateRoot(BaseModel):
    """The persistence-atomic container owning a set of entities."""

    id: str
    kind: str                               # e.g., "lot", "materials_to_order"
    template_key: Optional[str] = None
    is_virtual: bool = False
    status: PersistenceStatus = PersistenceStatus.PERSISTED
    fields: Dict[str, Any] = {}
    relationships: Dict[str, Set[str]] = {}
    attachments: List[str] = []             # attached file ids
    entity_ids: List[str] = []              # ordered row ids
    last_updated: datetime = Field(default_factory=_now)
