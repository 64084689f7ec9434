"""Entity sync data models."""

from entity_sync.models.catalog import (
    AccessoryDetails,
    CatalogItem,
    Category,
    EdgingTapeDetails,
    HandleDetails,
    HardwareDetails,
    SheetDetails,
)
from entity_sync.models.config import EngineConfig
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.events import EventKind, SaveStatus, SyncEvent
from entity_sync.models.mutation import (
    BatchOutcome,
    MutationOutcome,
    MutationRecord,
    PendingMutation,
    SyncResult,
)
from entity_sync.models.schema import AggregateSchema, EntitySchema, PersistenceMode
from entity_sync.models.snapshot import EntitySnapshot, Snapshot
from entity_sync.models.validation import RowViolation

__all__ = [
    "AccessoryDetails",
    "AggregateRoot",
    "AggregateSchema",
    "BatchOutcome",
    "CatalogItem",
    "Category",
    "EdgingTapeDetails",
    "EngineConfig",
    "Entity",
    "EntitySchema",
    "EntitySnapshot",
    "EventKind",
    "HandleDetails",
    "HardwareDetails",
    "MutationOutcome",
    "MutationRecord",
    "PendingMutation",
    "PersistenceMode",
    "PersistenceStatus",
    "RowViolation",
    "SaveStatus",
    "SheetDetails",
    "Snapshot",
    "SyncEvent",
    "SyncResult",
]
