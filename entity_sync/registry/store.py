"""
Entity Registry — the single shared mutable resource of the engine.

Mutated by: Materializer, local edits, relationship toggles, Rollback Manager
Queried by: Snapshot Normalizer, Dirty Detector, the UI layer

Behavioral Contract:
- Every Entity belongs to exactly one Aggregate Root at a time
- Callers re-derive from the registry immediately before mutating; the
  registry never hands out copies it expects to be written back
- Every mutation publishes a CHANGED event to subscribers
"""

import logging
from typing import Callable, Dict, List, Optional, Set, Union

from entity_sync.errors import UnknownEntityError
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus, _now
from entity_sync.models.events import EventKind, SyncEvent

logger = logging.getLogger(__name__)

SyncObject = Union[Entity, AggregateRoot]


class EntityRegistry:
    """
    In-memory registry of aggregates and their rows, keyed by id.
    Not thread-safe: owned by a single event loop.
    """

    def __init__(self):
        self._aggregates: Dict[str, AggregateRoot] = {}
        self._entities: Dict[str, Entity] = {}
        self._subscribers: List[Callable[[SyncEvent], None]] = []

    # --- Subscription ---

    def subscribe(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Error in subscriber for {event.kind.value}: {e}")

    def _changed(self, obj: SyncObject) -> None:
        obj.last_updated = _now()
        aggregate_id = obj.aggregate_id if isinstance(obj, Entity) else obj.id
        self.publish(SyncEvent(
            kind=EventKind.CHANGED,
            target_id=obj.id,
            aggregate_id=aggregate_id,
        ))

    # --- Lookup ---

    def get(self, object_id: str) -> Optional[SyncObject]:
        return self._entities.get(object_id) or self._aggregates.get(object_id)

    def require(self, object_id: str) -> SyncObject:
        obj = self.get(object_id)
        if obj is None:
            raise UnknownEntityError(object_id)
        return obj

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def get_aggregate(self, aggregate_id: str) -> Optional[AggregateRoot]:
        return self._aggregates.get(aggregate_id)

    def aggregates(self) -> List[AggregateRoot]:
        return list(self._aggregates.values())

    def entities_of(self, aggregate_id: str) -> List[Entity]:
        """Rows of an aggregate in display order."""
        aggregate = self._aggregates.get(aggregate_id)
        if aggregate is None:
            return []
        return [self._entities[i] for i in aggregate.entity_ids if i in self._entities]

    def find_by_template(
        self,
        aggregate_id: str,
        kind: str,
        template_key: str,
        template_field: Optional[str] = None,
    ) -> Optional[Entity]:
        """Find a row by its predefined name (case-insensitive)."""
        wanted = template_key.lower()
        for entity in self.entities_of(aggregate_id):
            if entity.kind != kind:
                continue
            if entity.template_key and entity.template_key.lower() == wanted:
                return entity
            if template_field:
                value = entity.fields.get(template_field)
                if isinstance(value, str) and value.lower() == wanted:
                    return entity
        return None

    def __contains__(self, object_id: str) -> bool:
        return object_id in self._entities or object_id in self._aggregates

    def __len__(self) -> int:
        return len(self._entities) + len(self._aggregates)

    def is_empty(self) -> bool:
        return len(self) == 0

    # --- Insert / remove ---

    def put_aggregate(self, aggregate: AggregateRoot) -> None:
        self._aggregates[aggregate.id] = aggregate
        self._changed(aggregate)

    def put_entity(self, entity: Entity, index: Optional[int] = None) -> None:
        """Insert or replace a row, attaching it to its aggregate."""
        aggregate = self._aggregates.get(entity.aggregate_id)
        if aggregate is None:
            raise UnknownEntityError(entity.aggregate_id)
        self._entities[entity.id] = entity
        if entity.id not in aggregate.entity_ids:
            if index is None or index >= len(aggregate.entity_ids):
                aggregate.entity_ids.append(entity.id)
            else:
                aggregate.entity_ids.insert(index, entity.id)
        self._changed(entity)

    def remove_entity(self, entity_id: str) -> bool:
        entity = self._entities.pop(entity_id, None)
        if entity is None:
            return False
        aggregate = self._aggregates.get(entity.aggregate_id)
        if aggregate and entity_id in aggregate.entity_ids:
            aggregate.entity_ids.remove(entity_id)
        entity.status = PersistenceStatus.DELETED
        self.publish(SyncEvent(
            kind=EventKind.REMOVED,
            target_id=entity_id,
            aggregate_id=entity.aggregate_id,
        ))
        return True

    def remove_aggregate(self, aggregate_id: str) -> List[SyncObject]:
        """Remove an aggregate together with its rows. Returns what was removed."""
        aggregate = self._aggregates.pop(aggregate_id, None)
        if aggregate is None:
            return []
        removed: List[SyncObject] = [aggregate]
        for entity_id in list(aggregate.entity_ids):
            entity = self._entities.pop(entity_id, None)
            if entity is not None:
                entity.status = PersistenceStatus.DELETED
                removed.append(entity)
        aggregate.status = PersistenceStatus.DELETED
        self.publish(SyncEvent(
            kind=EventKind.REMOVED,
            target_id=aggregate_id,
            aggregate_id=aggregate_id,
        ))
        return removed

    # --- Field-level mutation ---

    def set_field(self, object_id: str, field: str, value) -> SyncObject:
        obj = self.require(object_id)
        obj.fields[field] = value
        self._changed(obj)
        return obj

    def set_fields(self, object_id: str, values: dict) -> SyncObject:
        obj = self.require(object_id)
        obj.fields.update(values)
        self._changed(obj)
        return obj

    def set_relation(self, object_id: str, relation: str, members: Set[str]) -> SyncObject:
        obj = self.require(object_id)
        obj.relationships[relation] = set(members)
        self._changed(obj)
        return obj

    def touch(self, object_id: str) -> None:
        """Announce an in-place change made by the caller."""
        obj = self.get(object_id)
        if obj is not None:
            self._changed(obj)

    # --- Identity ---

    def replace_id(self, old_id: str, new_id: str) -> SyncObject:
        """
        Atomically move an object from a placeholder id to its real id,
        migrating row membership and every relationship edge that names it.
        """
        if old_id == new_id:
            return self.require(old_id)

        if old_id in self._entities:
            entity = self._entities.pop(old_id)
            entity.id = new_id
            self._entities[new_id] = entity
            aggregate = self._aggregates.get(entity.aggregate_id)
            if aggregate:
                aggregate.entity_ids = [
                    new_id if i == old_id else i for i in aggregate.entity_ids
                ]
            obj: SyncObject = entity
        elif old_id in self._aggregates:
            aggregate = self._aggregates.pop(old_id)
            aggregate.id = new_id
            self._aggregates[new_id] = aggregate
            for entity_id in aggregate.entity_ids:
                child = self._entities.get(entity_id)
                if child:
                    child.aggregate_id = new_id
            obj = aggregate
        else:
            raise UnknownEntityError(old_id)

        for other in list(self._entities.values()) + list(self._aggregates.values()):
            for members in other.relationships.values():
                if old_id in members:
                    members.discard(old_id)
                    members.add(new_id)

        logger.debug(f"Identity {old_id} -> {new_id}")
        self._changed(obj)
        return obj

    # --- Rollback support ---

    def capture(self, target_id: str, include_children: bool = False) -> Dict[str, SyncObject]:
        """Deep copies of the target (and optionally its rows), keyed by id."""
        obj = self.get(target_id)
        if obj is None:
            return {}
        captured: Dict[str, SyncObject] = {obj.id: obj.model_copy(deep=True)}
        if include_children and isinstance(obj, AggregateRoot):
            for entity in self.entities_of(obj.id):
                captured[entity.id] = entity.model_copy(deep=True)
        return captured

    def restore_object(self, copy: SyncObject, index: Optional[int] = None) -> None:
        """Reinsert a previously captured object."""
        restored = copy.model_copy(deep=True)
        if isinstance(restored, AggregateRoot):
            self._aggregates[restored.id] = restored
            self._changed(restored)
        else:
            self.put_entity(restored, index=index)
