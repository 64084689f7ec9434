"""
Entity Materializer — virtual (template) rows become real entities lazily.

Behavioral Contract:
- ensure_materialized is idempotent: the same template never yields two rows
- A virtual row's id is derived deterministically from its template key
- On commit the placeholder id is replaced (never duplicated) by the server
  id, and every edge, timer and lock keyed on the placeholder follows it
"""

import logging
from typing import Callable, Dict, List, Optional

from entity_sync.errors import PersistenceError, UnknownEntityError
from entity_sync.materialize.identity import IdentityMap
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.schema import EntitySchema
from entity_sync.registry.store import EntityRegistry, SyncObject

logger = logging.getLogger(__name__)


class EntityMaterializer:
    """Creates virtual rows on first edit and swaps in real ids on commit."""

    def __init__(
        self,
        registry: EntityRegistry,
        identity: IdentityMap,
        entity_schemas: Dict[str, EntitySchema],
    ):
        self.registry = registry
        self.identity = identity
        self.entity_schemas = entity_schemas
        self._remap_listeners: List[Callable[[str, str], None]] = []

    def add_remap_listener(self, listener: Callable[[str, str], None]) -> None:
        """Listener receives (placeholder_id, real_id) after each commit."""
        if listener not in self._remap_listeners:
            self._remap_listeners.append(listener)

    def _schema_for_template(self, template_key: str, kind: Optional[str]) -> Optional[EntitySchema]:
        if kind is not None:
            schema = self.entity_schemas.get(kind)
            if schema is not None and schema.has_template(template_key):
                return schema
            return None
        for schema in self.entity_schemas.values():
            if schema.has_template(template_key):
                return schema
        return None

    def virtual_id(self, aggregate_id: str, template_key: str) -> str:
        return self.identity.placeholder(aggregate_id, template_key)

    def ensure_materialized(
        self,
        key_or_id: str,
        aggregate_id: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> Entity:
        """Return the row for an id or template name, creating a virtual one if needed."""
        entity = self.registry.get_entity(self.identity.resolve(key_or_id))
        if entity is not None:
            return entity
        if aggregate_id is None:
            raise UnknownEntityError(key_or_id)

        aggregate = self.registry.get_aggregate(self.identity.resolve(aggregate_id))
        if aggregate is None:
            raise UnknownEntityError(aggregate_id)

        schema = self._schema_for_template(key_or_id, kind)
        if schema is None:
            raise UnknownEntityError(key_or_id)
        template_key = schema.canonical_template(key_or_id)

        placeholder = self.virtual_id(aggregate.id, template_key)
        entity = self.registry.get_entity(self._live_binding(placeholder))
        if entity is not None:
            return entity

        entity = self.registry.find_by_template(
            aggregate.id, schema.kind, template_key, schema.template_field
        )
        if entity is not None:
            return entity

        entity = Entity(
            id=placeholder,
            kind=schema.kind,
            aggregate_id=aggregate.id,
            template_key=template_key,
            is_virtual=True,
            status=PersistenceStatus.VIRTUAL,
            fields=schema.template_fields(template_key),
            relationships={r: set() for r in schema.relations},
        )
        self.registry.put_entity(entity)
        logger.info(f"Virtual {schema.kind} {placeholder} added to {aggregate.id}")
        return entity

    def _live_binding(self, placeholder: str) -> str:
        """Resolve a placeholder, dropping a binding to a row that no longer exists."""
        object_id = self.identity.resolve(placeholder)
        if object_id != placeholder and object_id not in self.registry:
            logger.debug(f"{placeholder} was bound to deleted {object_id}; unbinding")
            self.identity.forget(placeholder)
            return placeholder
        return object_id

    def ensure_virtual_aggregate(
        self,
        kind: str,
        template_key: str,
        fields: Optional[dict] = None,
        relationships: Optional[dict] = None,
    ) -> AggregateRoot:
        """A root that does not exist on the server yet (e.g., an unsaved order list)."""
        placeholder = self.identity.placeholder(kind, template_key)
        existing = self.registry.get_aggregate(self.identity.resolve(placeholder))
        if existing is not None:
            return existing
        aggregate = AggregateRoot(
            id=placeholder,
            kind=kind,
            template_key=template_key,
            is_virtual=True,
            status=PersistenceStatus.VIRTUAL,
            fields=dict(fields or {}),
            relationships={k: set(v) for k, v in (relationships or {}).items()},
        )
        self.registry.put_aggregate(aggregate)
        return aggregate

    def template_of(self, entity: Entity) -> Optional[Entity]:
        """The untouched form of a virtual row, used to detect a first meaningful edit."""
        if not entity.template_key:
            return None
        schema = self.entity_schemas.get(entity.kind)
        if schema is None:
            return None
        return Entity(
            id=entity.id,
            kind=entity.kind,
            aggregate_id=entity.aggregate_id,
            template_key=entity.template_key,
            is_virtual=True,
            status=PersistenceStatus.VIRTUAL,
            fields=schema.template_fields(entity.template_key),
        )

    def commit(self, placeholder_id: str, data: Optional[dict]) -> SyncObject:
        """Replace a placeholder with the server-issued id from a create response."""
        current_id = self.identity.resolve(placeholder_id)
        if current_id != placeholder_id:
            logger.warning(f"{placeholder_id} was already committed as {current_id}")
            return self.registry.require(current_id)

        if not data or data.get("id") is None:
            raise PersistenceError("Create response carried no id", placeholder_id)
        real_id = str(data["id"])

        if real_id != placeholder_id and real_id in self.registry:
            # The server handed back a row we already hold: keep it, drop the copy.
            logger.warning(
                f"Create for {placeholder_id} resolved to existing {real_id}; "
                f"returning the existing row"
            )
            existing = self.registry.require(real_id)
            virtual = self.registry.get(placeholder_id)
            if virtual is not None:
                for name, members in virtual.relationships.items():
                    existing.relationships.setdefault(name, set()).update(members)
                if isinstance(virtual, Entity):
                    self.registry.remove_entity(placeholder_id)
                else:
                    self.registry.remove_aggregate(placeholder_id)
            self.identity.bind(placeholder_id, real_id)
            self._notify(placeholder_id, real_id)
            return existing

        obj = self.registry.replace_id(placeholder_id, real_id)
        obj.is_virtual = False
        obj.status = PersistenceStatus.PERSISTED
        self.identity.bind(placeholder_id, real_id)
        logger.info(f"Materialized {placeholder_id} as {real_id}")
        self._notify(placeholder_id, real_id)
        return obj

    def _notify(self, placeholder_id: str, real_id: str) -> None:
        for listener in self._remap_listeners:
            listener(placeholder_id, real_id)
