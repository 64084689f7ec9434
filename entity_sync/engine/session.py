"""
Sync Engine — the surface a screen talks to.

Flow of an edit:
  edit → Materializer (target exists locally) → local state mutated
  → Debounce Coalescer (text fields) or immediate attempt (discrete intents)
  → Dirty Detector / Validator gate → Rollback Manager attempt → Sync Client
  → baseline updated on success, prior state restored on failure

Behavioral Contract:
- Every outgoing mutation for an entity goes through its Rollback Manager queue
- A timer never fires against an aggregate that was removed
- Validation failures never reach the network
- Removing the last live row of a persisted aggregate needs confirmation
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from entity_sync.client.base import SyncClient, to_payload
from entity_sync.errors import (
    CascadeDeleteHazard,
    PersistenceError,
    SyncError,
    UnknownEntityError,
    ValidationError,
)
from entity_sync.materialize.identity import IdentityMap
from entity_sync.materialize.materializer import EntityMaterializer
from entity_sync.models.catalog import CatalogItem
from entity_sync.models.config import EngineConfig
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.events import EventKind, SaveStatus, SyncEvent
from entity_sync.models.mutation import (
    BatchOutcome,
    MutationOutcome,
    PendingMutation,
    SyncResult,
)
from entity_sync.models.schema import AggregateSchema, EntitySchema, PersistenceMode
from entity_sync.models.snapshot import Snapshot
from entity_sync.models.validation import RowViolation
from entity_sync.registry.store import EntityRegistry, SyncObject
from entity_sync.relations.toggler import RelationshipToggler
from entity_sync.rollback.manager import RollbackManager
from entity_sync.scheduling.coalescer import DebounceCoalescer
from entity_sync.snapshot.dirty import DirtyDetector
from entity_sync.snapshot.normalizer import SnapshotNormalizer
from entity_sync.validation.rules import Validator

logger = logging.getLogger(__name__)

_STATUS_KEY = "__status__"


class SyncEngine:
    """
    Optimistic synchronization of one kind of aggregate and its rows.
    Owned by a single event loop.
    """

    def __init__(
        self,
        aggregate_schema: AggregateSchema,
        entity_schemas: Union[List[EntitySchema], Dict[str, EntitySchema]],
        clients: Union[SyncClient, Dict[str, SyncClient]],
        config: Optional[EngineConfig] = None,
        registry: Optional[EntityRegistry] = None,
        journal=None,
    ):
        if not isinstance(entity_schemas, dict):
            entity_schemas = {s.kind: s for s in entity_schemas}
        self.aggregate_schema = aggregate_schema
        self.entity_schemas: Dict[str, EntitySchema] = entity_schemas
        self.clients = clients
        self.config = config or EngineConfig()
        self.registry = registry or EntityRegistry()
        self.journal = journal

        self.identity = IdentityMap(self.config.placeholder_prefix)
        self.normalizer = SnapshotNormalizer(aggregate_schema, entity_schemas)
        self.detector = DirtyDetector(self.normalizer)
        self.coalescer = DebounceCoalescer(self.config.debounce_seconds)
        self.materializer = EntityMaterializer(self.registry, self.identity, entity_schemas)
        self.rollback = RollbackManager(
            self.registry, self.identity, journal, lock_scope=self._lock_scope
        )
        self.toggler = RelationshipToggler(self.registry, self.rollback)
        self.validator = Validator(entity_schemas)

        self._indicators = DebounceCoalescer(self.config.saved_indicator_seconds)
        self._origins: Dict[Tuple[str, str], Any] = {}
        self._statuses: Dict[str, SaveStatus] = {}

        self.materializer.add_remap_listener(self.coalescer.rekey_entity)
        self.materializer.add_remap_listener(self.rollback.rekey)
        self.materializer.add_remap_listener(self._rekey_local)
        self._unsubscribe = self.registry.subscribe(self._on_event)

    @property
    def aggregate_mode(self) -> bool:
        return self.aggregate_schema.mode == PersistenceMode.AGGREGATE

    # --- Wiring ---

    def _client_for(self, kind: str) -> SyncClient:
        if isinstance(self.clients, SyncClient):
            return self.clients
        client = self.clients.get(kind)
        if client is None:
            raise SyncError(f"No sync client registered for {kind}")
        return client

    def _lock_scope(self, object_id: str) -> str:
        if self.aggregate_mode:
            entity = self.registry.get_entity(object_id)
            if entity is not None:
                return entity.aggregate_id
        return object_id

    def _rekey_local(self, old_id: str, new_id: str) -> None:
        for key in [k for k in self._origins if k[0] == old_id]:
            self._origins[(new_id, key[1])] = self._origins.pop(key)
        if old_id in self._statuses:
            self._statuses[new_id] = self._statuses.pop(old_id)
        self._indicators.rekey_entity(old_id, new_id)

    def _schema_of(self, obj: SyncObject) -> Optional[EntitySchema]:
        if isinstance(obj, Entity):
            return self.normalizer.schema_for(obj)
        return None

    def _root_of(self, obj: SyncObject) -> AggregateRoot:
        if isinstance(obj, AggregateRoot):
            return obj
        aggregate = self.registry.get_aggregate(obj.aggregate_id)
        if aggregate is None:
            raise UnknownEntityError(obj.aggregate_id)
        return aggregate

    # --- Subscription and save status ---

    def subscribe(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        return self.registry.subscribe(callback)

    def _on_event(self, event: SyncEvent) -> None:
        if event.kind == EventKind.SAVING:
            self._indicators.cancel((event.target_id, _STATUS_KEY))
            self._statuses[event.target_id] = SaveStatus.SAVING
        elif event.kind == EventKind.SAVED:
            self._flash(event.target_id, SaveStatus.SAVED, self.config.saved_indicator_seconds)
        elif event.kind in (EventKind.ROLLED_BACK, EventKind.VALIDATION_FAILED):
            self._flash(event.target_id, SaveStatus.ERROR, self.config.error_indicator_seconds)
        elif event.kind == EventKind.REMOVED:
            self._statuses.pop(event.target_id, None)
            self._indicators.cancel_entity(event.target_id)

    def _flash(self, target_id: str, status: SaveStatus, seconds: float) -> None:
        """Show a status for a while, then return to idle."""
        self._statuses[target_id] = status

        def reset(_) -> None:
            self._statuses.pop(self.identity.resolve(target_id), None)

        self._indicators.schedule((target_id, _STATUS_KEY), status, reset, window_seconds=seconds)

    def save_status(self, target_id: str) -> SaveStatus:
        object_id = self.identity.resolve(target_id)
        if self.coalescer.pending_keys(object_id):
            return SaveStatus.PENDING
        status = self._statuses.get(object_id)
        if status is None and self.aggregate_mode:
            entity = self.registry.get_entity(object_id)
            if entity is not None:
                return self.save_status(entity.aggregate_id)
        return status or SaveStatus.IDLE

    def pending_mutation(self, target_id: str) -> Optional[PendingMutation]:
        return self.rollback.pending_for(target_id)

    # --- Loading ---

    def load(self, aggregate: AggregateRoot, entities: Iterable[Entity] = ()) -> AggregateRoot:
        """Register server data as persisted and make it the baseline."""
        aggregate = aggregate.model_copy(deep=True)
        aggregate.is_virtual = False
        aggregate.status = PersistenceStatus.PERSISTED
        aggregate.entity_ids = []
        self.registry.put_aggregate(aggregate)

        for entity in entities:
            entity = entity.model_copy(deep=True)
            entity.aggregate_id = aggregate.id
            entity.is_virtual = False
            entity.status = PersistenceStatus.PERSISTED
            schema = self.normalizer.schema_for(entity)
            if entity.template_key is None and schema.template_field:
                name = entity.fields.get(schema.template_field)
                if isinstance(name, str) and schema.has_template(name):
                    entity.template_key = schema.canonical_template(name)
            self.registry.put_entity(entity)
            self.rollback.set_baseline(entity)

        self.rollback.set_baseline(self.registry.require(aggregate.id))
        logger.info(f"Loaded {aggregate.kind} {aggregate.id} with {len(aggregate.entity_ids)} row(s)")
        return aggregate

    def new_aggregate(
        self,
        template_key: str = "new",
        fields: Optional[dict] = None,
        relationships: Optional[Dict[str, Iterable[str]]] = None,
    ) -> AggregateRoot:
        """A root that exists only locally until its first save."""
        return self.materializer.ensure_virtual_aggregate(
            self.aggregate_schema.kind, template_key, fields, relationships
        )

    # --- Reads ---

    def get(self, object_id: str) -> SyncObject:
        return self.registry.require(self.identity.resolve(object_id))

    def rows(self, aggregate_id: str) -> List[Entity]:
        """Rows in display order, with unmaterialized templates as virtual previews."""
        aggregate = self._aggregate(aggregate_id)
        rows = self.registry.entities_of(aggregate.id)
        for schema in self.entity_schemas.values():
            for template in schema.templates:
                if self.registry.find_by_template(aggregate.id, schema.kind, template, schema.template_field):
                    continue
                rows.append(Entity(
                    id=self.materializer.virtual_id(aggregate.id, template),
                    kind=schema.kind,
                    aggregate_id=aggregate.id,
                    template_key=template,
                    is_virtual=True,
                    status=PersistenceStatus.VIRTUAL,
                    fields=schema.template_fields(template),
                    relationships={r: set() for r in schema.relations},
                ))
        return rows

    def _aggregate(self, aggregate_id: str) -> AggregateRoot:
        aggregate = self.registry.get_aggregate(self.identity.resolve(aggregate_id))
        if aggregate is None:
            raise UnknownEntityError(aggregate_id)
        return aggregate

    def _live_rows(self, aggregate_id: str) -> List[Entity]:
        """Rows that count as state: untouched virtual rows are not data yet."""
        rows = []
        for row in self.registry.entities_of(aggregate_id):
            if row.is_virtual and row.template_key:
                template = self.materializer.template_of(row)
                if template is not None and not self.detector.entity_is_dirty(row, template):
                    continue
            rows.append(row)
        return rows

    def get_snapshot(self, aggregate_id: str) -> Snapshot:
        aggregate = self._aggregate(aggregate_id)
        return self.normalizer.normalize(aggregate, self._live_rows(aggregate.id))

    def baseline_snapshot(self, aggregate_id: str) -> Optional[Snapshot]:
        baseline = self.rollback.baseline(aggregate_id)
        if baseline is None:
            return None
        return self.normalizer.normalize(baseline, self.rollback.baselines_for(baseline.id))

    def is_dirty(self, aggregate_id: str) -> bool:
        return self.detector.is_dirty(
            self.get_snapshot(aggregate_id), self.baseline_snapshot(aggregate_id)
        )

    def can_persist(self, aggregate_id: str) -> bool:
        aggregate = self._aggregate(aggregate_id)
        return self.detector.can_persist(
            aggregate,
            self._live_rows(aggregate.id),
            self.get_snapshot(aggregate.id),
            self.baseline_snapshot(aggregate.id),
        )

    # --- Materialization ---

    def materialize(self, aggregate_id: str, template_key: str) -> Entity:
        """Local row for a predefined template; created remotely on first save."""
        return self.materializer.ensure_materialized(template_key, aggregate_id)

    def _target(self, target: str, aggregate_id: Optional[str] = None) -> SyncObject:
        obj = self.registry.get(self.identity.resolve(target))
        if obj is not None:
            return obj
        if aggregate_id is None:
            aggregates = self.registry.aggregates()
            if len(aggregates) != 1:
                raise UnknownEntityError(target)
            aggregate_id = aggregates[0].id
        return self.materializer.ensure_materialized(target, aggregate_id)

    # --- Validation ---

    def _violations(
        self, obj: SyncObject, changed_field: Optional[str] = None
    ) -> List[RowViolation]:
        if isinstance(obj, AggregateRoot):
            if self.aggregate_mode:
                return self.validator.validate_rows(obj, self.registry.entities_of(obj.id))
            return []
        aggregate = self.registry.get_aggregate(obj.aggregate_id)
        siblings = self.registry.entities_of(obj.aggregate_id)
        siblings = [obj if s.id == obj.id else s for s in siblings]
        return self.validator.validate(obj, aggregate, siblings, changed_field)

    def _reject(self, obj: SyncObject, violations: List[RowViolation]) -> None:
        self.registry.publish(SyncEvent(
            kind=EventKind.VALIDATION_FAILED,
            target_id=obj.id,
            aggregate_id=obj.aggregate_id if isinstance(obj, Entity) else obj.id,
            message="; ".join(v.message for v in violations),
            violations=violations,
        ))

    # --- Persistence ---

    def _record_payload(self, target_id: str, payload: Dict[str, Any]) -> None:
        pending = self.rollback.pending_for(target_id)
        if pending is not None:
            pending.request_payload = payload

    async def _persist_entity(self, entity_id: str) -> SyncResult:
        obj = self.registry.require(entity_id)
        client = self._client_for(obj.kind)
        payload = to_payload(obj)
        self._record_payload(entity_id, payload)

        if not obj.is_virtual:
            return await client.update(obj.id, payload)

        if isinstance(obj, Entity):
            parent = self.registry.get_aggregate(obj.aggregate_id)
            if parent is None or parent.is_virtual:
                raise PersistenceError(f"{obj.aggregate_id} has not been created yet", entity_id)
        result = await client.create(payload)
        if result.status:
            self.materializer.commit(entity_id, result.data)
        return result

    async def _persist_aggregate(self, aggregate_id: str) -> SyncResult:
        root = self._aggregate(aggregate_id)
        rows = [r for r in self.registry.entities_of(root.id) if self.normalizer.is_complete(r)]
        row_ids = {r.id for r in rows}
        payload = to_payload(root, rows, self.aggregate_schema.payload_rows_key)
        self._record_payload(root.id, payload)

        client = self._client_for(root.kind)
        if root.is_virtual:
            result = await client.create(payload)
            if result.status:
                root = self.materializer.commit(root.id, result.data)
        else:
            result = await client.update(root.id, payload)
        if result.status:
            for row in self.registry.entities_of(root.id):
                if row.id in row_ids:
                    row.is_virtual = False
                    row.status = PersistenceStatus.PERSISTED
        return result

    async def _attempt(
        self,
        obj: SyncObject,
        mutate: Callable[[str], None],
        origin: Optional[Dict[str, Dict[str, Any]]] = None,
        origin_relations: Optional[Dict[str, Dict[str, Set[str]]]] = None,
    ) -> MutationOutcome:
        """Route an attempt to the row or, in aggregate mode, to its root."""
        if self.aggregate_mode:
            root = self._root_of(obj)
            return await self.rollback.attempt(
                root.id, mutate, self._persist_aggregate,
                origin=origin, origin_relations=origin_relations, include_children=True,
            )
        operation = "create" if obj.is_virtual else "update"
        return await self.rollback.attempt(
            obj.id, mutate, self._persist_entity,
            origin=origin, origin_relations=origin_relations, operation=operation,
        )

    def _worth_saving(self, obj: SyncObject) -> bool:
        if self.aggregate_mode:
            return self.can_persist(self._root_of(obj).id)
        if isinstance(obj, AggregateRoot):
            baseline = self.rollback.baseline(obj.id)
            if baseline is None:
                return True
            return self.normalizer.normalize(obj, []) != self.normalizer.normalize(baseline, [])
        if obj.is_virtual:
            template = self.materializer.template_of(obj)
            return template is None or self.detector.entity_is_dirty(obj, template)
        return self.detector.entity_is_dirty(obj, self.rollback.baseline(obj.id))

    async def _gated_attempt(
        self,
        obj: SyncObject,
        mutate: Callable[[str], None],
        origin: Optional[Dict[str, Dict[str, Any]]] = None,
        origin_relations: Optional[Dict[str, Dict[str, Set[str]]]] = None,
    ) -> MutationOutcome:
        """Attempt only when there is something valid worth persisting."""
        if not self._worth_saving(obj):
            logger.debug(f"Nothing to persist for {obj.id}")
            return MutationOutcome(entity_id=obj.id, ok=True, skipped=True)
        subject = self._root_of(obj) if self.aggregate_mode else obj
        violations = self._violations(subject)
        if violations:
            self._reject(subject, violations)
            return MutationOutcome(
                entity_id=obj.id, ok=False, skipped=True,
                message="; ".join(v.message for v in violations),
            )
        return await self._attempt(obj, mutate, origin, origin_relations)

    # --- Edits ---

    def _debounced_fields(self, obj: SyncObject) -> List[str]:
        if isinstance(obj, Entity):
            return self.normalizer.schema_for(obj).debounced_fields
        return self.aggregate_schema.debounced_fields

    async def edit(
        self,
        target: str,
        field: str,
        value: Any,
        aggregate_id: Optional[str] = None,
    ) -> Optional[MutationOutcome]:
        """
        Change one field. Text fields are applied now and persisted after the
        quiescence window (returns None); other fields persist immediately.
        """
        obj = self._target(target, aggregate_id)
        schema = self._schema_of(obj)
        if (
            isinstance(obj, Entity) and obj.is_virtual and obj.template_key and schema is not None
            and field == schema.template_field and value != obj.fields.get(field)
        ):
            raise ValidationError([RowViolation(
                entity_id=obj.id, field=field,
                message=f"The {field} of a predefined {obj.kind} cannot be changed",
            )])

        if field in self._debounced_fields(obj):
            self._edit_debounced(obj, field, value)
            return None
        return await self.update_fields(obj.id, {field: value})

    def _edit_debounced(self, obj: SyncObject, field: str, value: Any) -> None:
        key = (obj.id, field)
        if key not in self._origins:
            self._origins[key] = self._last_known_good(obj, field)
        self.registry.set_field(obj.id, field, value)
        object_id = obj.id
        self.coalescer.schedule(key, value, lambda _: self._fire_debounced(object_id, field))

    def _last_known_good(self, obj: SyncObject, field: str) -> Any:
        baseline = self.rollback.baseline(obj.id)
        return copy.deepcopy((baseline or obj).fields.get(field))

    async def _fire_debounced(self, object_id: str, field: str) -> MutationOutcome:
        object_id = self.identity.resolve(object_id)
        had_origin = (object_id, field) in self._origins
        origin = self._origins.pop((object_id, field), None)
        obj = self.registry.get(object_id)
        if obj is None:
            return MutationOutcome(entity_id=object_id, ok=False, discarded=True)
        logger.debug(f"Persisting debounced {field} of {object_id}")
        origins = {object_id: {field: origin}} if had_origin else None
        outcome = await self._gated_attempt(obj, lambda _: None, origin=origins)
        if outcome.skipped and had_origin:
            # nothing was sent; the next attempt restores to the same origin
            self._origins.setdefault((object_id, field), origin)
        return outcome

    async def update_fields(self, target_id: str, values: Dict[str, Any]) -> MutationOutcome:
        """Apply and persist several fields at once (immediate, validated first)."""
        obj = self.registry.require(self.identity.resolve(target_id))
        candidate = obj.model_copy(deep=True)
        candidate.fields.update(values)
        changed = next(iter(values)) if len(values) == 1 else None
        if isinstance(candidate, Entity):
            violations = self._violations(candidate, changed)
        else:
            violations = []
        if violations:
            self._reject(obj, violations)
            raise ValidationError(violations)

        object_id = obj.id

        def mutate(_: str) -> None:
            self.registry.set_fields(self.identity.resolve(object_id), values)

        if self.aggregate_mode:
            return await self._apply_then_save(obj, mutate, values)
        return await self._attempt(obj, mutate)

    async def _apply_then_save(
        self,
        obj: SyncObject,
        mutate: Callable[[str], None],
        values: Optional[Dict[str, Any]] = None,
        relations: Optional[Dict[str, Set[str]]] = None,
    ) -> MutationOutcome:
        """Aggregate mode: keep the local change even when the root is not ready to save."""
        origin = {obj.id: {k: copy.deepcopy(obj.fields.get(k)) for k in values}} if values else None
        origin_relations = {obj.id: relations} if relations else None
        mutate(obj.id)
        return await self._gated_attempt(
            obj, lambda _: None, origin=origin, origin_relations=origin_relations
        )

    async def select_item(self, row_id: str, item: CatalogItem) -> MutationOutcome:
        """Point a row at a catalog item; the quantity starts at 1."""
        row = self.registry.get_entity(self.identity.resolve(row_id))
        if row is None:
            raise UnknownEntityError(row_id)
        schema = self.normalizer.schema_for(row)
        values: Dict[str, Any] = {schema.identity_field or "item_id": item.id}
        if schema.group_field:
            values[schema.group_field] = item.category.value
        if schema.label_field:
            values[schema.label_field] = item.label()
        for name in schema.positive_fields:
            if self.normalizer.field_value(schema, name, row.fields.get(name)) is None:
                values[name] = 1
        return await self.update_fields(row.id, values)

    async def add_row(
        self,
        aggregate_id: str,
        kind: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        index: Optional[int] = None,
    ) -> Entity:
        """Add a new row. Complete rows of entity-mode aggregates are created at once."""
        aggregate = self._aggregate(aggregate_id)
        if kind is None:
            kinds = self.aggregate_schema.row_kinds or list(self.entity_schemas)
            kind = kinds[0]
        schema = self.entity_schemas.get(kind) or EntitySchema(kind=kind)
        values = dict(schema.defaults)
        values.update(fields or {})
        row = Entity(
            id=self.identity.placeholder(aggregate.id, f"row-{uuid.uuid4().hex[:8]}"),
            kind=kind,
            aggregate_id=aggregate.id,
            is_virtual=True,
            status=PersistenceStatus.VIRTUAL,
            fields=values,
            relationships={r: set() for r in schema.relations},
        )

        if self.aggregate_mode or not self.normalizer.is_complete(row):
            self.registry.put_entity(row, index=index)
            return row

        violations = self.validator.validate(row, aggregate, None)
        if violations:
            self._reject(row, violations)
            raise ValidationError(violations)
        self.registry.put_entity(row, index=index)
        outcome = await self._attempt(row, lambda _: None)
        if outcome.rolled_back:
            # a row that was never created has nothing to go back to
            self.registry.remove_entity(row.id)
            raise PersistenceError(outcome.message or "Create failed", row.id)
        return self.registry.require(self.identity.resolve(row.id))

    # --- Relationships ---

    async def toggle(
        self,
        target: str,
        relation: str,
        member_id: str,
        aggregate_id: Optional[str] = None,
    ) -> Set[str]:
        """Add or remove one member; returns the set as it stands once settled."""
        obj = self._target(target, aggregate_id)
        if self.aggregate_mode:
            before = set(obj.relationships.get(relation, set()))
            object_id = obj.id
            await self._apply_then_save(
                obj,
                lambda _: self.toggler.apply(self.identity.resolve(object_id), relation, member_id),
                relations={relation: before},
            )
        else:
            await self.toggler.toggle(obj.id, relation, member_id, self._persist_entity)
        settled = self.registry.get(self.identity.resolve(obj.id))
        if settled is None:
            return set()
        return set(settled.relationships.get(relation, set()))

    # --- Removal ---

    def _is_last_live_row(self, entity: Entity, aggregate: AggregateRoot) -> bool:
        if aggregate.is_virtual or not self.aggregate_schema.delete_when_empty:
            return False
        rows = self.registry.entities_of(aggregate.id)
        if self.aggregate_mode:
            live = [r for r in rows if self.normalizer.is_complete(r)]
        else:
            live = [r for r in rows if not r.is_virtual]
        return len(live) == 1 and live[0].id == entity.id

    def _forget_timers(self, object_ids: Iterable[str]) -> None:
        ids = set(object_ids)
        self.coalescer.cancel_where(lambda k: k[0] in ids)
        for key in [k for k in self._origins if k[0] in ids]:
            del self._origins[key]

    def _forget_identities(self, object_ids: Iterable[str]) -> None:
        """Deleted objects no longer answer to their placeholders."""
        for object_id in object_ids:
            self.identity.forget(object_id)

    async def remove(self, entity_id: str, confirm_cascade: bool = False) -> MutationOutcome:
        """
        Delete a row. The last live row of a persisted aggregate takes the
        aggregate with it, which requires confirm_cascade=True.
        """
        entity = self.registry.get_entity(self.identity.resolve(entity_id))
        if entity is None:
            raise UnknownEntityError(entity_id)
        aggregate = self._root_of(entity)

        if self._is_last_live_row(entity, aggregate):
            if not confirm_cascade:
                self.registry.publish(SyncEvent(
                    kind=EventKind.CASCADE_REQUIRED,
                    target_id=entity.id,
                    aggregate_id=aggregate.id,
                    message=f"Removing {entity.id} deletes {aggregate.id}",
                ))
                raise CascadeDeleteHazard(aggregate.id, entity.id)
            return await self.remove_aggregate(aggregate.id)

        self._forget_timers([entity.id])
        row_id = entity.id

        def mutate(_: str) -> None:
            self.registry.remove_entity(self.identity.resolve(row_id))

        if self.aggregate_mode:
            if aggregate.is_virtual or not self.normalizer.is_complete(entity):
                mutate(row_id)
                return MutationOutcome(entity_id=row_id, ok=True)
            outcome = await self.rollback.attempt(
                aggregate.id, mutate, self._persist_aggregate, include_children=True,
            )
        elif entity.is_virtual:
            mutate(row_id)
            return MutationOutcome(entity_id=row_id, ok=True)
        else:
            client = self._client_for(entity.kind)
            outcome = await self.rollback.attempt(
                row_id, mutate, lambda target_id: client.delete(target_id), operation="delete",
            )
        if outcome.ok:
            self._forget_identities([row_id])
        return outcome

    async def remove_aggregate(self, aggregate_id: str) -> MutationOutcome:
        """Delete an aggregate and all of its rows."""
        aggregate = self._aggregate(aggregate_id)
        object_ids = [aggregate.id] + list(aggregate.entity_ids)
        self._forget_timers(object_ids)
        root_id = aggregate.id

        def mutate(_: str) -> None:
            self.registry.remove_aggregate(self.identity.resolve(root_id))

        if aggregate.is_virtual:
            mutate(root_id)
            return MutationOutcome(entity_id=root_id, ok=True)
        client = self._client_for(aggregate.kind)
        outcome = await self.rollback.attempt(
            root_id, mutate, lambda target_id: client.delete(target_id),
            include_children=True, operation="delete",
        )
        if outcome.ok:
            self._forget_identities(object_ids)
            logger.info(f"Removed {aggregate.kind} {root_id} with its rows")
        return outcome

    # --- Explicit save ---

    async def save(self, aggregate_id: str) -> MutationOutcome:
        """Save an aggregate-mode root now, folding in any pending debounced edits."""
        if not self.aggregate_mode:
            raise SyncError("Rows of this aggregate are saved individually")
        aggregate = self._aggregate(aggregate_id)
        ids = set([aggregate.id] + list(aggregate.entity_ids))
        origin: Dict[str, Dict[str, Any]] = {}
        for key in [k for k in self._origins if k[0] in ids]:
            origin.setdefault(key[0], {})[key[1]] = self._origins.pop(key)
        self.coalescer.cancel_where(lambda k: k[0] in ids)

        violations = self._violations(aggregate)
        if violations:
            self._reject(aggregate, violations)
            raise ValidationError(violations)
        if not self.can_persist(aggregate.id):
            return MutationOutcome(entity_id=aggregate.id, ok=True, skipped=True)
        return await self._attempt(aggregate, lambda _: None, origin=origin or None)

    # --- Batch ---

    async def mark_all(self, entity_ids: List[str], fields: Dict[str, Any]) -> BatchOutcome:
        """
        Apply the same fields to many rows. Each row is persisted and rolled
        back on its own; the result names which rows failed.
        """
        async def one(entity_id: str) -> MutationOutcome:
            try:
                return await self.update_fields(entity_id, fields)
            except (ValidationError, UnknownEntityError) as e:
                return MutationOutcome(entity_id=entity_id, ok=False, message=str(e))

        outcomes = await asyncio.gather(*(one(i) for i in entity_ids))
        batch = BatchOutcome()
        for outcome in outcomes:
            if outcome.ok:
                batch.succeeded.append(outcome.entity_id)
            else:
                batch.failed[outcome.entity_id] = outcome.message or "Save failed"

        if batch.failed:
            first = self.registry.get_entity(next(iter(batch.failed)))
            logger.warning(f"Batch update: {len(batch.failed)} of {len(entity_ids)} row(s) failed")
            self.registry.publish(SyncEvent(
                kind=EventKind.BATCH_PARTIAL_FAILURE,
                target_id=",".join(batch.failed),
                aggregate_id=first.aggregate_id if first else None,
                message=f"{len(batch.failed)} of {len(entity_ids)} row(s) failed",
            ))
        return batch

    # --- Lifecycle ---

    async def flush(self, target_id: Optional[str] = None) -> None:
        """Fire pending timers now and wait for every in-flight save."""
        if target_id is None:
            await self.coalescer.flush()
            return
        object_id = self.identity.resolve(target_id)
        aggregate = self.registry.get_aggregate(object_id)
        ids = [object_id] + (list(aggregate.entity_ids) if aggregate else [])
        for each in ids:
            await self.coalescer.flush(each)

    def close(self) -> None:
        """Teardown: no timer fires after this."""
        self.coalescer.cancel_all()
        self._indicators.cancel_all()
        self._origins.clear()

    async def aclose(self) -> None:
        self.close()
        await self.coalescer.drain()
        self._unsubscribe()
