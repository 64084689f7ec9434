"""
Rollback Manager — one optimistic attempt per call, restored if persistence fails.

Mutated: Entity Registry (restore), baselines (commit)
Queried by: the engine, for dirtiness against the last-known-good state

Behavioral Contract:
- Attempts on the same entity are serialized; attempts on different
  entities run independently
- A failed attempt leaves the target exactly as it was before the attempt,
  except for values changed by someone else since the call was dispatched
- A successful attempt becomes the new baseline of every object it touched
- A result arriving for an object deleted meanwhile is discarded
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from entity_sync.materialize.identity import IdentityMap
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.events import EventKind, SyncEvent
from entity_sync.models.mutation import (
    MutationOutcome,
    MutationRecord,
    PendingMutation,
    SyncResult,
)
from entity_sync.registry.store import EntityRegistry, SyncObject

logger = logging.getLogger(__name__)

Persist = Callable[[str], Awaitable[SyncResult]]
MutateLocal = Callable[[str], None]


class _LockEntry:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


def _aggregate_of(obj: SyncObject) -> str:
    return obj.aggregate_id if isinstance(obj, Entity) else obj.id


class RollbackManager:
    """Per-entity attempt queue with last-known-good baselines."""

    def __init__(
        self,
        registry: EntityRegistry,
        identity: IdentityMap,
        journal=None,
        lock_scope: Optional[Callable[[str], str]] = None,
    ):
        self.registry = registry
        self.identity = identity
        self.journal = journal
        self.lock_scope = lock_scope or (lambda object_id: object_id)
        self._locks: Dict[str, _LockEntry] = {}
        self._baselines: Dict[str, SyncObject] = {}
        self._pending: Dict[str, PendingMutation] = {}

    # --- Baselines ---

    def set_baseline(self, obj: SyncObject) -> None:
        self._baselines[obj.id] = obj.model_copy(deep=True)

    def baseline(self, object_id: str) -> Optional[SyncObject]:
        return self._baselines.get(self.identity.resolve(object_id))

    def baselines_for(self, aggregate_id: str) -> List[Entity]:
        """Last-known-good rows of an aggregate."""
        aggregate_id = self.identity.resolve(aggregate_id)
        return [
            b for b in self._baselines.values()
            if isinstance(b, Entity) and b.aggregate_id == aggregate_id
        ]

    def _overlay_origin(self, obj: SyncObject, values: Dict[str, Any]) -> None:
        """
        Fields edited before the attempt began go back to their last-known-good
        value: the baseline when the object was ever persisted, else `values`.
        """
        baseline = self._baselines.get(obj.id)
        if baseline is None:
            obj.fields.update(values)
            return
        for name in values:
            if name in baseline.fields:
                obj.fields[name] = deepcopy(baseline.fields[name])
            else:
                obj.fields.pop(name, None)

    # --- Pending mutations ---

    def pending_for(self, object_id: str) -> Optional[PendingMutation]:
        return self._pending.get(self.identity.resolve(object_id))

    def is_locked(self, object_id: str) -> bool:
        entry = self._locks.get(self.lock_scope(self.identity.resolve(object_id)))
        return entry is not None and entry.lock.locked()

    # --- Identity remap ---

    def rekey(self, old_id: str, new_id: str) -> None:
        """Follow a placeholder to its real id (remap listener)."""
        if old_id in self._locks and new_id not in self._locks:
            self._locks[new_id] = self._locks.pop(old_id)
        baseline = self._baselines.pop(old_id, None)
        if baseline is not None:
            baseline.id = new_id
            self._baselines[new_id] = baseline
        for other in self._baselines.values():
            if isinstance(other, Entity) and other.aggregate_id == old_id:
                other.aggregate_id = new_id
        pending = self._pending.pop(old_id, None)
        if pending is not None:
            pending.entity_id = new_id
            self._pending[new_id] = pending
        for other in self._pending.values():
            if other.aggregate_id == old_id:
                other.aggregate_id = new_id

    # --- Locking ---

    @asynccontextmanager
    async def _locked(self, target_id: str):
        key = self.lock_scope(self.identity.resolve(target_id))
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                for k in [k for k, v in self._locks.items() if v is entry]:
                    del self._locks[k]

    # --- Attempt ---

    async def attempt(
        self,
        target_id: str,
        mutate_local: MutateLocal,
        persist: Persist,
        *,
        origin: Optional[Dict[str, Dict[str, Any]]] = None,
        origin_relations: Optional[Dict[str, Dict[str, Set[str]]]] = None,
        include_children: bool = False,
        operation: str = "update",
    ) -> MutationOutcome:
        """
        Apply `mutate_local` optimistically, then await `persist`.

        `origin` maps object ids to last-known-good field values of edits that
        were applied locally before this attempt began (debounced keystrokes);
        `origin_relations` does the same for relation sets. A rollback
        restores those too.
        """
        async with self._locked(target_id):
            target_id = self.identity.resolve(target_id)
            target = self.registry.get(target_id)
            if target is None:
                logger.info(f"Attempt on {target_id} skipped: no longer exists")
                return MutationOutcome(
                    entity_id=target_id, ok=False, discarded=True,
                    message="Target no longer exists",
                )
            aggregate_id = _aggregate_of(target)

            pre = self.registry.capture(target_id, include_children)
            source = {k: v.model_copy(deep=True) for k, v in pre.items()}
            for object_id, values in (origin or {}).items():
                object_id = self.identity.resolve(object_id)
                if object_id in source:
                    self._overlay_origin(source[object_id], values)
            for object_id, relations in (origin_relations or {}).items():
                object_id = self.identity.resolve(object_id)
                if object_id in source:
                    for name, members in relations.items():
                        source[object_id].relationships[name] = set(members)
            source_order = self._row_order(source, pre)

            try:
                mutate_local(target_id)
            except Exception:
                self._restore(pre, self._capture(target_id, pre, include_children), source_order)
                raise

            dispatched = self._capture(target_id, pre, include_children)
            live = self.registry.get(target_id)
            if live is not None:
                live.status = (
                    PersistenceStatus.MATERIALIZING if live.is_virtual
                    else PersistenceStatus.SAVING
                )
            self._pending[target_id] = PendingMutation(
                aggregate_id=aggregate_id,
                entity_id=target_id,
                operation=operation,
                pre_state={k: v.model_dump(mode="json") for k, v in source.items()},
            )
            self.registry.publish(SyncEvent(
                kind=EventKind.SAVING, target_id=target_id, aggregate_id=aggregate_id,
            ))

            result: Optional[SyncResult] = None
            try:
                result = await persist(target_id)
                error = None if result.status else (result.message or "Save failed")
            except Exception as e:
                logger.warning(f"Persist of {target_id} raised: {e!r}")
                error = str(e) or e.__class__.__name__

            final_id = self.identity.resolve(target_id)
            pending = self._pending.pop(final_id, None) or self._pending.pop(target_id, None)
            aggregate_id = self.identity.resolve(aggregate_id)

            if target_id in dispatched and final_id not in self.registry:
                logger.info(f"Result for {final_id} discarded: deleted while in flight")
                self._journal(pending, final_id, "discarded", error)
                return MutationOutcome(
                    entity_id=final_id, ok=False, discarded=True, message=error,
                )

            if error is None:
                self._commit(dispatched, pre)
                self._journal(pending, final_id, "committed", None)
                self.registry.publish(SyncEvent(
                    kind=EventKind.SAVED, target_id=final_id, aggregate_id=aggregate_id,
                ))
                return MutationOutcome(
                    entity_id=final_id, ok=True,
                    message=result.message if result else None,
                    data=result.data if result else None,
                )

            self._restore(source, dispatched, source_order)
            logger.warning(f"Rolled back {final_id}: {error}")
            self._journal(pending, final_id, "rolled_back", error)
            self.registry.publish(SyncEvent(
                kind=EventKind.ROLLED_BACK, target_id=final_id,
                aggregate_id=aggregate_id, message=error,
            ))
            return MutationOutcome(
                entity_id=final_id, ok=False, rolled_back=True, message=error,
            )

    def _capture(
        self, target_id: str, pre: Dict[str, SyncObject], include_children: bool
    ) -> Dict[str, SyncObject]:
        captured = self.registry.capture(target_id, include_children)
        for object_id in pre:
            if object_id not in captured and object_id in self.registry:
                captured[object_id] = self.registry.require(object_id).model_copy(deep=True)
        return captured

    def _row_order(
        self, source: Dict[str, SyncObject], pre: Dict[str, SyncObject]
    ) -> Dict[str, int]:
        """Display position of each captured row, for reinsertion."""
        order: Dict[str, int] = {}
        for obj in source.values():
            if not isinstance(obj, Entity):
                continue
            parent = pre.get(obj.aggregate_id) or self.registry.get_aggregate(obj.aggregate_id)
            if parent is not None and obj.id in parent.entity_ids:
                order[obj.id] = parent.entity_ids.index(obj.id)
        return order

    # --- Commit ---

    def _commit(self, dispatched: Dict[str, SyncObject], pre: Dict[str, SyncObject]) -> None:
        resolve = self.identity.resolve
        for old_id, copy in dispatched.items():
            baseline = copy.model_copy(deep=True)
            baseline.id = resolve(old_id)
            baseline.relationships = {
                name: {resolve(m) for m in members}
                for name, members in baseline.relationships.items()
            }
            if isinstance(baseline, Entity):
                baseline.aggregate_id = resolve(baseline.aggregate_id)
            else:
                baseline.entity_ids = [resolve(i) for i in baseline.entity_ids]
            baseline.is_virtual = False
            baseline.status = PersistenceStatus.PERSISTED
            self._baselines[baseline.id] = baseline

            live = self.registry.get(baseline.id)
            if live is not None and live.status in (
                PersistenceStatus.SAVING, PersistenceStatus.MATERIALIZING
            ):
                live.status = PersistenceStatus.PERSISTED
        for old_id in pre:
            if old_id not in dispatched:
                self._baselines.pop(resolve(old_id), None)

    # --- Restore ---

    def _restore(
        self,
        source: Dict[str, SyncObject],
        dispatched: Dict[str, SyncObject],
        order: Dict[str, int],
    ) -> None:
        """Undo what the attempt changed, leaving later edits of other callers alone."""
        for object_id, sent in dispatched.items():
            if object_id in source:
                continue
            if isinstance(sent, Entity):
                self.registry.remove_entity(object_id)
            else:
                self.registry.remove_aggregate(object_id)

        # roots before rows so reinserted rows find their parent
        ordered = sorted(source.values(), key=lambda o: isinstance(o, Entity))
        for before in ordered:
            live = self.registry.get(before.id)
            if live is None:
                self.registry.restore_object(before, index=order.get(before.id))
                continue
            sent = dispatched.get(before.id)
            if sent is None:
                continue
            self._restore_values(live.fields, before.fields, sent.fields)
            self._restore_values(live.relationships, before.relationships, sent.relationships)
            if isinstance(live, AggregateRoot):
                if live.attachments == sent.attachments:
                    live.attachments = list(before.attachments)
                if live.entity_ids == sent.entity_ids:
                    live.entity_ids = list(before.entity_ids)
            live.is_virtual = before.is_virtual
            live.status = before.status
            self.registry.touch(live.id)

    @staticmethod
    def _restore_values(live: dict, before: dict, sent: dict) -> None:
        for name in set(before) | set(sent):
            if before.get(name) == sent.get(name):
                continue
            if live.get(name) != sent.get(name):
                continue  # edited again since dispatch
            if name in before:
                value = before[name]
                live[name] = set(value) if isinstance(value, set) else value
            else:
                live.pop(name, None)

    # --- Journal ---

    def _journal(
        self,
        pending: Optional[PendingMutation],
        entity_id: str,
        outcome: str,
        message: Optional[str],
    ) -> None:
        if self.journal is None or pending is None:
            return
        self.journal.append(MutationRecord(
            id=uuid.uuid4().hex,
            entity_id=entity_id,
            aggregate_id=pending.aggregate_id,
            operation=pending.operation,
            outcome=outcome,
            message=message,
            request_payload=pending.request_payload,
            pre_state=pending.pre_state,
        ))
