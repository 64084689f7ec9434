"""Tests for the Rollback Manager and the Relationship Set Toggler."""

import asyncio

import pytest

from entity_sync.errors import PersistenceError
from entity_sync.journal.store import MutationJournal
from entity_sync.materialize.identity import IdentityMap
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.events import EventKind
from entity_sync.models.mutation import SyncResult
from entity_sync.registry.store import EntityRegistry
from entity_sync.relations.toggler import RelationshipToggler, toggled
from entity_sync.rollback.manager import RollbackManager

OK = SyncResult(status=True)
FAILED = SyncResult(status=False, message="Server rejected")


def _make_registry() -> EntityRegistry:
    registry = EntityRegistry()
    registry.put_aggregate(AggregateRoot(id="lot_1", kind="lot"))
    for stage_id in ["stage_1", "stage_2"]:
        registry.put_entity(Entity(
            id=stage_id,
            kind="stage",
            aggregate_id="lot_1",
            fields={"notes": "S0", "status": "NOT_STARTED"},
            relationships={"assigned_to": {"emp_1"}},
        ))
    return registry


def _make_manager(registry, journal=None) -> RollbackManager:
    manager = RollbackManager(registry, IdentityMap(), journal=journal)
    for obj in [registry.get("lot_1")] + registry.entities_of("lot_1"):
        manager.set_baseline(obj)
    return manager


async def _ok(_):
    return OK


async def _failed(_):
    return FAILED


class TestRollbackExactness:
    def setup_method(self):
        self.registry = _make_registry()
        self.manager = _make_manager(self.registry)
        self.events = []
        self.registry.subscribe(self.events.append)

    def _edit_notes(self, value):
        return lambda object_id: self.registry.set_field(object_id, "notes", value)

    @pytest.mark.asyncio
    async def test_failure_restores_prior_state_exactly(self):
        before = self.registry.get_entity("stage_1").model_copy(deep=True)

        outcome = await self.manager.attempt("stage_1", self._edit_notes("S1"), _failed)

        after = self.registry.get_entity("stage_1")
        assert outcome.rolled_back
        assert outcome.message == "Server rejected"
        assert after.fields == before.fields
        assert after.relationships == before.relationships
        assert after.status == PersistenceStatus.PERSISTED
        assert self.manager.baseline("stage_1").fields["notes"] == "S0"
        assert EventKind.ROLLED_BACK in [e.kind for e in self.events]

    @pytest.mark.asyncio
    async def test_success_becomes_baseline(self):
        outcome = await self.manager.attempt("stage_1", self._edit_notes("S1"), _ok)
        assert outcome.ok
        assert self.registry.get_entity("stage_1").fields["notes"] == "S1"
        assert self.manager.baseline("stage_1").fields["notes"] == "S1"
        assert self.manager.pending_for("stage_1") is None
        kinds = [e.kind for e in self.events]
        assert kinds.index(EventKind.SAVING) < kinds.index(EventKind.SAVED)

    @pytest.mark.asyncio
    async def test_raised_error_is_a_failure(self):
        async def transport_error(_):
            raise PersistenceError("Connection reset by peer")

        outcome = await self.manager.attempt("stage_1", self._edit_notes("S1"), transport_error)
        assert outcome.rolled_back
        assert outcome.message == "Connection reset by peer"
        assert self.registry.get_entity("stage_1").fields["notes"] == "S0"

    @pytest.mark.asyncio
    async def test_origin_values_are_restored_too(self):
        # a debounced keystroke already applied before the attempt began
        self.registry.set_field("stage_1", "notes", "typed")
        outcome = await self.manager.attempt(
            "stage_1", lambda _: None, _failed, origin={"stage_1": {"notes": "S0"}},
        )
        assert outcome.rolled_back
        assert self.registry.get_entity("stage_1").fields["notes"] == "S0"

    @pytest.mark.asyncio
    async def test_baseline_wins_over_stale_origin(self):
        # origin captured while an earlier save of the same field was in flight
        self.registry.set_field("stage_1", "notes", "typed again")
        outcome = await self.manager.attempt(
            "stage_1", lambda _: None, _failed, origin={"stage_1": {"notes": "typed"}},
        )
        assert outcome.rolled_back
        assert self.registry.get_entity("stage_1").fields["notes"] == "S0"

    @pytest.mark.asyncio
    async def test_origin_of_unsaved_object_is_used_as_given(self):
        self.registry.put_entity(Entity(id="stage_new", kind="stage", aggregate_id="lot_1",
                                        fields={"notes": "typed"}))
        outcome = await self.manager.attempt(
            "stage_new", lambda _: None, _failed, origin={"stage_new": {"notes": ""}},
        )
        assert outcome.rolled_back
        assert self.registry.get_entity("stage_new").fields["notes"] == ""

    @pytest.mark.asyncio
    async def test_pending_mutation_recorded_while_in_flight(self):
        seen = {}

        async def persist(object_id):
            pending = self.manager.pending_for(object_id)
            seen["pre"] = pending.pre_state["stage_1"]["fields"]["notes"]
            seen["status"] = self.registry.get_entity(object_id).status
            seen["locked"] = self.manager.is_locked(object_id)
            return OK

        await self.manager.attempt("stage_1", self._edit_notes("S1"), persist)
        assert seen == {"pre": "S0", "status": PersistenceStatus.SAVING, "locked": True}
        assert not self.manager.is_locked("stage_1")

    @pytest.mark.asyncio
    async def test_later_edit_of_another_field_survives_rollback(self):
        async def persist(object_id):
            # someone else changes status while notes are in flight
            self.registry.set_field(object_id, "status", "DONE")
            return FAILED

        await self.manager.attempt("stage_1", self._edit_notes("S1"), persist)
        entity = self.registry.get_entity("stage_1")
        assert entity.fields["notes"] == "S0"
        assert entity.fields["status"] == "DONE"

    @pytest.mark.asyncio
    async def test_result_for_deleted_target_is_discarded(self):
        async def persist(object_id):
            self.registry.remove_entity(object_id)
            return FAILED

        outcome = await self.manager.attempt("stage_1", self._edit_notes("S1"), persist)
        assert outcome.discarded
        assert "stage_1" not in self.registry

    @pytest.mark.asyncio
    async def test_missing_target_is_skipped(self):
        outcome = await self.manager.attempt("stage_404", lambda _: None, _ok)
        assert outcome.discarded
        assert not outcome.ok

    @pytest.mark.asyncio
    async def test_failed_removal_reinserts_at_position(self):
        outcome = await self.manager.attempt(
            "stage_1", lambda object_id: self.registry.remove_entity(object_id), _failed,
            operation="delete",
        )
        assert outcome.rolled_back
        assert [e.id for e in self.registry.entities_of("lot_1")] == ["stage_1", "stage_2"]

    @pytest.mark.asyncio
    async def test_journal_records_outcomes(self):
        journal = MutationJournal()
        manager = _make_manager(self.registry, journal)

        await manager.attempt("stage_1", self._edit_notes("S1"), _ok)
        await manager.attempt("stage_2", self._edit_notes("S1"), _failed)

        assert journal.count() == 2
        failures = journal.query_failures()
        assert [r.entity_id for r in failures] == ["stage_2"]
        assert failures[0].pre_state["stage_2"]["fields"]["notes"] == "S0"
        assert [r.outcome for r in journal.query_by_aggregate("lot_1")] == ["committed", "rolled_back"]


class TestRollbackConcurrency:
    def setup_method(self):
        self.registry = _make_registry()
        self.manager = _make_manager(self.registry)

    @pytest.mark.asyncio
    async def test_same_entity_attempts_are_serialized(self):
        order = []
        gate = asyncio.Event()

        async def slow(_):
            order.append("A-start")
            await gate.wait()
            order.append("A-end")
            return OK

        async def fast(_):
            order.append("B")
            return OK

        first = asyncio.create_task(self.manager.attempt("stage_1", lambda _: None, slow))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(self.manager.attempt("stage_1", lambda _: None, fast))
        await asyncio.sleep(0.01)
        assert order == ["A-start"]

        gate.set()
        await asyncio.gather(first, second)
        assert order == ["A-start", "A-end", "B"]

    @pytest.mark.asyncio
    async def test_rollback_does_not_clobber_queued_edit(self):
        gate = asyncio.Event()

        async def slow_failure(_):
            await gate.wait()
            return FAILED

        first = asyncio.create_task(self.manager.attempt(
            "stage_1", lambda i: self.registry.set_field(i, "notes", "A"), slow_failure,
        ))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(self.manager.attempt(
            "stage_1", lambda i: self.registry.set_field(i, "notes", "B"), _ok,
        ))
        gate.set()
        first_outcome, second_outcome = await asyncio.gather(first, second)

        assert first_outcome.rolled_back
        assert second_outcome.ok
        assert self.registry.get_entity("stage_1").fields["notes"] == "B"

    @pytest.mark.asyncio
    async def test_different_entities_are_independent(self):
        gate = asyncio.Event()

        async def slow(_):
            await gate.wait()
            return OK

        first = asyncio.create_task(self.manager.attempt(
            "stage_1", lambda i: self.registry.set_field(i, "notes", "X"), slow,
        ))
        await asyncio.sleep(0.01)

        # stage_2 settles while stage_1 is still in flight
        outcome = await asyncio.wait_for(self.manager.attempt(
            "stage_2", lambda i: self.registry.set_field(i, "notes", "Y"), _failed,
        ), timeout=1.0)
        assert outcome.rolled_back
        assert not first.done()

        gate.set()
        assert (await first).ok
        assert self.registry.get_entity("stage_1").fields["notes"] == "X"
        assert self.registry.get_entity("stage_2").fields["notes"] == "S0"


class TestRelationshipToggler:
    def setup_method(self):
        self.registry = _make_registry()
        self.manager = _make_manager(self.registry)
        self.toggler = RelationshipToggler(self.registry, self.manager)

    def test_toggled_is_symmetric_difference(self):
        assert toggled({"emp_1"}, "emp_2") == {"emp_1", "emp_2"}
        assert toggled({"emp_1", "emp_2"}, "emp_2") == {"emp_1"}
        assert toggled(set(), "emp_1") == {"emp_1"}

    def test_apply_is_immediate(self):
        members = self.toggler.apply("stage_1", "assigned_to", "emp_2")
        assert members == {"emp_1", "emp_2"}
        assert self.toggler.current("stage_1", "assigned_to") == {"emp_1", "emp_2"}

    @pytest.mark.asyncio
    async def test_toggle_twice_is_involution(self):
        sent = []

        async def persist(object_id):
            sent.append(sorted(self.registry.get_entity(object_id).relationships["assigned_to"]))
            return OK

        await self.toggler.toggle("stage_1", "assigned_to", "emp_2", persist)
        await self.toggler.toggle("stage_1", "assigned_to", "emp_2", persist)

        assert self.toggler.current("stage_1", "assigned_to") == {"emp_1"}
        assert sent == [["emp_1", "emp_2"], ["emp_1"]]

    @pytest.mark.asyncio
    async def test_failed_toggle_reverts_set(self):
        outcome = await self.toggler.toggle("stage_1", "assigned_to", "emp_1", _failed)
        assert outcome.rolled_back
        assert self.toggler.current("stage_1", "assigned_to") == {"emp_1"}

    @pytest.mark.asyncio
    async def test_new_relation_is_removed_on_failure(self):
        outcome = await self.toggler.toggle("stage_1", "watchers", "emp_7", _failed)
        assert outcome.rolled_back
        assert "watchers" not in self.registry.get_entity("stage_1").relationships
