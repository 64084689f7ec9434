"""Tests for the Entity Registry, Identity Map and Entity Materializer."""

import pytest

from entity_sync.errors import IdentityConflict, PersistenceError, UnknownEntityError
from entity_sync.materialize.identity import IdentityMap
from entity_sync.materialize.materializer import EntityMaterializer
from entity_sync.models.entity import AggregateRoot, Entity, PersistenceStatus
from entity_sync.models.events import EventKind
from entity_sync.presets.screens import STAGE_SCHEMA
from entity_sync.registry.store import EntityRegistry


def _make_registry() -> EntityRegistry:
    registry = EntityRegistry()
    registry.put_aggregate(AggregateRoot(id="lot_1", kind="lot"))
    return registry


def _make_stage(stage_id: str, name: str, **fields) -> Entity:
    return Entity(
        id=stage_id,
        kind="stage",
        aggregate_id="lot_1",
        fields={"name": name, **fields},
        relationships={"assigned_to": set()},
    )


class TestEntityRegistry:
    def setup_method(self):
        self.registry = _make_registry()
        self.events = []
        self.registry.subscribe(self.events.append)

    def test_rows_keep_display_order(self):
        self.registry.put_entity(_make_stage("s1", "Drafting"))
        self.registry.put_entity(_make_stage("s2", "Ordering"))
        self.registry.put_entity(_make_stage("s0", "Site Measure"), index=0)
        assert [e.id for e in self.registry.entities_of("lot_1")] == ["s0", "s1", "s2"]

    def test_entity_needs_its_aggregate(self):
        with pytest.raises(UnknownEntityError):
            self.registry.put_entity(Entity(id="x", kind="stage", aggregate_id="lot_404"))

    def test_mutations_publish_changed(self):
        self.registry.put_entity(_make_stage("s1", "Drafting"))
        self.events.clear()
        self.registry.set_field("s1", "notes", "hi")
        self.registry.set_relation("s1", "assigned_to", {"emp_1"})
        assert [e.kind for e in self.events] == [EventKind.CHANGED, EventKind.CHANGED]
        assert self.events[0].aggregate_id == "lot_1"

    def test_failing_subscriber_is_contained(self):
        def broken(_):
            raise RuntimeError("boom")

        self.registry.subscribe(broken)
        self.registry.put_entity(_make_stage("s1", "Drafting"))
        assert "s1" in self.registry
        assert any(e.target_id == "s1" for e in self.events)

    def test_unsubscribe(self):
        unsubscribe = self.registry.subscribe(lambda e: None)
        unsubscribe()
        unsubscribe()

    def test_remove_aggregate_takes_rows(self):
        self.registry.put_entity(_make_stage("s1", "Drafting"))
        removed = self.registry.remove_aggregate("lot_1")
        assert {o.id for o in removed} == {"lot_1", "s1"}
        assert self.registry.is_empty()
        assert self.events[-1].kind == EventKind.REMOVED

    def test_find_by_template_uses_name_field(self):
        self.registry.put_entity(_make_stage("s1", "Delivery"))
        found = self.registry.find_by_template("lot_1", "stage", "delivery", "name")
        assert found is not None and found.id == "s1"
        assert self.registry.find_by_template("lot_1", "stage", "delivery") is None

    def test_replace_id_migrates_edges(self):
        self.registry.put_entity(_make_stage("temp:lot_1:Delivery", "Delivery"))
        self.registry.put_entity(_make_stage("s2", "Installation"))
        self.registry.set_relation("s2", "depends_on", {"temp:lot_1:Delivery"})

        self.registry.replace_id("temp:lot_1:Delivery", "stage_9")

        assert "temp:lot_1:Delivery" not in self.registry
        assert self.registry.get_entity("stage_9").fields["name"] == "Delivery"
        assert self.registry.get_aggregate("lot_1").entity_ids == ["stage_9", "s2"]
        assert self.registry.get_entity("s2").relationships["depends_on"] == {"stage_9"}

    def test_capture_is_a_deep_copy(self):
        self.registry.put_entity(_make_stage("s1", "Drafting"))
        captured = self.registry.capture("lot_1", include_children=True)
        captured["s1"].fields["name"] = "Changed"
        assert self.registry.get_entity("s1").fields["name"] == "Drafting"
        assert set(captured) == {"lot_1", "s1"}


class TestIdentityMap:
    def test_placeholder_is_deterministic(self):
        identity = IdentityMap()
        assert identity.placeholder("lot_1", "Delivery") == "temp:lot_1:Delivery"
        assert identity.placeholder("lot_1", "Delivery") == identity.placeholder("lot_1", "Delivery")
        assert identity.is_placeholder("temp:lot_1:Delivery")
        assert not identity.is_placeholder("stage_9")

    def test_bind_and_resolve(self):
        identity = IdentityMap()
        identity.bind("temp:lot_1:Delivery", "stage_9")
        assert identity.resolve("temp:lot_1:Delivery") == "stage_9"
        assert identity.resolve("stage_9") == "stage_9"
        assert identity.placeholder_for("stage_9") == "temp:lot_1:Delivery"

    def test_rebinding_to_another_id_conflicts(self):
        identity = IdentityMap()
        identity.bind("temp:lot_1:Delivery", "stage_9")
        identity.bind("temp:lot_1:Delivery", "stage_9")
        with pytest.raises(IdentityConflict):
            identity.bind("temp:lot_1:Delivery", "stage_10")

    def test_forget(self):
        identity = IdentityMap()
        identity.bind("temp:x", "real")
        identity.forget("real")
        assert identity.resolve("temp:x") == "temp:x"
        assert len(identity) == 0


class TestEntityMaterializer:
    def setup_method(self):
        self.registry = _make_registry()
        self.identity = IdentityMap()
        self.materializer = EntityMaterializer(self.registry, self.identity, {"stage": STAGE_SCHEMA})
        self.remaps = []
        self.materializer.add_remap_listener(lambda old, new: self.remaps.append((old, new)))

    def test_materialize_twice_yields_one_row(self):
        a = self.materializer.ensure_materialized("Delivery", "lot_1")
        b = self.materializer.ensure_materialized("delivery", "lot_1")
        assert a is b
        assert a.id == "temp:lot_1:Delivery"
        assert a.is_virtual
        assert a.status == PersistenceStatus.VIRTUAL
        assert a.fields["status"] == "NOT_STARTED"
        assert len(self.registry.entities_of("lot_1")) == 1

    def test_existing_persisted_row_is_returned(self):
        self.registry.put_entity(_make_stage("stage_3", "Delivery"))
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        assert entity.id == "stage_3"
        assert len(self.registry.entities_of("lot_1")) == 1

    def test_lookup_by_id_needs_no_aggregate(self):
        created = self.materializer.ensure_materialized("Drafting", "lot_1")
        assert self.materializer.ensure_materialized(created.id) is created

    def test_unknown_template_or_aggregate(self):
        with pytest.raises(UnknownEntityError):
            self.materializer.ensure_materialized("Painting", "lot_1")
        with pytest.raises(UnknownEntityError):
            self.materializer.ensure_materialized("Delivery", "lot_404")
        with pytest.raises(UnknownEntityError):
            self.materializer.ensure_materialized("Delivery")

    def test_commit_replaces_placeholder_and_keeps_edges(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.registry.set_relation(entity.id, "assigned_to", {"emp_1"})
        self.registry.get_aggregate("lot_1").relationships["stages"] = {entity.id}

        committed = self.materializer.commit(entity.id, {"id": "stage_9"})

        assert committed.id == "stage_9"
        assert not committed.is_virtual
        assert committed.status == PersistenceStatus.PERSISTED
        assert committed.relationships["assigned_to"] == {"emp_1"}
        assert "temp:lot_1:Delivery" not in self.registry
        lot = self.registry.get_aggregate("lot_1")
        assert lot.entity_ids == ["stage_9"]
        assert lot.relationships["stages"] == {"stage_9"}
        assert self.identity.resolve("temp:lot_1:Delivery") == "stage_9"
        assert self.remaps == [("temp:lot_1:Delivery", "stage_9")]

    def test_materialize_after_commit_returns_real_row(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.materializer.commit(entity.id, {"id": "stage_9"})
        again = self.materializer.ensure_materialized("Delivery", "lot_1")
        assert again.id == "stage_9"
        assert len(self.registry.entities_of("lot_1")) == 1

    def test_template_of_deleted_row_materializes_again(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.materializer.commit(entity.id, {"id": "stage_9"})
        self.registry.remove_entity("stage_9")

        again = self.materializer.ensure_materialized("Delivery", "lot_1")
        assert again.id == "temp:lot_1:Delivery"
        assert again.is_virtual
        assert self.identity.resolve("temp:lot_1:Delivery") == "temp:lot_1:Delivery"

        committed = self.materializer.commit(again.id, {"id": "stage_10"})
        assert committed.id == "stage_10"
        assert self.identity.resolve("temp:lot_1:Delivery") == "stage_10"

    def test_second_commit_returns_first_result(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.materializer.commit(entity.id, {"id": "stage_9"})
        again = self.materializer.commit("temp:lot_1:Delivery", {"id": "stage_10"})
        assert again.id == "stage_9"
        assert "stage_10" not in self.registry

    def test_commit_without_id_fails(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        with pytest.raises(PersistenceError):
            self.materializer.commit(entity.id, {"status": "ok"})
        assert entity.id in self.registry

    def test_commit_onto_existing_row_keeps_existing(self):
        self.registry.put_entity(_make_stage("stage_3", "Drafting", notes="kept"))
        virtual = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.registry.set_relation(virtual.id, "assigned_to", {"emp_2"})

        result = self.materializer.commit(virtual.id, {"id": "stage_3"})

        assert result.id == "stage_3"
        assert result.fields["notes"] == "kept"
        assert result.relationships["assigned_to"] == {"emp_2"}
        assert [e.id for e in self.registry.entities_of("lot_1")] == ["stage_3"]

    def test_virtual_aggregate_is_idempotent(self):
        a = self.materializer.ensure_virtual_aggregate("materials_to_order", "new")
        b = self.materializer.ensure_virtual_aggregate("materials_to_order", "new")
        assert a is b
        assert a.id == "temp:materials_to_order:new"
        assert a.is_virtual

    def test_template_of(self):
        entity = self.materializer.ensure_materialized("Delivery", "lot_1")
        self.registry.set_field(entity.id, "notes", "typed")
        template = self.materializer.template_of(entity)
        assert template.fields["notes"] == ""
        assert template.fields["name"] == "Delivery"
