"""Tests for the Mutation Journal."""

import sqlite3

import pytest

from entity_sync.journal.store import MutationJournal
from entity_sync.models.mutation import MutationRecord


def _make_record(record_id: str, entity_id: str = "stage_1", outcome: str = "committed", **kwargs) -> MutationRecord:
    return MutationRecord(
        id=record_id,
        entity_id=entity_id,
        aggregate_id=kwargs.pop("aggregate_id", "lot_1"),
        operation=kwargs.pop("operation", "update"),
        outcome=outcome,
        **kwargs,
    )


class TestMutationJournal:
    def setup_method(self):
        self.journal = MutationJournal(db_path=":memory:")

    def teardown_method(self):
        self.journal.close()

    def test_append_and_get(self):
        record = _make_record(
            "m1",
            request_payload={"notes": "hello", "assigned_to": ["emp_1"]},
            pre_state={"stage_1": {"fields": {"notes": ""}}},
        )
        self.journal.append(record)

        loaded = self.journal.get_by_id("m1")
        assert loaded is not None
        assert loaded.request_payload == {"notes": "hello", "assigned_to": ["emp_1"]}
        assert loaded.pre_state["stage_1"]["fields"]["notes"] == ""
        assert loaded.created_at == record.created_at

    def test_get_missing(self):
        assert self.journal.get_by_id("nope") is None

    def test_query_by_entity_and_aggregate(self):
        self.journal.append(_make_record("m1", "stage_1"))
        self.journal.append(_make_record("m2", "stage_2"))
        self.journal.append(_make_record("m3", "stage_1", outcome="rolled_back"))
        self.journal.append(_make_record("m4", "item_1", aggregate_id="mto_1"))

        assert [r.id for r in self.journal.query_by_entity("stage_1")] == ["m1", "m3"]
        assert [r.id for r in self.journal.query_by_aggregate("lot_1")] == ["m1", "m2", "m3"]
        assert [r.id for r in self.journal.query_failures()] == ["m3"]

    def test_query_recent_keeps_chronological_order(self):
        for i in range(5):
            self.journal.append(_make_record(f"m{i}"))
        assert [r.id for r in self.journal.query_recent(limit=3)] == ["m2", "m3", "m4"]
        assert self.journal.count() == 5

    def test_append_only(self):
        self.journal.append(_make_record("m1"))
        with pytest.raises(sqlite3.IntegrityError):
            self.journal.append(_make_record("m1", outcome="rolled_back"))
        assert self.journal.get_by_id("m1").outcome == "committed"
