"""Tests for the Sync Clients: in-memory backend and httpx-based HTTP client."""

import json

import httpx
import pytest

from entity_sync.client.base import to_payload
from entity_sync.client.http import HttpSyncClient
from entity_sync.client.memory import InMemoryBackend
from entity_sync.errors import PersistenceError
from entity_sync.models.config import EngineConfig
from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.presets.screens import stage_table_engine


def _make_mock_transport(responses):
    """Replays (status, body) pairs and records every request."""
    requests = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = queue.pop(0)
        if isinstance(body, Exception):
            raise body
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler), requests


def _make_client(responses):
    transport, requests = _make_mock_transport(responses)
    http_client = httpx.AsyncClient(transport=transport)
    client = HttpSyncClient("stages", base_url="http://test/api/", http_client=http_client)
    return client, requests, http_client


class TestToPayload:
    def test_entity_payload(self):
        entity = Entity(
            id="stage_1",
            kind="stage",
            aggregate_id="lot_1",
            fields={"name": "Drafting"},
            relationships={"assigned_to": {"emp_2", "emp_1"}},
        )
        payload = to_payload(entity)
        assert payload == {
            "id": "stage_1",
            "aggregate_id": "lot_1",
            "name": "Drafting",
            "assigned_to": ["emp_1", "emp_2"],
        }

    def test_virtual_aggregate_payload_has_rows_and_no_id(self):
        root = AggregateRoot(
            id="temp:materials_to_order:new",
            kind="materials_to_order",
            is_virtual=True,
            attachments=["file_1"],
            relationships={"lot_ids": {"lot_1"}},
        )
        row = Entity(id="r1", kind="line_item", aggregate_id=root.id, fields={"item_id": "s1", "quantity": 1})
        payload = to_payload(root, [row], "items")
        assert "id" not in payload
        assert payload["attachments"] == ["file_1"]
        assert payload["items"][0]["item_id"] == "s1"


class TestInMemoryBackend:
    @pytest.mark.asyncio
    async def test_create_issues_ids(self):
        backend = InMemoryBackend("stages")
        backend.issue_ids("stage_9")
        first = await backend.create({"name": "Delivery"})
        second = await backend.create({"name": "Installation"})
        assert first.data["id"] == "stage_9"
        assert second.data["id"].startswith("stages_")
        assert len(backend.rows) == 2

    @pytest.mark.asyncio
    async def test_update_and_delete(self):
        backend = InMemoryBackend("stages")
        await backend.update("stage_1", {"notes": "x", "aggregate_id": "lot_1"})
        assert backend.rows["stage_1"]["notes"] == "x"
        await backend.delete("lot_1")
        assert backend.rows == {}
        assert [c[0] for c in backend.calls] == ["update", "delete"]

    @pytest.mark.asyncio
    async def test_failure_injection(self):
        backend = InMemoryBackend()
        backend.fail_next(1, "Nope")
        result = await backend.update("a", {})
        assert not result.status and result.message == "Nope"
        assert (await backend.update("a", {})).status

        backend.fail_for("b")
        assert not (await backend.delete("b")).status
        backend.clear_failures()
        assert (await backend.delete("b")).status

    @pytest.mark.asyncio
    async def test_raise_next(self):
        backend = InMemoryBackend()
        backend.raise_next()
        with pytest.raises(PersistenceError):
            await backend.create({})
        assert backend.call_count == 1


class TestHttpSyncClient:
    @pytest.mark.asyncio
    async def test_create_posts_to_resource(self):
        client, requests, _ = _make_client([(200, {"status": True, "data": {"id": "stage_9"}})])
        result = await client.create({"name": "Delivery"})

        assert result.status
        assert result.data == {"id": "stage_9"}
        assert requests[0].method == "POST"
        assert str(requests[0].url) == "http://test/api/stages/create"
        assert json.loads(requests[0].content) == {"name": "Delivery"}

    @pytest.mark.asyncio
    async def test_update_and_delete_routes(self):
        client, requests, _ = _make_client([(200, {"id": "stage_1"}), (204, None)])
        updated = await client.update("stage_1", {"notes": "x"})
        deleted = await client.delete("stage_1")

        assert updated.status and updated.data == {"id": "stage_1"}
        assert deleted.status
        assert [(r.method, r.url.path) for r in requests] == [
            ("PATCH", "/api/stages/stage_1"),
            ("DELETE", "/api/stages/stage_1"),
        ]

    @pytest.mark.asyncio
    async def test_rejection_envelope(self):
        client, _, _ = _make_client([(200, {"status": False, "message": "Stage is locked"})])
        result = await client.update("stage_1", {})
        assert not result.status
        assert result.message == "Stage is locked"

    @pytest.mark.asyncio
    async def test_non_2xx_is_a_failure(self):
        client, _, _ = _make_client([
            (400, {"message": "Quantity must be greater than 0"}),
            (422, {"detail": "Unprocessable"}),
            (500, None),
        ])
        assert (await client.update("a", {})).message == "Quantity must be greater than 0"
        assert (await client.update("a", {})).message == "Unprocessable"
        assert (await client.update("a", {})).message == "HTTP 500"

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        client, _, _ = _make_client([(0, httpx.ConnectError("connection refused"))])
        with pytest.raises(PersistenceError):
            await client.create({})

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self):
        client, _, http_client = _make_client([])
        await client.aclose()
        assert not http_client.is_closed
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_engine_over_http(self):
        client, requests, _ = _make_client([(200, {"status": True, "data": {"id": "stage_1"}})])
        engine = stage_table_engine(
            {"lot": InMemoryBackend("lots"), "stage": client},
            config=EngineConfig(debounce_seconds=0.03),
        )
        engine.load(AggregateRoot(id="lot_1", kind="lot"), [
            Entity(id="stage_1", kind="stage", aggregate_id="lot_1",
                   fields={"name": "Drafting", "status": "NOT_STARTED"}),
        ])

        outcome = await engine.edit("stage_1", "status", "DONE")

        assert outcome.ok
        assert requests[0].method == "PATCH"
        assert json.loads(requests[0].content)["status"] == "DONE"
        engine.close()
