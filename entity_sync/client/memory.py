"""
In-Memory Backend — an in-process persistence layer.

Issues ids, records every call, and can be told to reject or drop calls.
For tests and the default wiring of the HTTP API.
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from entity_sync.client.base import SyncClient
from entity_sync.errors import PersistenceError
from entity_sync.models.mutation import SyncResult

logger = logging.getLogger(__name__)

Call = Tuple[str, Optional[str], Optional[Dict[str, Any]]]


class InMemoryBackend(SyncClient):
    """Dict-backed SyncClient with failure injection."""

    def __init__(self, resource: str = "entities", latency_seconds: float = 0.0):
        self.resource = resource
        self.latency_seconds = latency_seconds
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Call] = []
        self._fail_next = 0
        self._fail_message = "Simulated failure"
        self._raise_next = 0
        self._fail_for: Dict[str, str] = {}
        self._issued: List[str] = []
        self._gate: Optional[asyncio.Event] = None

    # --- Failure injection ---

    def fail_next(self, count: int = 1, message: str = "Simulated failure") -> None:
        """Reject the next `count` calls with a failure envelope."""
        self._fail_next = count
        self._fail_message = message

    def fail_for(self, object_id: str, message: str = "Simulated failure") -> None:
        """Reject every call naming this object until cleared."""
        self._fail_for[object_id] = message

    def clear_failures(self) -> None:
        self._fail_next = 0
        self._raise_next = 0
        self._fail_for.clear()

    def raise_next(self, count: int = 1) -> None:
        """Drop the next `count` calls as transport errors."""
        self._raise_next = count

    def issue_ids(self, *ids: str) -> None:
        """Ids handed out by the next creates, in order."""
        self._issued.extend(ids)

    def pause(self) -> None:
        """Hold every call in flight until resume()."""
        self._gate = asyncio.Event()

    def resume(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    # --- Inspection ---

    def calls_of(self, operation: str) -> List[Call]:
        return [c for c in self.calls if c[0] == operation]

    @property
    def call_count(self) -> int:
        return len(self.calls)

    # --- SyncClient ---

    async def _enter(self, operation: str, object_id: Optional[str], payload) -> Optional[SyncResult]:
        self.calls.append((operation, object_id, copy.deepcopy(payload)))
        logger.debug(f"{self.resource}.{operation} {object_id or ''}")
        if self._gate is not None:
            await self._gate.wait()
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self._raise_next > 0:
            self._raise_next -= 1
            raise PersistenceError("Connection reset by peer", object_id)
        if self._fail_next > 0:
            self._fail_next -= 1
            return SyncResult(status=False, message=self._fail_message)
        if object_id is not None and object_id in self._fail_for:
            return SyncResult(status=False, message=self._fail_for[object_id])
        return None

    async def create(self, payload: Dict[str, Any]) -> SyncResult:
        failure = await self._enter("create", None, payload)
        if failure is not None:
            return failure
        new_id = self._issued.pop(0) if self._issued else f"{self.resource}_{uuid.uuid4().hex[:12]}"
        row = copy.deepcopy(payload)
        row["id"] = new_id
        self.rows[new_id] = row
        return SyncResult(status=True, message="Created", data=copy.deepcopy(row))

    async def update(self, object_id: str, payload: Dict[str, Any]) -> SyncResult:
        failure = await self._enter("update", object_id, payload)
        if failure is not None:
            return failure
        row = self.rows.setdefault(object_id, {"id": object_id})
        row.update(copy.deepcopy(payload))
        return SyncResult(status=True, message="Updated", data=copy.deepcopy(row))

    async def delete(self, object_id: str) -> SyncResult:
        failure = await self._enter("delete", object_id, None)
        if failure is not None:
            return failure
        self.rows.pop(object_id, None)
        for row_id in [k for k, v in self.rows.items() if v.get("aggregate_id") == object_id]:
            del self.rows[row_id]
        return SyncResult(status=True, message="Deleted")
