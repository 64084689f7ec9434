"""
Sync Client — the persistence layer as the engine sees it.

Behavioral Contract:
- create/update/delete return a SyncResult envelope; a rejected call is
  status=False, a transport failure raises PersistenceError
- The engine guarantees at most one in-flight call per entity; clients do
  not deduplicate retries
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.models.mutation import SyncResult


def to_payload(obj, rows: Optional[List[Entity]] = None, rows_key: str = "items") -> Dict[str, Any]:
    """JSON-ready request body: fields flattened, relation sets as sorted lists."""
    payload: Dict[str, Any] = {}
    if not obj.is_virtual:
        payload["id"] = obj.id
    if isinstance(obj, Entity):
        payload["aggregate_id"] = obj.aggregate_id
    payload.update(obj.fields)
    for name, members in obj.relationships.items():
        payload[name] = sorted(members)
    if isinstance(obj, AggregateRoot):
        if obj.attachments:
            payload["attachments"] = list(obj.attachments)
        if rows is not None:
            payload[rows_key] = [to_payload(r) for r in rows]
    return payload


class SyncClient(ABC):
    """Abstract persistence collaborator for one resource."""

    resource: str = "entities"

    @abstractmethod
    async def create(self, payload: Dict[str, Any]) -> SyncResult:
        """Create an aggregate or entity. data carries the server id."""

    @abstractmethod
    async def update(self, object_id: str, payload: Dict[str, Any]) -> SyncResult:
        """Update (a subset of) an object's fields."""

    @abstractmethod
    async def delete(self, object_id: str) -> SyncResult:
        """Delete an object. Deleting an aggregate deletes its rows server-side."""

    async def aclose(self) -> None:
        pass
