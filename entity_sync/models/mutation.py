"""Mutation records — remote envelopes, pending attempts and their outcomes."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncResult(BaseModel):
    """Envelope returned by every remote create/update/delete call."""

    status: bool
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class PendingMutation(BaseModel):
    """Created when a call is dispatched; discarded on success, replayed on failure."""

    aggregate_id: Optional[str] = None
    entity_id: str
    operation: str                          # "create" | "update" | "delete"
    pre_state: Dict[str, Any] = {}          # object id -> model_dump of the object
    request_payload: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_now)


class MutationOutcome(BaseModel):
    """How one attempt settled."""

    entity_id: str
    ok: bool
    rolled_back: bool = False
    discarded: bool = False                 # target deleted while the call was in flight
    skipped: bool = False                   # nothing worth persisting
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class BatchOutcome(BaseModel):
    """Per-row result of a batch update."""

    succeeded: List[str] = []
    failed: Dict[str, str] = {}

    @property
    def ok(self) -> bool:
        return not self.failed


class MutationRecord(BaseModel):
    """Append-only journal row for a settled mutation."""

    id: str
    entity_id: str
    aggregate_id: Optional[str] = None
    operation: str
    outcome: str                            # "committed" | "rolled_back" | "discarded"
    message: Optional[str] = None
    request_payload: Optional[Dict[str, Any]] = None
    pre_state: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_now)
