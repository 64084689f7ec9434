"""Notifications published to subscribers of the engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from entity_sync.models.validation import RowViolation


class EventKind(str, Enum):
    CHANGED = "changed"
    SAVING = "saving"
    SAVED = "saved"
    ROLLED_BACK = "rolled_back"
    VALIDATION_FAILED = "validation_failed"
    REMOVED = "removed"
    CASCADE_REQUIRED = "cascade_required"
    BATCH_PARTIAL_FAILURE = "batch_partial_failure"


class SaveStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"       # debounce timer running
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class SyncEvent(BaseModel):
    kind: EventKind
    target_id: str
    aggregate_id: Optional[str] = None
    message: Optional[str] = None
    violations: List[RowViolation] = []
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
