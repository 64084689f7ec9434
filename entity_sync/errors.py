"""Error taxonomy of the synchronization engine."""

from typing import List, Optional

from entity_sync.models.validation import RowViolation


class SyncError(Exception):
    """Base class for engine errors."""
    pass


class ValidationError(SyncError):
    """Local, pre-dispatch rejection. Never reaches the network."""

    def __init__(self, violations: List[RowViolation]):
        self.violations = list(violations)
        summary = "; ".join(v.message for v in self.violations) or "validation failed"
        super().__init__(summary)


class PersistenceError(SyncError):
    """Remote rejection or transport failure."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)


class IdentityConflict(SyncError):
    """Two code paths resolved the same virtual row to different identities."""

    def __init__(self, placeholder: str, real_id: str):
        self.placeholder = placeholder
        self.real_id = real_id
        super().__init__(f"{placeholder} already resolved to {real_id}")


class CascadeDeleteHazard(SyncError):
    """Removing this row would leave its Aggregate Root empty."""

    def __init__(self, aggregate_id: str, entity_id: str):
        self.aggregate_id = aggregate_id
        self.entity_id = entity_id
        super().__init__(
            f"{entity_id} is the last row of {aggregate_id}; "
            f"removing it deletes the whole aggregate."
        )


class UnknownEntityError(SyncError, KeyError):
    """No entity, aggregate or template matches the identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Unknown entity: {identifier}")

    def __str__(self) -> str:
        return self.args[0]
