"""
Relationship Set Toggler — many-to-many membership edits as symmetric differences.

Behavioral Contract:
- A toggle adds the member if absent and removes it if present
- The local set changes immediately; the remote call is never debounced
- Toggling the same member twice restores the original set
"""

import logging
from typing import Awaitable, Callable, Optional, Set

from entity_sync.models.mutation import MutationOutcome, SyncResult
from entity_sync.registry.store import EntityRegistry
from entity_sync.rollback.manager import RollbackManager

logger = logging.getLogger(__name__)


def toggled(members: Set[str], member_id: str) -> Set[str]:
    """Symmetric difference of a set with a single member."""
    return set(members) ^ {member_id}


class RelationshipToggler:
    """Applies membership toggles through the Rollback Manager."""

    def __init__(self, registry: EntityRegistry, rollback: RollbackManager):
        self.registry = registry
        self.rollback = rollback

    def current(self, target_id: str, relation: str) -> Set[str]:
        obj = self.registry.require(target_id)
        return set(obj.relationships.get(relation, set()))

    def apply(self, target_id: str, relation: str, member_id: str) -> Set[str]:
        """Toggle locally, re-deriving the set from the registry. Returns the new set."""
        new_members = toggled(self.current(target_id, relation), member_id)
        self.registry.set_relation(target_id, relation, new_members)
        return new_members

    async def toggle(
        self,
        target_id: str,
        relation: str,
        member_id: str,
        persist: Callable[[str], Awaitable[SyncResult]],
        before_persist: Optional[Callable[[str], None]] = None,
    ) -> MutationOutcome:
        """
        Toggle a member and persist the whole set.

        `persist` receives the (possibly remapped) target id once the local
        set is updated. On failure the set reverts to its pre-toggle value.
        """
        def mutate(resolved_id: str) -> None:
            self.apply(resolved_id, relation, member_id)
            if before_persist is not None:
                before_persist(resolved_id)

        outcome = await self.rollback.attempt(target_id, mutate, persist)
        if outcome.rolled_back:
            logger.info(f"Toggle of {member_id} in {relation} on {target_id} reverted")
        return outcome
