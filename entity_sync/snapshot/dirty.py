"""
Dirty Detector — decides whether anything is worth persisting.

Pure predicates. Consumed to enable/disable a save action and to decide
whether a debounced timer fire should actually call the network.
"""

from typing import Iterable, Optional

from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.models.snapshot import Snapshot
from entity_sync.snapshot.normalizer import SnapshotNormalizer, canonical


def is_dirty(current: Snapshot, baseline: Optional[Snapshot]) -> bool:
    """Structural comparison of two normalized snapshots."""
    if baseline is None:
        return not current.is_empty()
    return current != baseline


class DirtyDetector:
    """Combines snapshot dirtiness with minimum-content rules."""

    def __init__(self, normalizer: SnapshotNormalizer):
        self.normalizer = normalizer

    def is_dirty(self, current: Snapshot, baseline: Optional[Snapshot]) -> bool:
        return is_dirty(current, baseline)

    def entity_is_dirty(self, current: Entity, baseline: Optional[Entity]) -> bool:
        """Row-level dirtiness: a row that normalizes like its baseline is clean."""
        now = self.normalizer.normalize_entity(current)
        before = self.normalizer.normalize_entity(baseline) if baseline else None
        if before is None:
            return now is not None
        return now != before

    def has_content(self, aggregate: AggregateRoot, entities: Iterable[Entity]) -> bool:
        """An aggregate with no complete rows, no notes and no files is never worth creating."""
        if any(self.normalizer.is_complete(e) for e in entities):
            return True
        if aggregate.attachments:
            return True
        schema = self.normalizer.aggregate_schema
        return any(canonical(aggregate.fields.get(f)) is not None for f in schema.content_fields)

    def creation_prerequisites_met(self, aggregate: AggregateRoot) -> bool:
        if not aggregate.is_virtual:
            return True
        schema = self.normalizer.aggregate_schema
        return all(aggregate.relationships.get(r) for r in schema.required_relations_on_create)

    def can_persist(
        self,
        aggregate: AggregateRoot,
        entities: Iterable[Entity],
        current: Snapshot,
        baseline: Optional[Snapshot],
    ) -> bool:
        entities = list(entities)
        if not self.creation_prerequisites_met(aggregate):
            return False
        if not self.has_content(aggregate, entities):
            return False
        if aggregate.is_virtual:
            return True
        return self.is_dirty(current, baseline)
