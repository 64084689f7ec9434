"""Schemas — describe a screen's rows and root so the engine stays generic."""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel


class PersistenceMode(str, Enum):
    ENTITY = "entity"         # each row has its own create/update/delete
    AGGREGATE = "aggregate"   # root persisted atomically together with its rows


class EntitySchema(BaseModel):
    """How rows of one kind are identified, compared and validated."""

    kind: str
    identity_field: Optional[str] = None    # falls back to template_key, then id
    required_fields: List[str] = []         # a row missing any of these is incomplete
    numeric_fields: List[str] = []
    compared_fields: Optional[List[str]] = None  # None compares every field
    positive_fields: List[str] = []         # must be present and > 0 once identified
    debounced_fields: List[str] = []
    relations: List[str] = []
    defaults: Dict[str, Any] = {}
    templates: List[str] = []               # predefined (virtual) row names
    template_field: Optional[str] = None    # field that carries the template name
    group_field: Optional[str] = None       # e.g., "category" for row labels
    label_field: Optional[str] = None
    date_order: Optional[Tuple[str, str]] = None
    date_window: Dict[str, Tuple[Optional[str], Optional[str]]] = {}

    def has_template(self, key: str) -> bool:
        return any(t.lower() == key.lower() for t in self.templates)

    def canonical_template(self, key: str) -> str:
        """Return the predefined spelling of a template name."""
        for t in self.templates:
            if t.lower() == key.lower():
                return t
        return key

    def template_fields(self, key: str) -> Dict[str, Any]:
        fields = dict(self.defaults)
        if self.template_field:
            fields[self.template_field] = key
        return fields


class AggregateSchema(BaseModel):
    """How an Aggregate Root is persisted and when it is worth persisting."""

    kind: str
    mode: PersistenceMode = PersistenceMode.ENTITY
    compared_fields: List[str] = []
    content_fields: List[str] = []          # non-empty value counts as content
    relations: List[str] = []
    required_relations_on_create: List[str] = []
    debounced_fields: List[str] = []
    row_kinds: List[str] = []
    delete_when_empty: bool = True         # last live row removal deletes the root
    payload_rows_key: str = "items"
