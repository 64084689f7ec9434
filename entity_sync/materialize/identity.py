"""Identity Map — placeholder ids of virtual rows and the real ids they became."""

import logging
from typing import Dict, Optional

from entity_sync.errors import IdentityConflict

logger = logging.getLogger(__name__)


class IdentityMap:
    """Bidirectional placeholder <-> real id map."""

    def __init__(self, prefix: str = "temp"):
        self.prefix = prefix
        self._forward: Dict[str, str] = {}
        self._reverse: Dict[str, str] = {}

    def placeholder(self, scope: str, template_key: str) -> str:
        """Deterministic placeholder for a template within a scope."""
        return f"{self.prefix}:{scope}:{template_key}"

    def is_placeholder(self, object_id: str) -> bool:
        return object_id.startswith(f"{self.prefix}:")

    def bind(self, placeholder: str, real_id: str) -> None:
        existing = self._forward.get(placeholder)
        if existing is not None and existing != real_id:
            raise IdentityConflict(placeholder, existing)
        self._forward[placeholder] = real_id
        self._reverse[real_id] = placeholder

    def resolve(self, object_id: str) -> str:
        """Follow a placeholder to its real id; other ids resolve to themselves."""
        return self._forward.get(object_id, object_id)

    def placeholder_for(self, real_id: str) -> Optional[str]:
        return self._reverse.get(real_id)

    def forget(self, object_id: str) -> None:
        """Drop any mapping that mentions the id (after a delete)."""
        real = self._forward.pop(object_id, None)
        if real is not None:
            self._reverse.pop(real, None)
        placeholder = self._reverse.pop(object_id, None)
        if placeholder is not None:
            self._forward.pop(placeholder, None)

    def __len__(self) -> int:
        return len(self._forward)
