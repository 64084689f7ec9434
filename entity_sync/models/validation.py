"""Row-level validation findings."""

from typing import Optional

from pydantic import BaseModel


class RowViolation(BaseModel):
    """One offending row, reported individually rather than as a generic error."""

    entity_id: str
    row: Optional[int] = None               # 1-based position within its group
    field: str
    message: str
