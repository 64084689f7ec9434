"""
Mutation Journal — append-only record of every settled mutation attempt.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Every record answers: which object? which operation? what was sent?
  what was the state before? did it commit, roll back, or get discarded?
- Queryable by entity, aggregate, failures and recency.
"""

import json
import sqlite3
from typing import List, Optional

from entity_sync.models.mutation import MutationRecord


class MutationJournal:
    """
    Append-only mutation journal.
    SQLite; ":memory:" keeps it for the life of the process.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS mutations (
                id TEXT PRIMARY KEY,
                entity_id TEXT NOT NULL,
                aggregate_id TEXT,
                operation TEXT NOT NULL,
                outcome TEXT NOT NULL,
                message TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_mutations_entity_id ON mutations(entity_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_mutations_aggregate_id ON mutations(aggregate_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_mutations_outcome ON mutations(outcome)
        """)
        self._conn.commit()

    def append(self, record: MutationRecord) -> MutationRecord:
        self._conn.execute(
            """
            INSERT INTO mutations (
                id, entity_id, aggregate_id, operation, outcome, message,
                record_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.entity_id,
                record.aggregate_id,
                record.operation,
                record.outcome,
                record.message,
                json.dumps(record.model_dump(mode="json"), default=str),
                record.created_at.isoformat(),
            ),
        )
        self._conn.commit()
        return record

    def _deserialize(self, row: sqlite3.Row) -> MutationRecord:
        return MutationRecord.model_validate_json(row["record_json"])

    def get_by_id(self, record_id: str) -> Optional[MutationRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM mutations WHERE id = ?", (record_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_entity(self, entity_id: str) -> List[MutationRecord]:
        """Every attempt on one object, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM mutations WHERE entity_id = ? ORDER BY rowid",
            (entity_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_aggregate(self, aggregate_id: str) -> List[MutationRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM mutations WHERE aggregate_id = ? ORDER BY rowid",
            (aggregate_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_failures(self) -> List[MutationRecord]:
        """Attempts that were rolled back."""
        rows = self._conn.execute(
            "SELECT record_json FROM mutations WHERE outcome = 'rolled_back' ORDER BY rowid"
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[MutationRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM mutations ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM mutations").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
