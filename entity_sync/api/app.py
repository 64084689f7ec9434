"""
Entity Sync API — FastAPI endpoints.

Exposes a SyncEngine over REST for:
- Aggregate loading, snapshots, dirtiness and explicit saves
- Row materialization, field edits, relation toggles and removal
- Batch updates
- Flushing pending saves
- Mutation journal queries
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from entity_sync.client.memory import InMemoryBackend
from entity_sync.config import get_settings
from entity_sync.engine.session import SyncEngine
from entity_sync.errors import (
    CascadeDeleteHazard,
    PersistenceError,
    SyncError,
    UnknownEntityError,
    ValidationError,
)
from entity_sync.journal.store import MutationJournal
from entity_sync.log_config import setup_logging
from entity_sync.models.config import EngineConfig
from entity_sync.models.entity import AggregateRoot, Entity
from entity_sync.presets.screens import stage_table_engine


# --- Request Models ---

class LoadRequest(BaseModel):
    aggregate: AggregateRoot
    entities: List[Entity] = []


class NewAggregateRequest(BaseModel):
    template_key: str = "new"
    fields: Dict[str, Any] = {}
    relationships: Dict[str, List[str]] = {}


class MaterializeRequest(BaseModel):
    template_key: str


class AddRowRequest(BaseModel):
    kind: Optional[str] = None
    fields: Dict[str, Any] = {}
    index: Optional[int] = None


class EditRequest(BaseModel):
    field: str
    value: Any = None
    aggregate_id: Optional[str] = None


class ToggleRequest(BaseModel):
    relation: str
    member_id: str
    aggregate_id: Optional[str] = None


class MarkAllRequest(BaseModel):
    entity_ids: List[str]
    fields: Dict[str, Any]


class FlushRequest(BaseModel):
    target_id: Optional[str] = None


# --- Application Factory ---

def _default_engine(journal: MutationJournal) -> SyncEngine:
    clients = {"lot": InMemoryBackend("lots"), "stage": InMemoryBackend("stages")}
    return stage_table_engine(clients, config=EngineConfig.from_settings(), journal=journal)


def create_app(
    engine: Optional[SyncEngine] = None,
    journal: Optional[MutationJournal] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="Entity Sync API",
        description="Optimistic entity synchronization engine",
        version="0.1.0",
    )

    if journal is None:
        journal = (engine.journal if engine is not None else None) or MutationJournal(
            get_settings().journal_path
        )
    if engine is None:
        engine = _default_engine(journal)
    elif engine.journal is None:
        engine.journal = journal
        engine.rollback.journal = journal

    app.state.engine = engine
    app.state.journal = journal

    # === ERROR MAPPING ===

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={
            "detail": str(exc),
            "violations": [v.model_dump(mode="json") for v in exc.violations],
        })

    @app.exception_handler(UnknownEntityError)
    async def on_unknown_entity(request: Request, exc: UnknownEntityError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CascadeDeleteHazard)
    async def on_cascade_hazard(request: Request, exc: CascadeDeleteHazard):
        return JSONResponse(status_code=409, content={
            "detail": str(exc),
            "aggregate_id": exc.aggregate_id,
            "entity_id": exc.entity_id,
        })

    @app.exception_handler(PersistenceError)
    async def on_persistence_error(request: Request, exc: PersistenceError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(SyncError)
    async def on_sync_error(request: Request, exc: SyncError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # === AGGREGATES ===

    @app.post("/aggregates")
    async def load_aggregate(req: LoadRequest):
        """Register server data as the persisted baseline."""
        aggregate = engine.load(req.aggregate, req.entities)
        return {"id": aggregate.id, "rows": len(aggregate.entity_ids)}

    @app.post("/aggregates/new")
    async def new_aggregate(req: NewAggregateRequest):
        """A root that exists only locally until its first save."""
        aggregate = engine.new_aggregate(req.template_key, req.fields, req.relationships)
        return aggregate.model_dump(mode="json")

    @app.get("/aggregates/{aggregate_id}/snapshot")
    async def get_snapshot(aggregate_id: str):
        return {
            "snapshot": engine.get_snapshot(aggregate_id).model_dump(mode="json"),
            "dirty": engine.is_dirty(aggregate_id),
            "can_persist": engine.can_persist(aggregate_id),
        }

    @app.get("/aggregates/{aggregate_id}/rows")
    async def get_rows(aggregate_id: str):
        return [row.model_dump(mode="json") for row in engine.rows(aggregate_id)]

    @app.post("/aggregates/{aggregate_id}/materialize")
    async def materialize(aggregate_id: str, req: MaterializeRequest):
        return engine.materialize(aggregate_id, req.template_key).model_dump(mode="json")

    @app.post("/aggregates/{aggregate_id}/rows")
    async def add_row(aggregate_id: str, req: AddRowRequest):
        row = await engine.add_row(aggregate_id, req.kind, req.fields, req.index)
        return row.model_dump(mode="json")

    @app.post("/aggregates/{aggregate_id}/save")
    async def save_aggregate(aggregate_id: str):
        outcome = await engine.save(aggregate_id)
        return outcome.model_dump(mode="json")

    @app.delete("/aggregates/{aggregate_id}")
    async def remove_aggregate(aggregate_id: str):
        """Delete an aggregate with all of its rows."""
        outcome = await engine.remove_aggregate(aggregate_id)
        return outcome.model_dump(mode="json")

    # === ENTITIES ===

    @app.get("/entities/{entity_id}")
    async def get_entity(entity_id: str):
        obj = engine.get(entity_id)
        pending = engine.pending_mutation(entity_id)
        return {
            "entity": obj.model_dump(mode="json"),
            "save_status": engine.save_status(entity_id).value,
            "pending": pending.model_dump(mode="json") if pending else None,
        }

    @app.patch("/entities/{entity_id}")
    async def edit_entity(entity_id: str, req: EditRequest):
        """Edit one field. Debounced fields answer before they are persisted."""
        outcome = await engine.edit(entity_id, req.field, req.value, req.aggregate_id)
        if outcome is None:
            return {"entity_id": entity_id, "scheduled": True}
        return outcome.model_dump(mode="json")

    @app.post("/entities/{entity_id}/toggle")
    async def toggle_relation(entity_id: str, req: ToggleRequest):
        members = await engine.toggle(entity_id, req.relation, req.member_id, req.aggregate_id)
        return {"relation": req.relation, "members": sorted(members)}

    @app.delete("/entities/{entity_id}")
    async def remove_entity(entity_id: str, confirm_cascade: bool = False):
        outcome = await engine.remove(entity_id, confirm_cascade=confirm_cascade)
        return outcome.model_dump(mode="json")

    # === BATCH / LIFECYCLE ===

    @app.post("/batch/mark")
    async def mark_all(req: MarkAllRequest):
        batch = await engine.mark_all(req.entity_ids, req.fields)
        return {"ok": batch.ok, **batch.model_dump(mode="json")}

    @app.post("/flush")
    async def flush(req: FlushRequest):
        await engine.flush(req.target_id)
        return {"status": "flushed"}

    # === JOURNAL ===

    @app.get("/journal")
    def get_journal(limit: int = 50):
        return [r.model_dump(mode="json") for r in journal.query_recent(limit)]

    @app.get("/journal/failures")
    def get_journal_failures():
        return [r.model_dump(mode="json") for r in journal.query_failures()]

    @app.get("/journal/by-entity/{entity_id}")
    def get_journal_by_entity(entity_id: str):
        return [r.model_dump(mode="json") for r in journal.query_by_entity(entity_id)]

    @app.get("/journal/by-aggregate/{aggregate_id}")
    def get_journal_by_aggregate(aggregate_id: str):
        return [r.model_dump(mode="json") for r in journal.query_by_aggregate(aggregate_id)]

    @app.get("/journal/{record_id}")
    def get_journal_record(record_id: str):
        record = journal.get_by_id(record_id)
        if not record:
            raise HTTPException(404, "Record not found")
        return record.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
