"""
Screen presets — schemas of the editable tables and ready-made engines.

Stage table:          lot root, one row per stage, rows saved individually
Materials to order:   order-list root saved atomically with its line items
Lot tab notes:        one debounced note per lot tab
Maintenance checklist: cumulative preparation flags per lot file
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from entity_sync.client.base import SyncClient
from entity_sync.engine.session import SyncEngine
from entity_sync.models.config import EngineConfig
from entity_sync.models.schema import AggregateSchema, EntitySchema, PersistenceMode


class StageStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    NA = "NA"


PREDEFINED_STAGES: List[str] = [
    "Site Measure",
    "Drafting",
    "Ordering",
    "Production",
    "Delivery",
    "Installation",
    "Maintenance",
]

LOT_TABS: List[str] = [
    "ARCHITECTURE_DRAWINGS",
    "APPLIANCES_SPECIFICATIONS",
    "CABINETRY_DRAWINGS",
    "CHANGES_TO_DO",
    "SITE_MEASUREMENTS",
    "MATERIAL_SELECTION",
    "SITE_PHOTOS",
    "FINISHED_SITE_PHOTOS",
]


class ChecklistStage(str, Enum):
    """Preparation stages of a lot file, each implying the ones before it."""

    PREPARED_BY_OFFICE = "prepared_by_office"
    PREPARED_BY_PRODUCTION = "prepared_by_production"
    DELIVERED_TO_SITE = "delivered_to_site"
    INSTALLED = "installed"

    @classmethod
    def ordered(cls) -> List["ChecklistStage"]:
        return [
            cls.PREPARED_BY_OFFICE,
            cls.PREPARED_BY_PRODUCTION,
            cls.DELIVERED_TO_SITE,
            cls.INSTALLED,
        ]

    def flags(self) -> Dict[str, bool]:
        """This stage and every earlier one set, every later one cleared."""
        order = self.ordered()
        reached = order.index(self)
        return {stage.value: i <= reached for i, stage in enumerate(order)}


# --- Stage table ---

LOT_SCHEMA = AggregateSchema(
    kind="lot",
    mode=PersistenceMode.ENTITY,
    row_kinds=["stage"],
    delete_when_empty=False,
)

STAGE_SCHEMA = EntitySchema(
    kind="stage",
    identity_field="name",
    template_field="name",
    templates=PREDEFINED_STAGES,
    compared_fields=["name", "status", "notes", "start_date", "end_date"],
    defaults={
        "status": StageStatus.NOT_STARTED.value,
        "notes": "",
        "start_date": None,
        "end_date": None,
    },
    relations=["assigned_to"],
    debounced_fields=["notes"],
    date_order=("start_date", "end_date"),
    date_window={
        "start_date": ("start_date", "installation_due_date"),
        "end_date": ("start_date", "installation_due_date"),
    },
)

# --- Materials to order ---

MATERIALS_TO_ORDER_SCHEMA = AggregateSchema(
    kind="materials_to_order",
    mode=PersistenceMode.AGGREGATE,
    compared_fields=["notes"],
    content_fields=["notes"],
    relations=["lot_ids"],
    required_relations_on_create=["lot_ids"],
    debounced_fields=["notes"],
    row_kinds=["line_item"],
    payload_rows_key="items",
)

LINE_ITEM_SCHEMA = EntitySchema(
    kind="line_item",
    identity_field="item_id",
    required_fields=["item_id", "quantity"],
    numeric_fields=["quantity"],
    compared_fields=["item_id", "quantity"],
    positive_fields=["quantity"],
    debounced_fields=["quantity"],
    group_field="category",
    label_field="label",
)

# --- Lot tab notes ---

LOT_NOTES_SCHEMA = AggregateSchema(
    kind="lot",
    mode=PersistenceMode.ENTITY,
    row_kinds=["lot_tab"],
    delete_when_empty=False,
)

LOT_TAB_SCHEMA = EntitySchema(
    kind="lot_tab",
    identity_field="tab",
    template_field="tab",
    templates=LOT_TABS,
    compared_fields=["tab", "notes"],
    defaults={"notes": ""},
    debounced_fields=["notes"],
)

# --- Maintenance checklist ---

LOT_FILES_SCHEMA = AggregateSchema(
    kind="lot",
    mode=PersistenceMode.ENTITY,
    row_kinds=["maintenance_checklist"],
    delete_when_empty=False,
)

CHECKLIST_SCHEMA = EntitySchema(
    kind="maintenance_checklist",
    identity_field="lot_file_id",
    compared_fields=[s.value for s in ChecklistStage.ordered()],
    defaults={s.value: False for s in ChecklistStage.ordered()},
)


# --- Factories ---

Clients = Union[SyncClient, Dict[str, SyncClient]]


def stage_table_engine(
    clients: Clients, config: Optional[EngineConfig] = None, journal=None
) -> SyncEngine:
    return SyncEngine(LOT_SCHEMA, [STAGE_SCHEMA], clients, config=config, journal=journal)


def materials_to_order_engine(
    clients: Clients, config: Optional[EngineConfig] = None, journal=None
) -> SyncEngine:
    return SyncEngine(
        MATERIALS_TO_ORDER_SCHEMA, [LINE_ITEM_SCHEMA], clients, config=config, journal=journal
    )


def lot_notes_engine(
    clients: Clients, config: Optional[EngineConfig] = None, journal=None
) -> SyncEngine:
    return SyncEngine(LOT_NOTES_SCHEMA, [LOT_TAB_SCHEMA], clients, config=config, journal=journal)


def maintenance_checklist_engine(
    clients: Clients, config: Optional[EngineConfig] = None, journal=None
) -> SyncEngine:
    return SyncEngine(
        LOT_FILES_SCHEMA, [CHECKLIST_SCHEMA], clients, config=config, journal=journal
    )


async def mark_all_files(engine: SyncEngine, entity_ids: List[str], stage: ChecklistStage):
    """Mark every listed file's checklist as having reached `stage`."""
    return await engine.mark_all(entity_ids, stage.flags())
