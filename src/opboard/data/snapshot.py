"""AppState <-> JSON document.

The same document is used for the persisted snapshot and for backup
export/import, so decoding is lenient about missing optional keys.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any

from opboard.core.errors import ValidationError
from opboard.core.models import (
    AppState,
    Checklist,
    ChecklistItem,
    Client,
    Order,
    OrderItem,
    OrderLine,
    Product,
    ProductionRun,
    Stage,
    StageKind,
    StageStatus,
    StageTimer,
    local_naive,
)

SNAPSHOT_VERSION = 1


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def encode_state(state: AppState) -> dict:
    doc = _jsonable(asdict(state))
    # Checklists are stored as plain lists.
    for run in doc["runs"]:
        for item in run["items"]:
            for stage in item["stages"]:
                stage["checklist"] = stage["checklist"]["items"]
    doc["version"] = SNAPSHOT_VERSION
    return doc


def _dt(value) -> datetime | None:
    if value in (None, ""):
        return None
    return local_naive(datetime.fromisoformat(str(value)))


def _quantities(value) -> dict[str, int]:
    return {str(k): int(v or 0) for k, v in (value or {}).items()}


def _timer(d: dict | None) -> StageTimer:
    d = d or {}
    running = bool(d.get("running", False))
    started_at = d.get("started_at")
    if running and started_at is None:
        running = False
    return StageTimer(
        running=running,
        started_at=int(started_at) if running else None,
        accumulated_ms=int(d.get("accumulated_ms") or 0),
    )


def _stage(d: dict) -> Stage:
    return Stage(
        id=str(d["id"]),
        name=str(d["name"]),
        kind=StageKind(d.get("kind") or StageKind.INTERNAL.value),
        status=StageStatus(d.get("status") or StageStatus.TODO.value),
        planned_duration_min=(int(d["planned_duration_min"]) if d.get("planned_duration_min") is not None else None),
        timer=_timer(d.get("timer")),
        checklist=Checklist(
            items=[
                ChecklistItem(id=str(c["id"]), text=str(c["text"]), done=bool(c.get("done", False)))
                for c in d.get("checklist") or []
            ]
        ),
        planned_quantity_by_size=_quantities(d.get("planned_quantity_by_size")),
        produced_quantity_by_size=_quantities(d.get("produced_quantity_by_size")),
        deadline=_dt(d.get("deadline")),
        outsourced_partner=d.get("outsourced_partner"),
        tracking_code=d.get("tracking_code"),
        return_eta=_dt(d.get("return_eta")),
        assignee=d.get("assignee"),
        updated_at=_dt(d.get("updated_at")),
    )


def _item(d: dict) -> OrderItem:
    return OrderItem(
        id=str(d["id"]),
        order_item_id=str(d.get("order_item_id") or d["id"]),
        product_name=str(d.get("product_name") or ""),
        color_name=str(d.get("color_name") or ""),
        product_ref=str(d.get("product_ref") or ""),
        planned_quantity_by_size=_quantities(d.get("planned_quantity_by_size")),
        stages=[_stage(s) for s in d.get("stages") or []],
    )


def _run(d: dict) -> ProductionRun:
    return ProductionRun(
        id=str(d["id"]),
        order_id=str(d["order_id"]),
        client_name=str(d.get("client_name") or ""),
        sla_deadline=_dt(d["sla_deadline"]),
        published=bool(d.get("published", False)),
        items=[_item(i) for i in d.get("items") or []],
        created_at=_dt(d.get("created_at")),
        updated_at=_dt(d.get("updated_at")),
    )


def _order(d: dict) -> Order:
    return Order(
        id=str(d["id"]),
        client_name=str(d.get("client_name") or ""),
        sla_deadline=_dt(d["sla_deadline"]),
        status=str(d.get("status") or "Pré-produção"),
        items=[
            OrderLine(
                product_id=str(line.get("product_id") or ""),
                product_name=str(line.get("product_name") or ""),
                color_name=str(line.get("color_name") or ""),
                product_ref=str(line.get("product_ref") or ""),
                grade=_quantities(line.get("grade")),
                notes=line.get("notes"),
            )
            for line in d.get("items") or []
        ],
        notes=d.get("notes"),
        archived=bool(d.get("archived", False)),
        archived_at=_dt(d.get("archived_at")),
        created_at=_dt(d.get("created_at")),
        updated_at=_dt(d.get("updated_at")),
    )


_CLIENT_FIELDS = (
    "document", "phone", "email", "cep", "street", "number",
    "complement", "district", "city", "state_uf", "notes",
)


def _client(d: dict) -> Client:
    return Client(
        id=str(d["id"]),
        name=str(d["name"]),
        contact_name=str(d.get("contact_name") or ""),
        created_at=_dt(d.get("created_at")),
        updated_at=_dt(d.get("updated_at")),
        **{k: d.get(k) for k in _CLIENT_FIELDS},
    )


def _product(d: dict) -> Product:
    return Product(
        id=str(d["id"]),
        name=str(d["name"]),
        ref=str(d.get("ref") or ""),
        type=str(d.get("type") or "Uniforme"),
        active=bool(d.get("active", True)),
        description=d.get("description"),
        sizes=[str(s) for s in d.get("sizes") or []],
        colors=[str(c) for c in d.get("colors") or []],
        created_at=_dt(d.get("created_at")),
        updated_at=_dt(d.get("updated_at")),
    )


def decode_state(doc: dict) -> AppState:
    if not isinstance(doc, dict):
        raise ValidationError("Documento de estado inválido")
    try:
        return AppState(
            clients=[_client(c) for c in doc.get("clients") or []],
            products=[_product(p) for p in doc.get("products") or []],
            orders=[_order(o) for o in doc.get("orders") or []],
            runs=[_run(r) for r in doc.get("runs") or []],
            contacts=[str(c) for c in doc.get("contacts") or []],
        )
    except (KeyError, TypeError, ValueError) as ex:
        raise ValidationError(f"Documento de estado inválido: {ex}") from ex


def dumps(state: AppState, *, indent: int | None = None) -> str:
    return json.dumps(encode_state(state), ensure_ascii=False, indent=indent)


def loads(text: str) -> AppState:
    try:
        doc = json.loads(text)
    except (TypeError, json.JSONDecodeError) as ex:
        raise ValidationError(f"JSON inválido: {ex}") from ex
    return decode_state(doc)
