from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator
from uuid import uuid4

from opboard.core.errors import InvalidStateError, NotFoundError, ValidationError


# Garment grade, in display order.
SIZES: tuple[str, ...] = ("PP", "P", "M", "G", "GG", "G1", "G2", "G3", "G4", "G5")

ORDER_STATUSES: tuple[str, ...] = ("Pré-produção", "Em Produção", "Concluído", "Entregue")
PRODUCT_TYPES: tuple[str, ...] = ("Uniforme", "Brinde")


def now_ms() -> int:
    """Wall clock in epoch milliseconds (timer resolution)."""
    return int(time.time() * 1000)


def local_naive(dt: datetime) -> datetime:
    """Offset-aware values become naive local time; the board compares against datetime.now()."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid4().hex[:9]}"


class StageKind(str, Enum):
    INTERNAL = "Interna"
    OUTSOURCED = "Terceirizada"


class StageStatus(str, Enum):
    TODO = "A Fazer"
    IN_PROGRESS = "Em Execução"
    OUTBOUND_TRANSIT = "Terceirizado-Ida"
    AT_THIRD_PARTY = "Terceirizado"
    RETURN_TRANSIT = "Terceirizado-Volta"
    DONE = "Finalizado"


@dataclass
class StageTimer:
    """Cumulative in-progress time across start/pause cycles.

    Only ``accumulated_ms`` and ``started_at`` are stored; the running total is
    always derived at read time by :meth:`elapsed_ms`.
    """

    running: bool = False
    started_at: int | None = None
    accumulated_ms: int = 0

    def start(self, now: int | None = None) -> None:
        if self.running:
            raise InvalidStateError("Cronômetro já está em execução")
        self.running = True
        self.started_at = now_ms() if now is None else int(now)

    def pause(self, now: int | None = None) -> None:
        if not self.running:
            raise InvalidStateError("Cronômetro não está em execução")
        t = now_ms() if now is None else int(now)
        started = self.started_at if self.started_at is not None else t
        self.accumulated_ms += max(0, t - started)
        self.started_at = None
        self.running = False

    def reset(self) -> None:
        self.running = False
        self.started_at = None
        self.accumulated_ms = 0

    def elapsed_ms(self, now: int | None = None) -> int:
        if not self.running or self.started_at is None:
            return self.accumulated_ms
        t = now_ms() if now is None else int(now)
        return self.accumulated_ms + max(0, t - self.started_at)


@dataclass
class ChecklistItem:
    id: str
    text: str
    done: bool = False


@dataclass
class Checklist:
    items: list[ChecklistItem] = field(default_factory=list)

    def __iter__(self) -> Iterator[ChecklistItem]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @staticmethod
    def _clean_text(text: str | None) -> str:
        s = str(text or "").strip()
        if not s:
            raise ValidationError("Texto do item do checklist vazio")
        return s

    def get(self, item_id: str) -> ChecklistItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFoundError(f"Item de checklist não encontrado: {item_id}")

    def add_item(self, text: str) -> ChecklistItem:
        item = ChecklistItem(id=new_id(), text=self._clean_text(text))
        self.items.append(item)
        return item

    def toggle(self, item_id: str) -> ChecklistItem:
        item = self.get(item_id)
        item.done = not item.done
        return item

    def rename(self, item_id: str, text: str) -> ChecklistItem:
        item = self.get(item_id)
        item.text = self._clean_text(text)
        return item

    def remove(self, item_id: str) -> None:
        # Missing ids raise, same as toggle/rename.
        item = self.get(item_id)
        self.items.remove(item)

    def mark_all(self, done: bool) -> None:
        for item in self.items:
            item.done = bool(done)

    @property
    def done_count(self) -> int:
        return sum(1 for i in self.items if i.done)

    @property
    def open_count(self) -> int:
        return len(self.items) - self.done_count

    @property
    def is_complete(self) -> bool:
        return self.open_count == 0


@dataclass
class Stage:
    id: str
    name: str
    kind: StageKind = StageKind.INTERNAL
    status: StageStatus = StageStatus.TODO
    planned_duration_min: int | None = None
    timer: StageTimer = field(default_factory=StageTimer)
    checklist: Checklist = field(default_factory=Checklist)
    planned_quantity_by_size: dict[str, int] = field(default_factory=dict)
    produced_quantity_by_size: dict[str, int] = field(default_factory=dict)
    deadline: datetime | None = None

    # Outsourced stages only
    outsourced_partner: str | None = None
    tracking_code: str | None = None
    return_eta: datetime | None = None

    assignee: str | None = None
    updated_at: datetime | None = None

    @property
    def planned_total(self) -> int:
        return sum(int(q or 0) for q in self.planned_quantity_by_size.values())

    @property
    def produced_total(self) -> int:
        return sum(int(q or 0) for q in self.produced_quantity_by_size.values())


@dataclass
class OrderItem:
    """One product/color line of a production run; owns its stages."""

    id: str
    order_item_id: str
    product_name: str
    color_name: str
    product_ref: str = ""
    planned_quantity_by_size: dict[str, int] = field(default_factory=dict)
    stages: list[Stage] = field(default_factory=list)

    @property
    def total_quantity(self) -> int:
        return sum(int(q or 0) for q in self.planned_quantity_by_size.values())

    def find_stage(self, stage_id: str) -> Stage:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise NotFoundError(f"Etapa não encontrada: {stage_id}")


@dataclass
class ProductionRun:
    id: str
    order_id: str
    client_name: str
    sla_deadline: datetime
    published: bool = False
    items: list[OrderItem] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def find_item(self, item_id: str) -> OrderItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise NotFoundError(f"Item não encontrado na OP {self.id}: {item_id}")

    def find_stage(self, item_id: str, stage_id: str) -> Stage:
        return self.find_item(item_id).find_stage(stage_id)

    def iter_stages(self) -> Iterator[tuple[OrderItem, Stage]]:
        for item in self.items:
            for stage in item.stages:
                yield item, stage

    @property
    def has_stages(self) -> bool:
        return any(item.stages for item in self.items)

    @property
    def planned_total(self) -> int:
        return sum(item.total_quantity for item in self.items)


@dataclass
class OrderLine:
    product_id: str
    product_name: str
    color_name: str
    product_ref: str = ""
    grade: dict[str, int] = field(default_factory=dict)
    notes: str | None = None

    @property
    def line_key(self) -> str:
        # Stable per product+color, reused as the run item id.
        return f"{self.product_id}:{self.color_name}"

    @property
    def total_quantity(self) -> int:
        return sum(int(q or 0) for q in self.grade.values())


@dataclass
class Order:
    id: str
    client_name: str
    sla_deadline: datetime
    status: str = "Pré-produção"
    items: list[OrderLine] = field(default_factory=list)
    notes: str | None = None
    archived: bool = False
    archived_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def total_quantity(self) -> int:
        return sum(line.total_quantity for line in self.items)


@dataclass
class Client:
    id: str
    name: str
    contact_name: str = ""
    document: str | None = None
    phone: str | None = None
    email: str | None = None
    cep: str | None = None
    street: str | None = None
    number: str | None = None
    complement: str | None = None
    district: str | None = None
    city: str | None = None
    state_uf: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Product:
    id: str
    name: str
    ref: str
    type: str = "Uniforme"
    active: bool = True
    description: str | None = None
    sizes: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class User:
    id: str
    name: str
    email: str
    role_id: str
    permissions: list[str] = field(default_factory=list)
    status: str = "ativo"
    phone: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "ativo"


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None


@dataclass
class AppState:
    """Whole application state, persisted as a single snapshot."""

    clients: list[Client] = field(default_factory=list)
    products: list[Product] = field(default_factory=list)
    orders: list[Order] = field(default_factory=list)
    runs: list[ProductionRun] = field(default_factory=list)
    contacts: list[str] = field(default_factory=list)

    def find_order(self, order_id: str) -> Order:
        for order in self.orders:
            if order.id == order_id:
                return order
        raise NotFoundError(f"Pedido não encontrado: {order_id}")

    def get_order(self, order_id: str) -> Order | None:
        return next((o for o in self.orders if o.id == order_id), None)

    def find_run(self, run_id: str) -> ProductionRun:
        for run in self.runs:
            if run.id == run_id:
                return run
        raise NotFoundError(f"OP não encontrada: {run_id}")

    def runs_for_order(self, order_id: str) -> list[ProductionRun]:
        return [r for r in self.runs if r.order_id == order_id]

    def find_client(self, client_id: str) -> Client:
        for client in self.clients:
            if client.id == client_id:
                return client
        raise NotFoundError(f"Cliente não encontrado: {client_id}")

    def find_product(self, product_id: str) -> Product:
        for product in self.products:
            if product.id == product_id:
                return product
        raise NotFoundError(f"Produto não encontrado: {product_id}")

    def product_for_item(self, item: OrderItem) -> Product | None:
        for product in self.products:
            if product.name == item.product_name or (item.product_ref and product.ref == item.product_ref):
                return product
        return None
