"""Kanban projection.

Cards are rebuilt from the application state on every read; nothing here is
cached. Lanes are scoped to one (run, item) pair, so a card can only move
between lanes of its own run item.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from opboard.core import stages as stage_flow
from opboard.core.errors import CrossRunMoveError, ValidationError
from opboard.core.models import AppState, ProductionRun, Stage, StageKind, StageStatus, now_ms


@dataclass(frozen=True)
class Lane:
    run_id: str
    item_id: str
    status: StageStatus

    @property
    def lane_id(self) -> str:
        return f"{self.run_id}::{self.item_id}::lane::{self.status.name}"

    @classmethod
    def parse(cls, lane_id: str) -> Lane:
        # Item ids may contain colons; run ids never do.
        head, *tail = str(lane_id).rsplit("::", 2)
        run_id, _, item_id = head.partition("::")
        if len(tail) != 2 or tail[0] != "lane" or not run_id or not item_id:
            raise ValidationError(f"Identificador de coluna inválido: {lane_id!r}")
        status_name = tail[1]
        try:
            status = StageStatus[status_name]
        except KeyError:
            raise ValidationError(f"Identificador de coluna inválido: {lane_id!r}") from None
        return cls(run_id=run_id, item_id=item_id, status=status)


@dataclass(frozen=True)
class Card:
    run_id: str
    order_id: str
    item_id: str
    stage_id: str
    client_name: str
    stage_name: str
    stage_kind: StageKind
    status: StageStatus
    product_name: str
    product_ref: str
    product_type: str
    color_name: str
    sla_deadline: datetime
    planned_by_size: dict[str, int] = field(default_factory=dict)
    produced_by_size: dict[str, int] = field(default_factory=dict)
    planned_total: int = 0
    planned_duration_min: int | None = None
    deadline: datetime | None = None
    return_eta: datetime | None = None
    timer_running: bool = False
    timer_started_at: int | None = None
    timer_accumulated_ms: int = 0
    checklist_done: int = 0
    checklist_total: int = 0

    @property
    def card_id(self) -> str:
        return f"{self.order_id}::{self.stage_id}::{self.item_id}"

    @property
    def lane(self) -> Lane:
        return Lane(run_id=self.run_id, item_id=self.item_id, status=self.status)

    def elapsed_ms(self, now: int | None = None) -> int:
        if not self.timer_running or self.timer_started_at is None:
            return self.timer_accumulated_ms
        t = now_ms() if now is None else int(now)
        return self.timer_accumulated_ms + max(0, t - self.timer_started_at)

    def is_overdue(self, now: datetime | None = None) -> bool:
        return self.sla_deadline < (now or datetime.now())


def visible_runs(state: AppState) -> list[ProductionRun]:
    """Published runs whose order exists and is not archived."""
    out: list[ProductionRun] = []
    for run in state.runs:
        if not run.published:
            continue
        order = state.get_order(run.order_id)
        if order is None or order.archived:
            continue
        out.append(run)
    return out


def _card(state: AppState, run: ProductionRun, item, stage: Stage) -> Card:
    product = state.product_for_item(item)
    planned = dict(stage.planned_quantity_by_size or item.planned_quantity_by_size)
    return Card(
        run_id=run.id,
        order_id=run.order_id,
        item_id=item.id,
        stage_id=stage.id,
        client_name=run.client_name,
        stage_name=stage.name or "Etapa",
        stage_kind=stage.kind,
        status=stage.status,
        product_name=item.product_name or "Produto",
        product_ref=(product.ref if product else "") or item.product_ref,
        product_type=product.type if product else "Uniforme",
        color_name=item.color_name or "Cor",
        sla_deadline=run.sla_deadline,
        planned_by_size=planned,
        produced_by_size=dict(stage.produced_quantity_by_size),
        planned_total=sum(planned.values()),
        planned_duration_min=stage.planned_duration_min,
        deadline=stage.deadline,
        return_eta=stage.return_eta,
        timer_running=stage.timer.running,
        timer_started_at=stage.timer.started_at,
        timer_accumulated_ms=stage.timer.accumulated_ms,
        checklist_done=stage.checklist.done_count,
        checklist_total=len(stage.checklist),
    )


def build_cards(state: AppState) -> list[Card]:
    return [
        _card(state, run, item, stage)
        for run in visible_runs(state)
        for item, stage in run.iter_stages()
    ]


def filter_cards(
    cards: list[Card],
    query: str | None = "",
    overdue_only: bool = False,
    now: datetime | None = None,
) -> list[Card]:
    needle = str(query or "").strip().lower()
    now = now or datetime.now()

    def _matches(card: Card) -> bool:
        if not needle:
            return True
        fields = (card.run_id, card.order_id, card.client_name, card.stage_name, card.product_name, card.color_name)
        return any(needle in str(f or "").lower() for f in fields)

    return [c for c in cards if _matches(c) and (not overdue_only or c.is_overdue(now))]


def lanes_for(kinds) -> tuple[StageStatus, ...]:
    """Lane statuses for one run item, given the kinds of its stages."""
    kinds = {StageKind(k) for k in kinds} or {StageKind.INTERNAL}
    lanes: list[StageStatus] = []
    for kind in (StageKind.INTERNAL, StageKind.OUTSOURCED):
        if kind in kinds:
            lanes.extend([s for s in stage_flow.allowed_statuses(kind) if s not in lanes and s is not StageStatus.DONE])
    lanes.append(StageStatus.DONE)
    return tuple(lanes)


def group_cards(cards: list[Card]) -> dict[tuple[str, str], dict[StageStatus, list[Card]]]:
    """Cards per (run_id, item_id), then per lane status; empty lanes included."""
    by_item: dict[tuple[str, str], list[Card]] = {}
    for card in cards:
        by_item.setdefault((card.run_id, card.item_id), []).append(card)

    grouped: dict[tuple[str, str], dict[StageStatus, list[Card]]] = {}
    for key, item_cards in by_item.items():
        lanes = {status: [] for status in lanes_for(c.stage_kind for c in item_cards)}
        for card in item_cards:
            lanes.setdefault(card.status, []).append(card)
        grouped[key] = lanes
    return grouped


def move_card(state: AppState, card: Card, target: Lane, *, now: int | None = None) -> Stage:
    """Apply a board drop. Raises CrossRunMoveError for another run/item lane."""
    if (card.run_id, card.item_id) != (target.run_id, target.item_id):
        raise CrossRunMoveError("Não é possível mover entre pedidos")
    run = state.find_run(card.run_id)
    stage = run.find_stage(card.item_id, card.stage_id)
    stage_flow.transition(stage, target.status, now=now)
    return stage
