from __future__ import annotations

import io
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pandas as pd

from opboard.core.models import SIZES, AppState, StageKind, StageStatus, now_ms as _now_ms


# ---------- Display helpers ----------
def format_duration_ms(ms: int | None) -> str:
    """Timer display, ``HH:MM:SS`` (hours are not wrapped)."""
    total = max(0, int(ms or 0)) // 1000
    h, rest = divmod(total, 3600)
    m, s = divmod(rest, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def format_minutes(minutes: int | None) -> str:
    if not minutes:
        return "—"
    h, m = divmod(int(minutes), 60)
    return f"{h}h {m}m"


def sla_badge(sla_deadline: datetime, now: datetime | None = None) -> tuple[str, str]:
    """(label, color) for a deadline: ``D-n`` while ahead, ``D+n`` once late."""
    now = now or datetime.now()
    days = math.ceil((sla_deadline - now).total_seconds() / 86400)
    if days >= 1:
        color = "positive" if days > 3 else "warning"
        return f"D-{days}", color
    return f"D+{abs(days)}", "negative"


def deadline_badge(deadline: datetime | None, now: datetime | None = None) -> tuple[str, str] | None:
    """Time-left badge for a stage deadline, or None when the stage has none.

    The share of time left is measured against a one-day horizon: red when
    late or under a tenth, amber under a quarter, green otherwise.
    """
    if deadline is None:
        return None
    now = now or datetime.now()
    left = (deadline - now).total_seconds()
    label = format_duration_ms(int(abs(left) * 1000))
    if left <= 0:
        return f"-{label}", "negative"
    ratio = left / (left + 86400)
    if ratio < 0.1:
        return label, "negative"
    if ratio < 0.25:
        return label, "warning"
    return label, "positive"


def deadline_counts(cards, now: datetime | None = None) -> tuple[int, int]:
    """(at risk, late) stage deadlines among ``cards``; DONE stages are ignored."""
    now = now or datetime.now()
    at_risk = late = 0
    for card in cards:
        if card.status is StageStatus.DONE:
            continue
        badge = deadline_badge(card.deadline, now)
        if badge is None:
            continue
        label, color = badge
        if label.startswith("-"):
            late += 1
        elif color != "positive":
            at_risk += 1
    return at_risk, late


def format_size_summary(planned: dict[str, int] | None, produced: dict[str, int] | None, product_type: str = "Uniforme") -> str:
    planned = planned or {}
    produced = produced or {}
    if product_type == "Brinde":
        return f"Unitário {sum(planned.values())} / {sum(produced.values())}"
    extra = [s for s in planned if s not in SIZES]
    return " • ".join(
        f"{s} {planned.get(s, 0)}/{produced.get(s, 0)}" for s in (*SIZES, *extra) if planned.get(s, 0) > 0
    )


# ---------- Dashboard ----------
@dataclass(frozen=True)
class DashboardFigures:
    active_orders: int
    published_runs: int
    stages_in_progress: int
    overdue_runs: list[str]
    due_soon_runs: list[str]
    outsourced_open: int
    finished_last_7_days: int


def dashboard_figures(state: AppState, now: datetime | None = None, due_soon_hours: int = 24) -> DashboardFigures:
    now = now or datetime.now()
    stages = [stage for run in state.runs for _, stage in run.iter_stages()]
    published = [r for r in state.runs if r.published]
    finished = [
        o
        for o in state.orders
        if o.status in {"Concluído", "Entregue"} and o.updated_at is not None and o.updated_at >= now - timedelta(days=7)
    ]
    return DashboardFigures(
        active_orders=sum(1 for o in state.orders if not o.archived and o.status != "Entregue"),
        published_runs=len(published),
        stages_in_progress=sum(1 for s in stages if s.status is StageStatus.IN_PROGRESS),
        overdue_runs=[r.id for r in published if r.sla_deadline < now],
        due_soon_runs=[r.id for r in published if now < r.sla_deadline <= now + timedelta(hours=due_soon_hours)],
        outsourced_open=sum(1 for s in stages if s.kind is StageKind.OUTSOURCED and s.status is not StageStatus.DONE),
        finished_last_7_days=len(finished),
    )


# ---------- Order report ----------
@dataclass(frozen=True)
class StageReportRow:
    run_id: str
    product_name: str
    color_name: str
    stage_name: str
    kind: str
    status: str
    planned_total: int
    produced_total: int
    elapsed_ms: int
    checklist_done: int
    checklist_total: int
    deadline: datetime | None = None


@dataclass(frozen=True)
class OrderReport:
    order_id: str
    client_name: str
    sla_deadline: datetime
    status: str
    overdue: bool
    total_quantity: int
    item_count: int
    run_ids: list[str] = field(default_factory=list)
    rows: list[StageReportRow] = field(default_factory=list)

    @property
    def stage_count(self) -> int:
        return len(self.rows)

    @property
    def done_stage_count(self) -> int:
        return sum(1 for r in self.rows if r.status == StageStatus.DONE.value)

    @property
    def elapsed_ms_total(self) -> int:
        return sum(r.elapsed_ms for r in self.rows)

    @property
    def checklist_done(self) -> int:
        return sum(r.checklist_done for r in self.rows)

    @property
    def checklist_total(self) -> int:
        return sum(r.checklist_total for r in self.rows)


def build_order_report(
    state: AppState,
    order_id: str,
    *,
    now_ms: int | None = None,
    now: datetime | None = None,
) -> OrderReport:
    order = state.find_order(order_id)
    t = _now_ms() if now_ms is None else int(now_ms)
    runs = state.runs_for_order(order.id)
    rows = [
        StageReportRow(
            run_id=run.id,
            product_name=item.product_name,
            color_name=item.color_name,
            stage_name=stage.name,
            kind=stage.kind.value,
            status=stage.status.value,
            planned_total=stage.planned_total or item.total_quantity,
            produced_total=stage.produced_total,
            elapsed_ms=stage.timer.elapsed_ms(t),
            checklist_done=stage.checklist.done_count,
            checklist_total=len(stage.checklist),
            deadline=stage.deadline,
        )
        for run in runs
        for item, stage in run.iter_stages()
    ]
    return OrderReport(
        order_id=order.id,
        client_name=order.client_name,
        sla_deadline=order.sla_deadline,
        status=order.status,
        overdue=order.sla_deadline < (now or datetime.now()),
        total_quantity=order.total_quantity,
        item_count=len(order.items),
        run_ids=[r.id for r in runs],
        rows=rows,
    )


def report_to_excel_bytes(report: OrderReport) -> bytes:
    """Two-sheet workbook: ``Resumo`` (one row) and ``Etapas`` (one row per stage)."""
    summary = pd.DataFrame(
        [
            {
                "Pedido": report.order_id,
                "Cliente": report.client_name,
                "SLA": report.sla_deadline,
                "Status": report.status,
                "Atrasado": "Sim" if report.overdue else "Não",
                "Peças": report.total_quantity,
                "Itens": report.item_count,
                "OPs": ", ".join(report.run_ids),
                "Etapas": report.stage_count,
                "Etapas finalizadas": report.done_stage_count,
                "Tempo total": format_duration_ms(report.elapsed_ms_total),
                "Checklist": f"{report.checklist_done}/{report.checklist_total}",
            }
        ]
    )
    stages = pd.DataFrame(
        [
            {
                "OP": r.run_id,
                "Produto": r.product_name,
                "Cor": r.color_name,
                "Etapa": r.stage_name,
                "Tipo": r.kind,
                "Status": r.status,
                "Previsto": r.planned_total,
                "Produzido": r.produced_total,
                "Tempo": format_duration_ms(r.elapsed_ms),
                "Checklist": f"{r.checklist_done}/{r.checklist_total}",
                "Prazo": r.deadline,
            }
            for r in report.rows
        ],
        columns=["OP", "Produto", "Cor", "Etapa", "Tipo", "Status", "Previsto", "Produzido", "Tempo", "Checklist", "Prazo"],
    )
    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        summary.to_excel(writer, sheet_name="Resumo", index=False)
        stages.to_excel(writer, sheet_name="Etapas", index=False)
    return bio.getvalue()
