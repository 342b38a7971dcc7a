from __future__ import annotations

import io
from datetime import datetime, timedelta

import pandas as pd
import pytest

from opboard.core.errors import NotFoundError
from opboard.data.db import Db
from opboard.data.repository import Repository
from opboard.production.reports import (
    build_order_report,
    dashboard_figures,
    deadline_badge,
    deadline_counts,
    format_duration_ms,
    format_minutes,
    format_size_summary,
    report_to_excel_bytes,
    sla_badge,
)


NOW = datetime(2030, 1, 10, 9, 0)


@pytest.fixture
def svc(tmp_path):
    db = Db(tmp_path / "reports.db")
    db.ensure_schema()
    svc = Repository(db).get_production_service()
    svc.create_order(
        order_id="PED-1",
        client_name="ACME Ltda",
        sla_deadline=NOW - timedelta(hours=2),
        items=[{"product_id": "p1", "product_name": "Camiseta", "color_name": "Azul", "grade": {"P": 10, "M": 5}}],
    )
    svc.create_order(
        order_id="PED-2",
        client_name="Escola Sol",
        sla_deadline=NOW + timedelta(hours=12),
        items=[{"product_id": "p2", "product_name": "Boné", "color_name": "Preto", "grade": {"U": 30}}],
    )
    return svc


def _plan(svc, order_id: str, item_id: str, *names: str, kind: str = "Interna"):
    run = svc.create_run_from_order(order_id)
    stages = [svc.add_stage(run.id, item_id, n, kind=kind) for n in names]
    svc.publish_run(run.id)
    return run, stages


def test_format_duration():
    assert format_duration_ms(0) == "00:00:00"
    assert format_duration_ms(3_723_999) == "01:02:03"
    assert format_duration_ms(101 * 3_600_000) == "101:00:00"
    assert format_duration_ms(-5) == "00:00:00"


def test_format_minutes():
    assert format_minutes(None) == "—"
    assert format_minutes(90) == "1h 30m"


def test_sla_badge():
    assert sla_badge(NOW + timedelta(days=5), NOW) == ("D-5", "positive")
    assert sla_badge(NOW + timedelta(days=2), NOW) == ("D-2", "warning")
    assert sla_badge(NOW + timedelta(hours=3), NOW) == ("D-1", "warning")
    assert sla_badge(NOW - timedelta(days=1), NOW) == ("D+1", "negative")


def test_size_summary():
    assert format_size_summary({"M": 5, "PP": 10, "G": 0}, {"PP": 2}) == "PP 10/2 • M 5/0"
    assert format_size_summary({"U": 30}, {"U": 12}, "Brinde") == "Unitário 30 / 12"
    assert format_size_summary({}, {}) == ""


def test_dashboard_figures(svc):
    run1, (corte, _) = _plan(svc, "PED-1", "p1:Azul", "Corte", "Costura")
    _plan(svc, "PED-2", "p2:Preto", "Bordado", kind="Terceirizada")
    svc.start_stage(run1.id, "p1:Azul", corte.id, now=0)

    figures = dashboard_figures(svc.state, now=NOW)
    assert figures.active_orders == 2
    assert figures.published_runs == 2
    assert figures.stages_in_progress == 1
    assert figures.overdue_runs == [run1.id]
    assert len(figures.due_soon_runs) == 1
    assert figures.outsourced_open == 1

    assert dashboard_figures(svc.state, now=NOW, due_soon_hours=6).due_soon_runs == []


def test_order_report(svc):
    run, (corte, costura) = _plan(svc, "PED-1", "p1:Azul", "Corte", "Costura")
    svc.add_checklist_item(run.id, "p1:Azul", corte.id, "Enfestar")
    svc.start_stage(run.id, "p1:Azul", corte.id, now=0)
    svc.pause_stage(run.id, "p1:Azul", corte.id, now=65_000)
    svc.start_stage(run.id, "p1:Azul", costura.id, now=100_000)

    report = build_order_report(svc.state, "PED-1", now_ms=160_000, now=NOW)
    assert report.overdue is True
    assert report.total_quantity == 15
    assert report.run_ids == [run.id]
    assert report.stage_count == 2
    assert report.done_stage_count == 0
    assert report.elapsed_ms_total == 65_000 + 60_000
    assert (report.checklist_done, report.checklist_total) == (0, 1)
    assert [r.planned_total for r in report.rows] == [15, 15]

    with pytest.raises(NotFoundError):
        build_order_report(svc.state, "PED-404")


def test_report_excel_has_summary_and_stage_sheets(svc):
    _plan(svc, "PED-1", "p1:Azul", "Corte", "Costura", "Embalagem")
    report = build_order_report(svc.state, "PED-1", now_ms=0, now=NOW)

    sheets = pd.read_excel(io.BytesIO(report_to_excel_bytes(report)), sheet_name=None)
    assert set(sheets) == {"Resumo", "Etapas"}
    assert sheets["Resumo"].loc[0, "Pedido"] == "PED-1"
    assert sheets["Resumo"].loc[0, "Atrasado"] == "Sim"
    assert list(sheets["Etapas"]["Etapa"]) == ["Corte", "Costura", "Embalagem"]
    assert list(sheets["Etapas"]["Tempo"]) == ["00:00:00"] * 3


def test_deadline_badge():
    assert deadline_badge(None, NOW) is None
    assert deadline_badge(NOW + timedelta(hours=30), NOW) == ("30:00:00", "positive")
    assert deadline_badge(NOW + timedelta(hours=5), NOW) == ("05:00:00", "warning")
    assert deadline_badge(NOW + timedelta(minutes=40), NOW) == ("00:40:00", "negative")
    assert deadline_badge(NOW - timedelta(minutes=90), NOW) == ("-01:30:00", "negative")


def test_stage_deadlines_reach_the_board(svc):
    run, (corte, costura, embalagem) = _plan(svc, "PED-1", "p1:Azul", "Corte", "Costura", "Embalagem")
    svc.update_stage(run.id, "p1:Azul", corte.id, deadline=NOW - timedelta(hours=1))
    svc.update_stage(run.id, "p1:Azul", costura.id, deadline=NOW + timedelta(hours=2))
    svc.update_stage(run.id, "p1:Azul", embalagem.id, deadline=NOW + timedelta(days=3))

    cards = svc.board_cards()
    assert [c.deadline for c in cards] == [corte.deadline, costura.deadline, embalagem.deadline]
    assert deadline_counts(cards, NOW) == (1, 1)

    svc.update_stage(run.id, "p1:Azul", corte.id, deadline="")
    assert deadline_counts(svc.board_cards(), NOW) == (1, 0)


def test_return_eta_is_carried_on_outsourced_cards(svc):
    run, (bordado,) = _plan(svc, "PED-2", "p2:Preto", "Bordado", kind="Terceirizada")
    svc.update_stage(run.id, "p2:Preto", bordado.id, return_eta="2030-01-12 14:00", outsourced_partner="Bordados Sul")
    card = svc.board_cards()[0]
    assert card.return_eta == datetime(2030, 1, 12, 14, 0)
