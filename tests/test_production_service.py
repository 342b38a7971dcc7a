from __future__ import annotations

from datetime import datetime, timezone

import pytest

from opboard.core.errors import InvalidStateError, NotFoundError, ValidationError
from opboard.core.models import StageKind, StageStatus
from opboard.data.db import Db
from opboard.data.repository import Repository
from opboard.production.reports import build_order_report, dashboard_figures, report_to_excel_bytes
from opboard.production.service import ProductionService


SLA = datetime(2030, 1, 1, 12, 0)


@pytest.fixture
def repo(tmp_path):
    db = Db(tmp_path / "test.db")
    db.ensure_schema()
    return Repository(db)


@pytest.fixture
def svc(repo):
    return repo.get_production_service()


def _order(svc: ProductionService, order_id: str = "PED-1", **overrides):
    fields = dict(
        client_name="ACME Ltda",
        sla_deadline=SLA,
        order_id=order_id,
        items=[
            {"product_id": "p1", "product_name": "Camiseta", "color_name": "Azul", "grade": {"P": 10, "M": 5}},
            {"product_id": "p1", "product_name": "Camiseta", "color_name": "Branca", "grade": {"G": 3}},
        ],
    )
    fields.update(overrides)
    return svc.create_order(**fields)


def _stored(repo: Repository) -> str:
    with repo.db.connect() as con:
        row = con.execute("SELECT state_json FROM app_state WHERE state_key = 'state'").fetchone()
    return row["state_json"] if row else ""


def test_run_is_built_from_order_lines(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    assert run.published is False
    assert run.client_name == "ACME Ltda"
    assert run.sla_deadline == SLA
    assert [i.id for i in run.items] == ["p1:Azul", "p1:Branca"]
    assert run.items[0].planned_quantity_by_size == {"P": 10, "M": 5}
    assert not run.has_stages


def test_second_run_for_same_order_is_allowed(svc):
    _order(svc)
    a = svc.create_run_from_order("PED-1")
    b = svc.create_run_from_order("PED-1")
    assert a.id != b.id
    assert len(svc.state.runs_for_order("PED-1")) == 2


def test_publish_requires_a_stage(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    with pytest.raises(ValidationError, match="etapa"):
        svc.publish_run(run.id)
    assert run.published is False

    svc.add_stage(run.id, "p1:Branca", "Corte")
    svc.publish_run(run.id)
    svc.publish_run(run.id)
    assert run.published is True


def test_add_stage_copies_item_grade_and_rejects_blank_name(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    with pytest.raises(ValidationError):
        svc.add_stage(run.id, "p1:Azul", "   ")
    stage = svc.add_stage(run.id, "p1:Azul", "Estamparia", kind="Terceirizada", planned_duration_min=90)
    assert stage.kind is StageKind.OUTSOURCED
    assert stage.planned_quantity_by_size == {"P": 10, "M": 5}
    assert stage.planned_duration_min == 90
    with pytest.raises(NotFoundError):
        svc.add_stage(run.id, "p9:Verde", "Corte")


def test_template_stage_must_be_known(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    assert svc.add_template_stage(run.id, "p1:Azul", "Costura").name == "Costura"
    with pytest.raises(ValidationError):
        svc.add_template_stage(run.id, "p1:Azul", "Pintura")


def test_mutations_are_written_through(repo, svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    stage = svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.add_checklist_item(run.id, "p1:Azul", stage.id, "Conferir molde")
    svc.start_stage(run.id, "p1:Azul", stage.id, now=1_000)

    fresh = ProductionService(repo.data)
    reloaded = fresh.state.find_run(run.id).find_stage("p1:Azul", stage.id)
    assert reloaded.status is StageStatus.IN_PROGRESS
    assert reloaded.timer.running is True
    assert reloaded.timer.started_at == 1_000
    assert [i.text for i in reloaded.checklist] == ["Conferir molde"]


def test_failed_command_leaves_storage_untouched(repo, svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    stage = svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.add_checklist_item(run.id, "p1:Azul", stage.id, "Conferir molde")
    before = _stored(repo)

    with pytest.raises(ValidationError):
        svc.complete_stage(run.id, "p1:Azul", stage.id)
    with pytest.raises(InvalidStateError):
        svc.pause_stage(run.id, "p1:Azul", stage.id)
    assert _stored(repo) == before


def test_update_stage_kind_change_is_all_or_nothing(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    stage = svc.add_stage(run.id, "p1:Azul", "Bordado", kind=StageKind.OUTSOURCED)
    svc.publish_run(run.id)
    card = svc.board_cards()[0]
    svc.move_card(card, f"{run.id}::p1:Azul::lane::AT_THIRD_PARTY")

    with pytest.raises(InvalidStateError):
        svc.update_stage(run.id, "p1:Azul", stage.id, name="Bordado peito", kind=StageKind.INTERNAL)
    assert stage.name == "Bordado"
    assert stage.kind is StageKind.OUTSOURCED

    updated = svc.update_stage(run.id, "p1:Azul", stage.id, tracking_code="BR123", return_eta="2029-12-20T10:00")
    assert updated.tracking_code == "BR123"
    assert updated.return_eta == datetime(2029, 12, 20, 10, 0)
    with pytest.raises(ValidationError):
        svc.update_stage(run.id, "p1:Azul", stage.id, status="Finalizado")


def test_reorder_and_remove_stages(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    names = ["Corte", "Costura", "Embalagem"]
    ids = [svc.add_stage(run.id, "p1:Azul", n).id for n in names]
    order = svc.reorder_stages(run.id, "p1:Azul", 2, 0)
    assert [s.name for s in order] == ["Embalagem", "Corte", "Costura"]
    with pytest.raises(ValidationError):
        svc.reorder_stages(run.id, "p1:Azul", 0, 3)
    svc.remove_stage(run.id, "p1:Azul", ids[0])
    assert [s.name for s in run.find_item("p1:Azul").stages] == ["Embalagem", "Costura"]


def test_record_production_rejects_negative(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    stage = svc.add_stage(run.id, "p1:Azul", "Costura")
    svc.record_production(run.id, "p1:Azul", stage.id, size="P", qty=7)
    assert stage.produced_total == 7
    with pytest.raises(ValidationError):
        svc.record_production(run.id, "p1:Azul", stage.id, size="M", qty=-1)
    with pytest.raises(ValidationError, match="inválido"):
        svc.record_production(run.id, "p1:Azul", stage.id, size="M", qty="sete")
    assert stage.produced_quantity_by_size == {"P": 7}


def test_unpublish_and_archive_hide_cards(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.publish_run(run.id)
    assert len(svc.board_cards()) == 1

    svc.archive_order("PED-1")
    assert svc.board_cards() == []
    assert [o.id for o in svc.archived_orders()] == ["PED-1"]
    assert svc.state.find_order("PED-1").archived_at is not None

    svc.restore_order("PED-1")
    assert len(svc.board_cards()) == 1
    assert svc.state.find_order("PED-1").archived_at is None
    assert svc.archived_orders() == []

    svc.unpublish_run(run.id)
    assert svc.board_cards() == []


def test_delete_order_needs_cascade_when_runs_exist(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    with pytest.raises(ValidationError, match="possui OPs"):
        svc.delete_order("PED-1")
    svc.delete_order("PED-1", cascade=True)
    assert svc.state.get_order("PED-1") is None
    with pytest.raises(NotFoundError):
        svc.state.find_run(run.id)


def test_delete_run_removes_its_stages(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.delete_run(run.id)
    assert svc.state.runs == []
    svc.delete_order("PED-1")


def test_order_validation(svc):
    _order(svc)
    with pytest.raises(ValidationError, match="já existe"):
        _order(svc)
    with pytest.raises(ValidationError):
        _order(svc, order_id="PED-2", client_name=" ")
    with pytest.raises(ValidationError):
        _order(svc, order_id="PED-3", status="Cancelado")
    with pytest.raises(ValidationError, match="negativa"):
        _order(
            svc,
            order_id="PED-4",
            items=[{"product_id": "p1", "product_name": "Camiseta", "color_name": "Azul", "grade": {"P": -2}}],
        )
    updated = svc.update_order("PED-1", status="Em Produção", sla_deadline="2030-02-01T08:00")
    assert updated.status == "Em Produção"
    assert updated.sla_deadline == datetime(2030, 2, 1, 8, 0)
    with pytest.raises(ValidationError):
        svc.update_order("PED-1", archived=True)


def test_clients_and_products_are_protected_while_referenced(svc):
    client = svc.create_client(name="ACME Ltda", contact_name="Joana")
    other = svc.create_client(name="Escola Sol")
    product = svc.create_product(name="Camiseta", ref="CAM-01", sizes=["P", "M"], colors=["Azul"])
    _order(svc, items=[{"product_id": product.id, "product_name": "Camiseta", "color_name": "Azul", "grade": {"P": 1}}])

    assert "Joana" in svc.state.contacts
    with pytest.raises(ValidationError, match="pedidos"):
        svc.delete_client(client.id)
    with pytest.raises(ValidationError, match="pedidos"):
        svc.delete_product(product.id)

    svc.delete_client(other.id)
    assert [c.name for c in svc.state.clients] == ["ACME Ltda"]
    with pytest.raises(ValidationError):
        svc.create_product(name="Caneca", ref="CAN-01", type="Outro")


def test_commands_are_audited(repo, svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.publish_run(run.id)
    messages = [e.message for e in repo.data.get_recent_audit_entries(limit=10)]
    assert messages[0] == f"Published {run.id}"
    assert any(m.startswith("Created order PED-1") for m in messages)


def test_move_to_same_lane_is_a_noop(repo, svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.publish_run(run.id)
    card = svc.board_cards()[0]
    count = len(repo.data.get_recent_audit_entries())
    stage = svc.move_card(card, card.lane)
    assert stage.status is StageStatus.TODO
    assert len(repo.data.get_recent_audit_entries()) == count


def test_non_numeric_duration_is_a_validation_error(svc):
    _order(svc)
    run = svc.create_run_from_order("PED-1")
    with pytest.raises(ValidationError, match="Duração prevista"):
        svc.add_stage(run.id, "p1:Azul", "Corte", planned_duration_min="1h")
    stage = svc.add_stage(run.id, "p1:Azul", "Corte", planned_duration_min="45")
    assert stage.planned_duration_min == 45
    with pytest.raises(ValidationError, match="Duração prevista"):
        svc.update_stage(run.id, "p1:Azul", stage.id, planned_duration_min="abc")
    with pytest.raises(ValidationError, match="negativa"):
        svc.update_stage(run.id, "p1:Azul", stage.id, planned_duration_min=-5)
    assert stage.planned_duration_min == 45


def test_offset_dates_are_stored_as_local_time(svc):
    order = _order(svc, sla_deadline="2030-01-01T12:00:00+00:00")
    expected = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert order.sla_deadline == expected
    assert order.sla_deadline.tzinfo is None

    run = svc.create_run_from_order("PED-1")
    stage = svc.add_stage(run.id, "p1:Azul", "Corte")
    svc.update_stage(run.id, "p1:Azul", stage.id, deadline="2030-01-01T09:00:00-03:00")
    assert stage.deadline == expected
    svc.publish_run(run.id)

    assert len(svc.board_cards(overdue_only=True, now=datetime(2031, 1, 1))) == 1
    assert dashboard_figures(svc.state, now=datetime(2031, 1, 1)).overdue_runs == [run.id]
    report = build_order_report(svc.state, "PED-1", now_ms=0, now=datetime(2031, 1, 1))
    assert report_to_excel_bytes(report)
