from __future__ import annotations

from datetime import datetime

import pytest

from opboard.core.errors import ValidationError
from opboard.core.models import StageStatus
from opboard.data.db import Db
from opboard.data.repository import Repository
from opboard.production.kanban import Lane


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def test_order_to_done_through_the_board(tmp_path):
    db = Db(tmp_path / "e2e.db")
    db.ensure_schema()
    repo = Repository(db)
    svc = repo.get_production_service()
    clock = FakeClock()
    svc.clock = clock

    svc.create_order(
        order_id="PED-53",
        client_name="Clube Atlético",
        sla_deadline=datetime(2031, 6, 1, 18, 0),
        items=[
            {
                "product_id": "camisa",
                "product_name": "Camisa Jogo",
                "color_name": "Vermelha",
                "grade": {"P": 10, "M": 20, "G": 23},
            }
        ],
    )
    run = svc.create_run_from_order("PED-53")
    item_id = run.items[0].id
    svc.add_stage(run.id, item_id, "Cutting")
    svc.publish_run(run.id)

    cards = svc.board_cards()
    assert len(cards) == 1
    card = cards[0]
    assert card.status is StageStatus.TODO
    assert card.planned_total == 53

    svc.start_stage(card.run_id, card.item_id, card.stage_id)
    clock.advance(42_000)
    stage = svc.pause_stage(card.run_id, card.item_id, card.stage_id)
    assert stage.timer.elapsed_ms() > 0
    assert stage.status is StageStatus.IN_PROGRESS

    svc.resume_stage(card.run_id, card.item_id, card.stage_id)
    clock.advance(8_000)

    entries = [
        svc.add_checklist_item(card.run_id, card.item_id, card.stage_id, text)
        for text in ("Enfestar tecido", "Conferir molde")
    ]
    card = svc.board_cards()[0]
    with pytest.raises(ValidationError):
        svc.move_card(card, Lane(card.run_id, card.item_id, StageStatus.DONE))

    for entry in entries:
        svc.toggle_checklist_item(card.run_id, card.item_id, card.stage_id, entry.id)

    card = svc.board_cards()[0]
    assert card.timer_running is True
    stage = svc.move_card(card, Lane(card.run_id, card.item_id, StageStatus.DONE))
    assert stage.status is StageStatus.DONE
    assert stage.timer.running is False
    assert stage.timer.accumulated_ms == 50_000

    done = svc.board_cards()[0]
    assert done.status is StageStatus.DONE
    assert done.checklist_done == done.checklist_total == 2
    assert repo.data.get_recent_audit_entries(limit=1)[0].details == "Em Execução -> Finalizado"
