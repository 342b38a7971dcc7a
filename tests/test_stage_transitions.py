from __future__ import annotations

import pytest

from opboard.core import stages
from opboard.core.errors import InvalidStateError, ValidationError
from opboard.core.models import Stage, StageKind, StageStatus


def _stage(kind: StageKind = StageKind.INTERNAL) -> Stage:
    return Stage(id="s1", name="Corte", kind=kind)


def test_internal_stage_moves_freely_between_its_statuses():
    s = _stage()
    assert stages.transition(s, StageStatus.IN_PROGRESS) is True
    assert stages.transition(s, StageStatus.DONE) is True
    # Board allows moving back out of DONE.
    assert stages.transition(s, StageStatus.TODO) is True
    assert s.status is StageStatus.TODO
    assert s.updated_at is not None


def test_same_status_is_a_noop():
    s = _stage()
    assert stages.transition(s, StageStatus.TODO) is False
    assert s.updated_at is None


def test_status_of_other_kind_is_rejected():
    s = _stage()
    with pytest.raises(InvalidStateError):
        stages.transition(s, StageStatus.AT_THIRD_PARTY)
    assert s.status is StageStatus.TODO


def test_status_accepts_display_values():
    s = _stage(StageKind.OUTSOURCED)
    stages.transition(s, "Terceirizado-Ida")
    assert s.status is StageStatus.OUTBOUND_TRANSIT


def test_done_requires_complete_checklist_and_leaves_state_unchanged():
    s = _stage()
    stages.start(s, now=0)
    s.checklist.add_item("Conferir medidas")
    with pytest.raises(ValidationError, match="checklist"):
        stages.transition(s, StageStatus.DONE, now=1_000)
    assert s.status is StageStatus.IN_PROGRESS
    assert s.timer.running is True


def test_done_pauses_running_timer():
    s = _stage()
    stages.start(s, now=1_000)
    stages.transition(s, StageStatus.DONE, now=6_000)
    assert s.status is StageStatus.DONE
    assert s.timer.running is False
    assert s.timer.accumulated_ms == 5_000


def test_start_moves_todo_into_working_status_of_kind():
    internal = _stage()
    stages.start(internal, now=0)
    assert internal.status is StageStatus.IN_PROGRESS

    outsourced = _stage(StageKind.OUTSOURCED)
    stages.start(outsourced, now=0)
    assert outsourced.status is StageStatus.OUTBOUND_TRANSIT


def test_resume_keeps_status():
    s = _stage()
    stages.start(s, now=0)
    stages.pause(s, now=100)
    stages.resume(s, now=200)
    assert s.status is StageStatus.IN_PROGRESS
    assert s.timer.running


def test_start_or_complete_done_stage_raises():
    s = _stage()
    stages.complete(s, now=0)
    with pytest.raises(InvalidStateError):
        stages.start(s, now=1)
    with pytest.raises(InvalidStateError):
        stages.resume(s, now=1)
    with pytest.raises(InvalidStateError):
        stages.complete(s, now=1)


def test_change_kind_checks_current_status():
    s = _stage()
    stages.change_kind(s, StageKind.OUTSOURCED)
    assert s.kind is StageKind.OUTSOURCED

    stages.transition(s, StageStatus.AT_THIRD_PARTY)
    with pytest.raises(InvalidStateError, match="mova a etapa"):
        stages.change_kind(s, StageKind.INTERNAL)
    assert s.kind is StageKind.OUTSOURCED


def test_parse_kind_rejects_unknown():
    with pytest.raises(ValidationError):
        stages.parse_kind("Externa")
    assert stages.parse_kind("Interna") is StageKind.INTERNAL


def test_allowed_statuses_are_closed_per_kind():
    assert stages.allowed_statuses(StageKind.INTERNAL) == (
        StageStatus.TODO,
        StageStatus.IN_PROGRESS,
        StageStatus.DONE,
    )
    assert stages.allowed_statuses(StageKind.OUTSOURCED)[-1] is StageStatus.DONE
    assert len(stages.allowed_statuses(StageKind.OUTSOURCED)) == 5
