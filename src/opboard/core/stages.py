"""Stage state machine.

Each stage kind has a closed set of statuses. The board may move a stage to
any status of its own kind; the only guarded transition is into ``DONE``,
which needs a complete checklist and pauses a running timer first.
"""

from __future__ import annotations

from datetime import datetime

from opboard.core.errors import InvalidStateError, ValidationError
from opboard.core.models import Stage, StageKind, StageStatus


STATUSES_BY_KIND: dict[StageKind, tuple[StageStatus, ...]] = {
    StageKind.INTERNAL: (
        StageStatus.TODO,
        StageStatus.IN_PROGRESS,
        StageStatus.DONE,
    ),
    StageKind.OUTSOURCED: (
        StageStatus.TODO,
        StageStatus.OUTBOUND_TRANSIT,
        StageStatus.AT_THIRD_PARTY,
        StageStatus.RETURN_TRANSIT,
        StageStatus.DONE,
    ),
}

# Quick-add list shown in the run planner.
STAGE_TEMPLATES: tuple[str, ...] = (
    "Compras",
    "Corte",
    "Costura",
    "Estamparia",
    "Bordado",
    "Acabamento",
    "Qualidade",
    "Embalagem",
    "Expedição",
)


def parse_kind(kind: StageKind | str) -> StageKind:
    try:
        return StageKind(kind)
    except ValueError:
        raise ValidationError(f"Tipo de etapa desconhecido: {kind!r}") from None


def allowed_statuses(kind: StageKind | str) -> tuple[StageStatus, ...]:
    return STATUSES_BY_KIND[parse_kind(kind)]


def working_status(kind: StageKind | str) -> StageStatus:
    """Status a TODO stage enters when its timer is first started."""
    return allowed_statuses(kind)[1]


def check_status(kind: StageKind | str, status: StageStatus | str) -> StageStatus:
    try:
        target = StageStatus(status)
    except ValueError:
        raise InvalidStateError(f"Status desconhecido: {status!r}") from None
    if target not in allowed_statuses(kind):
        raise InvalidStateError(f"Status '{target.value}' inválido para etapa {parse_kind(kind).value}")
    return target


def _touch(stage: Stage, at: datetime | None) -> None:
    stage.updated_at = at or datetime.now()


def transition(
    stage: Stage,
    target: StageStatus | str,
    *,
    now: int | None = None,
    at: datetime | None = None,
) -> bool:
    """Move ``stage`` to ``target``. Returns False when it already had that status."""
    status = check_status(stage.kind, target)
    if stage.status == status:
        return False
    if status is StageStatus.DONE:
        if not stage.checklist.is_complete:
            raise ValidationError("Finalize o checklist antes de concluir")
        if stage.timer.running:
            stage.timer.pause(now)
    stage.status = status
    _touch(stage, at)
    return True


def start(stage: Stage, *, now: int | None = None, at: datetime | None = None) -> None:
    if stage.status is StageStatus.DONE:
        raise InvalidStateError("Etapa já finalizada")
    stage.timer.start(now)
    if stage.status is StageStatus.TODO:
        stage.status = working_status(stage.kind)
    _touch(stage, at)


def resume(stage: Stage, *, now: int | None = None, at: datetime | None = None) -> None:
    if stage.status is StageStatus.DONE:
        raise InvalidStateError("Etapa já finalizada")
    stage.timer.start(now)
    _touch(stage, at)


def pause(stage: Stage, *, now: int | None = None, at: datetime | None = None) -> None:
    stage.timer.pause(now)
    _touch(stage, at)


def complete(stage: Stage, *, now: int | None = None, at: datetime | None = None) -> None:
    if stage.status is StageStatus.DONE:
        raise InvalidStateError("Etapa já finalizada")
    transition(stage, StageStatus.DONE, now=now, at=at)


def reset_timer(stage: Stage, *, at: datetime | None = None) -> None:
    stage.timer.reset()
    _touch(stage, at)


def change_kind(stage: Stage, kind: StageKind | str, *, at: datetime | None = None) -> None:
    new_kind = parse_kind(kind)
    if stage.status not in allowed_statuses(new_kind):
        raise InvalidStateError(
            f"Status '{stage.status.value}' não existe para etapa {new_kind.value}; mova a etapa antes"
        )
    stage.kind = new_kind
    _touch(stage, at)
