"""Production command layer.

``ProductionService`` owns the in-memory :class:`AppState` and is the only
writer. Each public command validates first, mutates, then writes the whole
snapshot through to storage and records an audit entry. A command that raises
leaves both the state and the stored snapshot unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from opboard.core import stages as stage_flow
from opboard.core.errors import NotFoundError, ValidationError
from opboard.core.models import (
    ORDER_STATUSES,
    PRODUCT_TYPES,
    AppState,
    ChecklistItem,
    Client,
    Order,
    OrderItem,
    OrderLine,
    Product,
    ProductionRun,
    Stage,
    StageKind,
    local_naive,
    new_id,
    now_ms,
)
from opboard.data.data_repository import DataRepositoryImpl
from opboard.production.kanban import Card, Lane, build_cards, filter_cards, move_card


logger = logging.getLogger(__name__)


def _parse_dt(value, *, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return local_naive(value)
    try:
        return local_naive(datetime.fromisoformat(str(value).strip()))
    except ValueError:
        raise ValidationError(f"{field}: data inválida {value!r}") from None


def _require_text(value, *, field: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValidationError(f"{field} obrigatório")
    return s


def _whole_number(value, *, field: str) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field}: número inválido {value!r}") from None
    if n < 0:
        raise ValidationError(f"{field} negativa")
    return n


def _quantities(value, *, field: str) -> dict[str, int]:
    out: dict[str, int] = {}
    for size, qty in (value or {}).items():
        try:
            n = int(qty or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"{field}: quantidade inválida para {size}: {qty!r}") from None
        if n < 0:
            raise ValidationError(f"{field}: quantidade negativa para {size}")
        out[str(size)] = n
    return out


class ProductionService:
    def __init__(
        self,
        data_repo: DataRepositoryImpl,
        state: AppState | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.data_repo = data_repo
        self.state = state if state is not None else data_repo.load_state()
        self.clock = clock

    # ---------- plumbing ----------
    def _now(self, now: int | None) -> int:
        return self.clock() if now is None else int(now)

    def _commit(self, category: str, message: str, details: str | None = None) -> None:
        self.data_repo.save_state(self.state)
        self.data_repo.log_audit(category, message, details)
        logger.info("%s: %s", category, message)

    def reload(self) -> AppState:
        self.state = self.data_repo.load_state()
        return self.state

    def _stage(self, run_id: str, item_id: str, stage_id: str) -> tuple[ProductionRun, Stage]:
        run = self.state.find_run(run_id)
        return run, run.find_stage(item_id, stage_id)

    @staticmethod
    def _touch(run: ProductionRun) -> None:
        run.updated_at = datetime.now()

    # ---------- Clients ----------
    def add_contact(self, name: str | None) -> None:
        name = str(name or "").strip()
        if name and name not in self.state.contacts:
            self.state.contacts.append(name)

    def create_client(self, *, name: str, contact_name: str = "", **fields) -> Client:
        now = datetime.now()
        client = Client(
            id=new_id(),
            name=_require_text(name, field="Nome do cliente"),
            contact_name=str(contact_name or "").strip(),
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.state.clients.append(client)
        self.add_contact(client.contact_name)
        self._commit("CLIENT", f"Created client {client.name}")
        return client

    def update_client(self, client_id: str, **patch) -> Client:
        client = self.state.find_client(client_id)
        if "name" in patch:
            patch["name"] = _require_text(patch["name"], field="Nome do cliente")
        for key in patch:
            if key in {"id", "created_at", "updated_at"} or not hasattr(client, key):
                raise ValidationError(f"Campo não suportado: {key}")
        for key, value in patch.items():
            setattr(client, key, value)
        client.updated_at = datetime.now()
        self.add_contact(client.contact_name)
        self._commit("CLIENT", f"Updated client {client.name}", ", ".join(sorted(patch)))
        return client

    def delete_client(self, client_id: str) -> None:
        client = self.state.find_client(client_id)
        in_use = [o.id for o in self.state.orders if o.client_name == client.name]
        if in_use:
            raise ValidationError(f"Cliente possui pedidos: {', '.join(in_use)}")
        self.state.clients.remove(client)
        self._commit("CLIENT", f"Deleted client {client.name}")

    # ---------- Products ----------
    def create_product(
        self,
        *,
        name: str,
        ref: str,
        type: str = "Uniforme",
        sizes: list[str] | None = None,
        colors: list[str] | None = None,
        description: str | None = None,
        active: bool = True,
    ) -> Product:
        if type not in PRODUCT_TYPES:
            raise ValidationError(f"Tipo de produto inválido: {type!r}")
        now = datetime.now()
        product = Product(
            id=new_id(),
            name=_require_text(name, field="Nome do produto"),
            ref=_require_text(ref, field="Referência"),
            type=type,
            active=bool(active),
            description=description,
            sizes=list(sizes or []),
            colors=list(colors or []),
            created_at=now,
            updated_at=now,
        )
        self.state.products.append(product)
        self._commit("PRODUCT", f"Created product {product.ref}")
        return product

    def update_product(self, product_id: str, **patch) -> Product:
        product = self.state.find_product(product_id)
        if "type" in patch and patch["type"] not in PRODUCT_TYPES:
            raise ValidationError(f"Tipo de produto inválido: {patch['type']!r}")
        for key in ("name", "ref"):
            if key in patch:
                patch[key] = _require_text(patch[key], field=key)
        for key in patch:
            if key in {"id", "created_at", "updated_at"} or not hasattr(product, key):
                raise ValidationError(f"Campo não suportado: {key}")
        for key, value in patch.items():
            setattr(product, key, value)
        product.updated_at = datetime.now()
        self._commit("PRODUCT", f"Updated product {product.ref}", ", ".join(sorted(patch)))
        return product

    def delete_product(self, product_id: str) -> None:
        product = self.state.find_product(product_id)
        in_use = sorted({o.id for o in self.state.orders for line in o.items if line.product_id == product.id})
        if in_use:
            raise ValidationError(f"Produto usado nos pedidos: {', '.join(in_use)}")
        self.state.products.remove(product)
        self._commit("PRODUCT", f"Deleted product {product.ref}")

    # ---------- Orders ----------
    @staticmethod
    def _order_lines(items) -> list[OrderLine]:
        lines: list[OrderLine] = []
        for raw in items or []:
            if isinstance(raw, OrderLine):
                raw = {
                    "product_id": raw.product_id,
                    "product_name": raw.product_name,
                    "color_name": raw.color_name,
                    "product_ref": raw.product_ref,
                    "grade": raw.grade,
                    "notes": raw.notes,
                }
            lines.append(
                OrderLine(
                    product_id=str(raw.get("product_id") or ""),
                    product_name=_require_text(raw.get("product_name"), field="Produto"),
                    color_name=str(raw.get("color_name") or "").strip(),
                    product_ref=str(raw.get("product_ref") or ""),
                    grade=_quantities(raw.get("grade"), field="Grade"),
                    notes=raw.get("notes"),
                )
            )
        return lines

    def create_order(
        self,
        *,
        client_name: str,
        sla_deadline: datetime | str,
        items=None,
        order_id: str | None = None,
        status: str = "Pré-produção",
        notes: str | None = None,
    ) -> Order:
        oid = str(order_id or f"PED-{new_id()}").strip()
        if self.state.get_order(oid) is not None:
            raise ValidationError(f"Pedido já existe: {oid}")
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Status de pedido inválido: {status!r}")
        sla = _parse_dt(sla_deadline, field="SLA")
        if sla is None:
            raise ValidationError("SLA obrigatório")
        now = datetime.now()
        order = Order(
            id=oid,
            client_name=_require_text(client_name, field="Cliente"),
            sla_deadline=sla,
            status=status,
            items=self._order_lines(items),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.state.orders.append(order)
        self._commit("ORDER", f"Created order {order.id}", f"{len(order.items)} itens, {order.total_quantity} pçs")
        return order

    def update_order(self, order_id: str, **patch) -> Order:
        order = self.state.find_order(order_id)
        allowed = {"client_name", "sla_deadline", "status", "items", "notes"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValidationError(f"Campos não suportados: {', '.join(sorted(unknown))}")

        changes: dict = {}
        if "client_name" in patch:
            changes["client_name"] = _require_text(patch["client_name"], field="Cliente")
        if "sla_deadline" in patch:
            sla = _parse_dt(patch["sla_deadline"], field="SLA")
            if sla is None:
                raise ValidationError("SLA obrigatório")
            changes["sla_deadline"] = sla
        if "status" in patch:
            if patch["status"] not in ORDER_STATUSES:
                raise ValidationError(f"Status de pedido inválido: {patch['status']!r}")
            changes["status"] = patch["status"]
        if "items" in patch:
            changes["items"] = self._order_lines(patch["items"])
        if "notes" in patch:
            changes["notes"] = patch["notes"]

        for key, value in changes.items():
            setattr(order, key, value)
        order.updated_at = datetime.now()
        self._commit("ORDER", f"Updated order {order.id}", ", ".join(sorted(changes)))
        return order

    def delete_order(self, order_id: str, *, cascade: bool = False) -> None:
        order = self.state.find_order(order_id)
        runs = self.state.runs_for_order(order.id)
        if runs and not cascade:
            raise ValidationError(f"Pedido {order.id} possui OPs: {', '.join(r.id for r in runs)}")
        self.state.runs = [r for r in self.state.runs if r.order_id != order.id]
        self.state.orders.remove(order)
        self._commit("ORDER", f"Deleted order {order.id}", f"{len(runs)} OPs removidas" if runs else None)

    def archive_order(self, order_id: str) -> Order:
        order = self.state.find_order(order_id)
        order.archived = True
        order.archived_at = datetime.now()
        self._commit("ORDER", f"Archived order {order.id}")
        return order

    def restore_order(self, order_id: str) -> Order:
        order = self.state.find_order(order_id)
        order.archived = False
        order.archived_at = None
        self._commit("ORDER", f"Restored order {order.id}")
        return order

    def archived_orders(self) -> list[Order]:
        return [o for o in self.state.orders if o.archived]

    def active_orders(self) -> list[Order]:
        return [o for o in self.state.orders if not o.archived]

    # ---------- Production runs ----------
    def create_run_from_order(self, order_id: str) -> ProductionRun:
        order = self.state.find_order(order_id)
        items: list[OrderItem] = []
        seen: dict[str, int] = {}
        for line in order.items:
            key = line.line_key
            seen[key] = seen.get(key, 0) + 1
            if seen[key] > 1:
                key = f"{key}#{seen[key]}"
            items.append(
                OrderItem(
                    id=key,
                    order_item_id=key,
                    product_name=line.product_name,
                    color_name=line.color_name,
                    product_ref=line.product_ref,
                    planned_quantity_by_size=dict(line.grade),
                )
            )
        now = datetime.now()
        run = ProductionRun(
            id=f"OP-{new_id()}",
            order_id=order.id,
            client_name=order.client_name,
            sla_deadline=order.sla_deadline,
            published=False,
            items=items,
            created_at=now,
            updated_at=now,
        )
        self.state.runs.append(run)
        self._commit("RUN", f"Created {run.id} from order {order.id}", f"{len(items)} itens")
        return run

    def delete_run(self, run_id: str) -> None:
        run = self.state.find_run(run_id)
        self.state.runs.remove(run)
        stage_count = sum(1 for _ in run.iter_stages())
        self._commit("RUN", f"Deleted {run.id}", f"{len(run.items)} itens, {stage_count} etapas")

    def publish_run(self, run_id: str) -> ProductionRun:
        run = self.state.find_run(run_id)
        if not run.has_stages:
            raise ValidationError("Adicione pelo menos uma etapa antes de publicar")
        run.published = True
        self._touch(run)
        self._commit("RUN", f"Published {run.id}")
        return run

    def unpublish_run(self, run_id: str) -> ProductionRun:
        run = self.state.find_run(run_id)
        run.published = False
        self._touch(run)
        self._commit("RUN", f"Unpublished {run.id}")
        return run

    # ---------- Stages ----------
    def add_stage(
        self,
        run_id: str,
        item_id: str,
        name: str,
        *,
        kind: StageKind | str = StageKind.INTERNAL,
        planned_duration_min: int | None = None,
    ) -> Stage:
        run = self.state.find_run(run_id)
        item = run.find_item(item_id)
        duration = _whole_number(planned_duration_min, field="Duração prevista") if planned_duration_min is not None else None
        stage = Stage(
            id=new_id(),
            name=_require_text(name, field="Nome da etapa"),
            kind=stage_flow.parse_kind(kind),
            planned_duration_min=duration,
            planned_quantity_by_size=dict(item.planned_quantity_by_size),
            updated_at=datetime.now(),
        )
        item.stages.append(stage)
        self._touch(run)
        self._commit("STAGE", f"Added stage '{stage.name}' to {run.id}/{item.id}")
        return stage

    def add_template_stage(self, run_id: str, item_id: str, name: str) -> Stage:
        if name not in stage_flow.STAGE_TEMPLATES:
            raise ValidationError(f"Etapa fora do modelo: {name!r}")
        return self.add_stage(run_id, item_id, name)

    def remove_stage(self, run_id: str, item_id: str, stage_id: str) -> None:
        run = self.state.find_run(run_id)
        item = run.find_item(item_id)
        stage = item.find_stage(stage_id)
        item.stages.remove(stage)
        self._touch(run)
        self._commit("STAGE", f"Removed stage '{stage.name}' from {run.id}/{item.id}")

    def reorder_stages(self, run_id: str, item_id: str, from_index: int, to_index: int) -> list[Stage]:
        run = self.state.find_run(run_id)
        item = run.find_item(item_id)
        n = len(item.stages)
        if not (0 <= from_index < n and 0 <= to_index < n):
            raise ValidationError(f"Posição inválida ({from_index} -> {to_index}) para {n} etapas")
        stage = item.stages.pop(from_index)
        item.stages.insert(to_index, stage)
        self._touch(run)
        self._commit("STAGE", f"Reordered stages of {run.id}/{item.id}", f"{from_index} -> {to_index}")
        return list(item.stages)

    _STAGE_FIELDS = frozenset(
        {"name", "kind", "planned_duration_min", "deadline", "outsourced_partner", "tracking_code", "return_eta", "assignee"}
    )

    def update_stage(self, run_id: str, item_id: str, stage_id: str, **patch) -> Stage:
        """Edit stage configuration. Status changes go through the board or timer commands."""
        run, stage = self._stage(run_id, item_id, stage_id)
        unknown = set(patch) - self._STAGE_FIELDS
        if unknown:
            raise ValidationError(f"Campos não suportados: {', '.join(sorted(unknown))}")

        changes: dict = {}
        if "name" in patch:
            changes["name"] = _require_text(patch["name"], field="Nome da etapa")
        if "planned_duration_min" in patch:
            value = patch["planned_duration_min"]
            changes["planned_duration_min"] = _whole_number(value, field="Duração prevista") if value is not None else None
        for key in ("deadline", "return_eta"):
            if key in patch:
                changes[key] = _parse_dt(patch[key], field=key)
        for key in ("outsourced_partner", "tracking_code", "assignee"):
            if key in patch:
                changes[key] = (str(patch[key]).strip() or None) if patch[key] is not None else None

        if "kind" in patch:
            # Validates against the current status before anything is applied.
            stage_flow.change_kind(stage, patch["kind"])
        for key, value in changes.items():
            setattr(stage, key, value)
        if changes.get("assignee"):
            self.add_contact(changes["assignee"])
        stage.updated_at = datetime.now()
        self._touch(run)
        self._commit("STAGE", f"Updated stage '{stage.name}' of {run.id}", ", ".join(sorted(patch)))
        return stage

    def record_production(self, run_id: str, item_id: str, stage_id: str, *, size: str, qty: int) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        size = _require_text(size, field="Tamanho")
        qty = _whole_number(qty, field="Quantidade produzida")
        stage.produced_quantity_by_size[size] = qty
        stage.updated_at = datetime.now()
        self._touch(run)
        self._commit("STAGE", f"Production {size}={qty} on '{stage.name}' of {run.id}")
        return stage

    # ---------- Timer ----------
    def start_stage(self, run_id: str, item_id: str, stage_id: str, *, now: int | None = None) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage_flow.start(stage, now=self._now(now))
        self._touch(run)
        self._commit("STAGE", f"Started '{stage.name}' of {run.id}", stage.status.value)
        return stage

    def resume_stage(self, run_id: str, item_id: str, stage_id: str, *, now: int | None = None) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage_flow.resume(stage, now=self._now(now))
        self._touch(run)
        self._commit("STAGE", f"Resumed '{stage.name}' of {run.id}")
        return stage

    def pause_stage(self, run_id: str, item_id: str, stage_id: str, *, now: int | None = None) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage_flow.pause(stage, now=self._now(now))
        self._touch(run)
        self._commit("STAGE", f"Paused '{stage.name}' of {run.id}", f"{stage.timer.accumulated_ms} ms")
        return stage

    def reset_stage_timer(self, run_id: str, item_id: str, stage_id: str) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage_flow.reset_timer(stage)
        self._touch(run)
        self._commit("STAGE", f"Reset timer of '{stage.name}' of {run.id}")
        return stage

    def complete_stage(self, run_id: str, item_id: str, stage_id: str, *, now: int | None = None) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage_flow.complete(stage, now=self._now(now))
        self._touch(run)
        self._commit("STAGE", f"Completed '{stage.name}' of {run.id}", f"{stage.timer.accumulated_ms} ms")
        return stage

    # ---------- Checklist ----------
    def add_checklist_item(self, run_id: str, item_id: str, stage_id: str, text: str) -> ChecklistItem:
        run, stage = self._stage(run_id, item_id, stage_id)
        entry = stage.checklist.add_item(text)
        self._touch(run)
        self._commit("CHECKLIST", f"Added '{entry.text}' to '{stage.name}' of {run.id}")
        return entry

    def toggle_checklist_item(self, run_id: str, item_id: str, stage_id: str, checklist_item_id: str) -> ChecklistItem:
        run, stage = self._stage(run_id, item_id, stage_id)
        entry = stage.checklist.toggle(checklist_item_id)
        self._touch(run)
        self._commit("CHECKLIST", f"{'Checked' if entry.done else 'Unchecked'} '{entry.text}' on {run.id}")
        return entry

    def rename_checklist_item(
        self, run_id: str, item_id: str, stage_id: str, checklist_item_id: str, text: str
    ) -> ChecklistItem:
        run, stage = self._stage(run_id, item_id, stage_id)
        entry = stage.checklist.rename(checklist_item_id, text)
        self._touch(run)
        self._commit("CHECKLIST", f"Renamed checklist item on '{stage.name}' of {run.id}", entry.text)
        return entry

    def remove_checklist_item(self, run_id: str, item_id: str, stage_id: str, checklist_item_id: str) -> None:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage.checklist.remove(checklist_item_id)
        self._touch(run)
        self._commit("CHECKLIST", f"Removed checklist item from '{stage.name}' of {run.id}")

    def mark_all_checklist(self, run_id: str, item_id: str, stage_id: str, *, done: bool) -> Stage:
        run, stage = self._stage(run_id, item_id, stage_id)
        stage.checklist.mark_all(done)
        self._touch(run)
        self._commit("CHECKLIST", f"{'Marked' if done else 'Cleared'} all on '{stage.name}' of {run.id}")
        return stage

    # ---------- Kanban ----------
    def board_cards(
        self,
        *,
        query: str | None = "",
        overdue_only: bool = False,
        now: datetime | None = None,
    ) -> list[Card]:
        return filter_cards(build_cards(self.state), query=query, overdue_only=overdue_only, now=now)

    def find_card(self, card_id: str) -> Card:
        for card in build_cards(self.state):
            if card.card_id == card_id:
                return card
        raise NotFoundError(f"Cartão não encontrado: {card_id}")

    def move_card(self, card: Card, target: Lane | str, *, now: int | None = None) -> Stage:
        lane = target if isinstance(target, Lane) else Lane.parse(target)
        run = self.state.find_run(card.run_id)
        stage = run.find_stage(card.item_id, card.stage_id)
        previous = stage.status
        move_card(self.state, card, lane, now=self._now(now))
        if stage.status == previous:
            return stage
        self._touch(run)
        self._commit("KANBAN", f"Moved '{stage.name}' of {run.id}", f"{previous.value} -> {stage.status.value}")
        return stage

    # ---------- Backup ----------
    def export_json(self) -> str:
        return self.data_repo.export_json(self.state)

    def import_json(self, text: str) -> AppState:
        self.state = self.data_repo.import_json(text)
        return self.state

    def reset_state(self) -> AppState:
        self.state = self.data_repo.clear_state()
        return self.state
