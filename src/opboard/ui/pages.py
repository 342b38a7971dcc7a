from __future__ import annotations

import inspect
import logging
from datetime import datetime

from nicegui import ui

from opboard.core.errors import NotFoundError, TrackingError
from opboard.core.models import ORDER_STATUSES, PRODUCT_TYPES, SIZES, StageKind, StageStatus, now_ms
from opboard.core.stages import STAGE_TEMPLATES, allowed_statuses
from opboard.data.repository import Repository
from opboard.data.users_repository import ALL_PERMISSIONS, ROLES, USER_STATUSES
from opboard.production.kanban import Lane, group_cards
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
from opboard.ui.widgets import login_user, notify_error, page_container, render_nav, require_user


logger = logging.getLogger(__name__)


async def _read_upload(e) -> bytes:
    """Uploaded file content across NiceGUI versions (``e.content`` or ``e.file``)."""
    if hasattr(e, "content"):
        return e.content.read()
    f = getattr(e, "file", None)
    if f is not None and hasattr(f, "read"):
        if inspect.iscoroutinefunction(f.read):
            return await f.read()
        return f.read()
    raise TrackingError("Não foi possível ler o arquivo enviado")


def _fmt_dt(value: datetime | None) -> str:
    return value.strftime("%d/%m/%Y %H:%M") if value else "—"


def _date_input(label: str, value: datetime | None, on_commit) -> ui.input:
    """Free-text date field committed on blur; blank clears it."""
    field = ui.input(f"{label} (AAAA-MM-DD HH:MM)", value=value.strftime("%Y-%m-%d %H:%M") if value else "")
    field.on("blur", lambda e: on_commit(e.sender.value))
    return field.classes("w-48")


def _set_qty(line: dict, size: str, value) -> None:
    line["grade"][size] = int(value or 0)


def register_pages(repo: Repository) -> None:
    def _svc():
        return repo.get_production_service()

    def _attempt(fn, *args, ok: str | None = None, after=None, **kwargs):
        """Run a command; business errors become a red notification."""
        try:
            result = fn(*args, **kwargs)
        except TrackingError as ex:
            notify_error(ex)
            return None
        if ok:
            ui.notify(ok, type="positive")
        if after is not None:
            after()
        return result

    # ---------- Login ----------
    @ui.page("/login")
    def login() -> None:
        render_nav(active="login", repo=repo)
        with page_container():
            with ui.card().classes("p-6 w-[min(420px,100%)] mx-auto mt-12"):
                ui.label("Entrar").classes("text-2xl font-semibold")
                email_in = ui.input("E-mail").classes("w-full")
                pwd_in = ui.input("Senha", password=True, password_toggle_button=True).classes("w-full")

                def do_login() -> None:
                    user = repo.users.authenticate(email=email_in.value, password=pwd_in.value)
                    if user is None:
                        ui.notify("Credenciais inválidas", color="negative")
                        return
                    login_user(user)
                    repo.log_audit("AUTH", f"Login {user.email}")
                    ui.navigate.to("/")

                pwd_in.on("keydown.enter", do_login)
                ui.button("Entrar", on_click=do_login).props("unelevated color=primary").classes("w-full")

    # ---------- Dashboard ----------
    @ui.page("/")
    def dashboard() -> None:
        if require_user("dashboard") is None:
            return
        render_nav(active="dashboard", repo=repo)
        svc = _svc()
        figures = dashboard_figures(
            svc.state, due_soon_hours=repo.data.get_config_int(key="due_soon_hours", default=24)
        )
        with page_container():
            ui.label("Dashboard").classes("text-2xl font-semibold")
            with ui.row().classes("w-full gap-4"):
                for label, value in (
                    ("Pedidos ativos", figures.active_orders),
                    ("OPs publicadas", figures.published_runs),
                    ("Etapas em execução", figures.stages_in_progress),
                    ("Terceirizadas abertas", figures.outsourced_open),
                    ("Finalizados (7 dias)", figures.finished_last_7_days),
                ):
                    with ui.card().classes("p-4 min-w-[180px]"):
                        ui.label(label).classes("text-slate-500")
                        ui.label(str(value)).classes("text-3xl font-semibold")

            with ui.row().classes("w-full gap-4 items-start"):
                for title, run_ids, empty in (
                    ("OPs atrasadas", figures.overdue_runs, "Nenhuma OP atrasada"),
                    ("Vencendo em breve", figures.due_soon_runs, "Nenhuma OP vencendo"),
                ):
                    with ui.card().classes("p-4 flex-1 min-w-[320px]"):
                        ui.label(title).classes("text-lg font-medium")
                        if not run_ids:
                            ui.label(empty).classes("text-slate-500")
                        for run_id in run_ids:
                            run = svc.state.find_run(run_id)
                            badge, color = sla_badge(run.sla_deadline)
                            with ui.row().classes("items-center gap-2"):
                                ui.badge(badge, color=color)
                                ui.label(f"{run.id} • {run.client_name} • pedido {run.order_id}")

    # ---------- Orders ----------
    @ui.page("/pedidos")
    def pedidos() -> None:
        if require_user("pedidos") is None:
            return
        render_nav(active="pedidos", repo=repo)
        svc = _svc()

        with page_container():
            with ui.row().classes("items-center justify-between w-full"):
                ui.label("Pedidos").classes("text-2xl font-semibold")
                with ui.row().classes("gap-2"):
                    ui.button("Arquivados", on_click=lambda: ui.navigate.to("/kanban/arquivados")).props("flat no-caps")
                    ui.button("Novo pedido", icon="add", on_click=lambda: open_editor(None)).props("unelevated color=primary")
            search = ui.input("Buscar por pedido ou cliente").classes("w-full")
            list_container = ui.column().classes("w-full gap-2")

        def render_list() -> None:
            list_container.clear()
            needle = str(search.value or "").strip().lower()
            orders = [
                o for o in svc.active_orders()
                if not needle or needle in o.id.lower() or needle in o.client_name.lower()
            ]
            with list_container:
                if not orders:
                    ui.label("Nenhum pedido").classes("text-slate-500")
                for order in sorted(orders, key=lambda o: o.sla_deadline):
                    badge, color = sla_badge(order.sla_deadline)
                    runs = svc.state.runs_for_order(order.id)
                    with ui.card().classes("w-full p-3"):
                        with ui.row().classes("w-full items-center justify-between"):
                            with ui.row().classes("items-center gap-2"):
                                ui.badge(badge, color=color)
                                ui.label(f"{order.id} • {order.client_name}").classes("font-medium")
                                ui.label(f"{order.status} • {order.total_quantity} pçs • {len(order.items)} itens").classes(
                                    "text-slate-500"
                                )
                                if runs:
                                    ui.label(f"OPs: {', '.join(r.id for r in runs)}").classes("text-xs text-slate-400")
                            with ui.row().classes("gap-1"):
                                ui.button(icon="edit", on_click=lambda o=order: open_editor(o)).props("flat dense")
                                ui.button(
                                    "Gerar OP",
                                    on_click=lambda o=order: _attempt(
                                        svc.create_run_from_order, o.id, ok="OP criada", after=render_list
                                    ),
                                ).props("flat dense no-caps")
                                ui.button(
                                    icon="assessment",
                                    on_click=lambda o=order: ui.navigate.to(f"/relatorios/pedido/{o.id}"),
                                ).props("flat dense")
                                ui.button(
                                    icon="archive",
                                    on_click=lambda o=order: _attempt(
                                        svc.archive_order, o.id, ok="Pedido arquivado", after=render_list
                                    ),
                                ).props("flat dense")
                                ui.button(icon="delete", on_click=lambda o=order: confirm_delete(o)).props(
                                    "flat dense color=negative"
                                )

        def confirm_delete(order) -> None:
            runs = svc.state.runs_for_order(order.id)
            with ui.dialog().props("persistent") as dialog, ui.card():
                ui.label(f"Excluir pedido {order.id}?").classes("text-lg font-semibold")
                cascade = None
                if runs:
                    ui.label(f"O pedido possui {len(runs)} OP(s).").classes("text-slate-600")
                    cascade = ui.checkbox("Excluir também as OPs", value=False)

                def do_delete() -> None:
                    _attempt(
                        svc.delete_order,
                        order.id,
                        cascade=bool(cascade.value) if cascade is not None else False,
                        ok="Pedido excluído",
                        after=render_list,
                    )
                    if svc.state.get_order(order.id) is None:
                        dialog.close()

                with ui.row().classes("w-full justify-end"):
                    ui.button("Cancelar", on_click=dialog.close).props("flat")
                    ui.button("Excluir", on_click=do_delete).props("unelevated color=negative")
            dialog.open()

        def open_editor(order) -> None:
            lines: list[dict] = [
                {
                    "product_id": line.product_id,
                    "product_name": line.product_name,
                    "product_ref": line.product_ref,
                    "color_name": line.color_name,
                    "grade": dict(line.grade),
                }
                for line in (order.items if order else [])
            ]
            products = {p.id: p for p in svc.state.products if p.active}
            clients = [c.name for c in svc.state.clients]
            if order is not None and order.client_name not in clients:
                clients.append(order.client_name)

            with ui.dialog().props("persistent") as dialog, ui.card().classes("w-[min(900px,100%)]"):
                ui.label("Editar pedido" if order else "Novo pedido").classes("text-lg font-semibold")
                with ui.row().classes("w-full gap-2"):
                    client_in = ui.select(
                        clients, value=order.client_name if order else None, label="Cliente", with_input=True
                    ).classes("flex-1")
                    sla_in = ui.input(
                        "SLA (AAAA-MM-DD HH:MM)",
                        value=order.sla_deadline.strftime("%Y-%m-%d %H:%M") if order else "",
                    ).classes("flex-1")
                    status_in = ui.select(list(ORDER_STATUSES), value=order.status if order else ORDER_STATUSES[0], label="Status")
                notes_in = ui.textarea("Observações", value=(order.notes if order else "") or "").classes("w-full")
                lines_container = ui.column().classes("w-full gap-2")

                def render_lines() -> None:
                    lines_container.clear()
                    with lines_container:
                        for idx, line in enumerate(lines):
                            with ui.card().classes("w-full p-2"):
                                with ui.row().classes("w-full items-center justify-between"):
                                    ui.label(f"{line['product_name']} • {line['color_name']}").classes("font-medium")
                                    ui.button(icon="delete", on_click=lambda i=idx: (lines.pop(i), render_lines())).props(
                                        "flat dense color=negative"
                                    )
                                with ui.row().classes("gap-1"):
                                    for size in SIZES:
                                        ui.number(
                                            size,
                                            value=line["grade"].get(size, 0),
                                            min=0,
                                            format="%d",
                                            on_change=lambda e, ln=line, s=size: _set_qty(ln, s, e.value),
                                        ).classes("w-16").props("dense")

                render_lines()
                with ui.row().classes("w-full items-end gap-2"):
                    product_in = ui.select({pid: f"{p.name} ({p.ref})" for pid, p in products.items()}, label="Produto").classes(
                        "flex-1"
                    )
                    color_in = ui.input("Cor").classes("w-40")

                    def add_line() -> None:
                        product = products.get(product_in.value)
                        if product is None or not str(color_in.value or "").strip():
                            ui.notify("Selecione produto e cor", color="negative")
                            return
                        lines.append(
                            {
                                "product_id": product.id,
                                "product_name": product.name,
                                "product_ref": product.ref,
                                "color_name": str(color_in.value).strip(),
                                "grade": {},
                            }
                        )
                        color_in.value = ""
                        render_lines()

                    ui.button("Adicionar item", icon="add", on_click=add_line).props("outline")

                def save() -> None:
                    fields = {
                        "client_name": client_in.value,
                        "sla_deadline": sla_in.value,
                        "status": status_in.value,
                        "items": lines,
                        "notes": notes_in.value or None,
                    }
                    if order is None:
                        result = _attempt(svc.create_order, ok="Pedido criado", **fields)
                    else:
                        result = _attempt(svc.update_order, order.id, ok="Pedido atualizado", **fields)
                    if result is not None:
                        dialog.close()
                        render_list()

                with ui.row().classes("w-full justify-end"):
                    ui.button("Cancelar", on_click=dialog.close).props("flat")
                    ui.button("Salvar", on_click=save).props("unelevated color=primary")
            dialog.open()

        search.on_value_change(lambda _: render_list())
        render_list()

    # ---------- Clients ----------
    @ui.page("/clientes")
    def clientes() -> None:
        if require_user("clientes") is None:
            return
        render_nav(active="clientes", repo=repo)
        svc = _svc()

        with page_container():
            ui.label("Clientes").classes("text-2xl font-semibold")
            with ui.card().classes("w-full p-4"):
                with ui.row().classes("w-full gap-2"):
                    name_in = ui.input("Nome").classes("flex-1")
                    contact_in = ui.input("Contato").classes("flex-1")
                    phone_in = ui.input("Telefone")
                    email_in = ui.input("E-mail")
                    city_in = ui.input("Cidade")

                def create() -> None:
                    result = _attempt(
                        svc.create_client,
                        name=name_in.value,
                        contact_name=contact_in.value,
                        phone=phone_in.value or None,
                        email=email_in.value or None,
                        city=city_in.value or None,
                        ok="Cliente criado",
                        after=lambda: render_table(),
                    )
                    if result is not None:
                        for field_in in (name_in, contact_in, phone_in, email_in, city_in):
                            field_in.value = ""

                ui.button("Adicionar", icon="add", on_click=create).props("unelevated color=primary")
            table_container = ui.column().classes("w-full")

        def edit(client) -> None:
            with ui.dialog() as dialog, ui.card().classes("w-[min(520px,100%)]"):
                ui.label(f"Editar {client.name}").classes("text-lg font-semibold")
                inputs = {
                    "name": ui.input("Nome", value=client.name).classes("w-full"),
                    "contact_name": ui.input("Contato", value=client.contact_name).classes("w-full"),
                    "phone": ui.input("Telefone", value=client.phone or "").classes("w-full"),
                    "email": ui.input("E-mail", value=client.email or "").classes("w-full"),
                    "document": ui.input("CNPJ/CPF", value=client.document or "").classes("w-full"),
                    "city": ui.input("Cidade", value=client.city or "").classes("w-full"),
                    "state_uf": ui.input("UF", value=client.state_uf or "").classes("w-full"),
                }

                def save() -> None:
                    patch = {k: (v.value or None) if k not in {"name", "contact_name"} else (v.value or "") for k, v in inputs.items()}
                    if _attempt(svc.update_client, client.id, ok="Cliente atualizado", **patch) is not None:
                        dialog.close()
                        render_table()

                with ui.row().classes("w-full justify-end"):
                    ui.button("Cancelar", on_click=dialog.close).props("flat")
                    ui.button("Salvar", on_click=save).props("unelevated color=primary")
            dialog.open()

        def render_table() -> None:
            table_container.clear()
            with table_container:
                for client in sorted(svc.state.clients, key=lambda c: c.name.lower()):
                    with ui.row().classes("w-full items-center justify-between border-b py-1"):
                        ui.label(f"{client.name} • {client.contact_name or '—'} • {client.phone or '—'} • {client.city or '—'}")
                        with ui.row().classes("gap-1"):
                            ui.button(icon="edit", on_click=lambda c=client: edit(c)).props("flat dense")
                            ui.button(
                                icon="delete",
                                on_click=lambda c=client: _attempt(
                                    svc.delete_client, c.id, ok="Cliente excluído", after=render_table
                                ),
                            ).props("flat dense color=negative")

        render_table()

    # ---------- Products ----------
    @ui.page("/produtos")
    def produtos() -> None:
        if require_user("produtos") is None:
            return
        render_nav(active="produtos", repo=repo)
        svc = _svc()

        with page_container():
            ui.label("Produtos").classes("text-2xl font-semibold")
            with ui.card().classes("w-full p-4"):
                with ui.row().classes("w-full gap-2"):
                    name_in = ui.input("Nome").classes("flex-1")
                    ref_in = ui.input("Referência")
                    type_in = ui.select(list(PRODUCT_TYPES), value=PRODUCT_TYPES[0], label="Tipo")
                    sizes_in = ui.select(list(SIZES), value=list(SIZES[:6]), multiple=True, label="Tamanhos").classes("w-64")
                    colors_in = ui.input("Cores (separadas por vírgula)").classes("flex-1")

                def create() -> None:
                    _attempt(
                        svc.create_product,
                        name=name_in.value,
                        ref=ref_in.value,
                        type=type_in.value,
                        sizes=list(sizes_in.value or []),
                        colors=[c.strip() for c in str(colors_in.value or "").split(",") if c.strip()],
                        ok="Produto criado",
                        after=lambda: render_table(),
                    )

                ui.button("Adicionar", icon="add", on_click=create).props("unelevated color=primary")
            table_container = ui.column().classes("w-full")

        def render_table() -> None:
            table_container.clear()
            with table_container:
                for product in sorted(svc.state.products, key=lambda p: p.name.lower()):
                    with ui.row().classes("w-full items-center justify-between border-b py-1"):
                        ui.label(
                            f"{product.name} ({product.ref}) • {product.type} • {', '.join(product.sizes) or '—'} • "
                            f"{', '.join(product.colors) or '—'}"
                        ).classes("" if product.active else "text-slate-400 line-through")
                        with ui.row().classes("gap-1 items-center"):
                            ui.switch(
                                "Ativo",
                                value=product.active,
                                on_change=lambda e, p=product: _attempt(
                                    svc.update_product, p.id, active=bool(e.value), after=render_table
                                ),
                            )
                            ui.button(
                                icon="delete",
                                on_click=lambda p=product: _attempt(
                                    svc.delete_product, p.id, ok="Produto excluído", after=render_table
                                ),
                            ).props("flat dense color=negative")

        render_table()

    # ---------- Production runs ----------
    @ui.page("/ops")
    def ops() -> None:
        if require_user("ops") is None:
            return
        render_nav(active="ops", repo=repo)
        svc = _svc()

        with page_container():
            ui.label("Ordens de Produção").classes("text-2xl font-semibold")
            with ui.row().classes("w-full items-end gap-2"):
                order_in = ui.select(
                    {o.id: f"{o.id} • {o.client_name}" for o in svc.active_orders()}, label="Pedido"
                ).classes("w-96")

                def create_run() -> None:
                    if not order_in.value:
                        ui.notify("Selecione um pedido", color="negative")
                        return
                    run = _attempt(svc.create_run_from_order, order_in.value, ok="OP criada")
                    if run is not None:
                        ui.navigate.to(f"/ops/{run.id}/planner")

                ui.button("Nova OP", icon="add", on_click=create_run).props("unelevated color=primary")
            list_container = ui.column().classes("w-full gap-2")

        def render_list() -> None:
            list_container.clear()
            with list_container:
                if not svc.state.runs:
                    ui.label("Nenhuma OP").classes("text-slate-500")
                for run in sorted(svc.state.runs, key=lambda r: r.sla_deadline):
                    badge, color = sla_badge(run.sla_deadline)
                    stage_count = sum(1 for _ in run.iter_stages())
                    with ui.card().classes("w-full p-3"):
                        with ui.row().classes("w-full items-center justify-between"):
                            with ui.row().classes("items-center gap-2"):
                                ui.badge(badge, color=color)
                                ui.label(f"{run.id} • pedido {run.order_id} • {run.client_name}").classes("font-medium")
                                ui.badge(
                                    "Publicada" if run.published else "Rascunho",
                                    color="positive" if run.published else "grey",
                                )
                                ui.label(f"{len(run.items)} itens • {stage_count} etapas • {run.planned_total} pçs").classes(
                                    "text-slate-500"
                                )
                            with ui.row().classes("gap-1"):
                                ui.button(
                                    "Planejar", on_click=lambda r=run: ui.navigate.to(f"/ops/{r.id}/planner")
                                ).props("flat dense no-caps")
                                if run.published:
                                    ui.button(
                                        "Despublicar",
                                        on_click=lambda r=run: _attempt(svc.unpublish_run, r.id, after=render_list),
                                    ).props("flat dense no-caps")
                                else:
                                    ui.button(
                                        "Publicar",
                                        on_click=lambda r=run: _attempt(
                                            svc.publish_run, r.id, ok="OP publicada", after=render_list
                                        ),
                                    ).props("flat dense no-caps color=positive")
                                ui.button(
                                    icon="delete",
                                    on_click=lambda r=run: _attempt(svc.delete_run, r.id, ok="OP excluída", after=render_list),
                                ).props("flat dense color=negative")

        render_list()

    @ui.page("/ops/{run_id}/planner")
    def planner(run_id: str) -> None:
        if require_user("ops") is None:
            return
        render_nav(active="ops", repo=repo)
        svc = _svc()
        try:
            run = svc.state.find_run(run_id)
        except NotFoundError as ex:
            with page_container():
                ui.label(str(ex)).classes("text-slate-500")
            return

        with page_container():
            with ui.row().classes("items-center justify-between w-full"):
                ui.label(f"Planejamento {run.id}").classes("text-2xl font-semibold")
                status_label = ui.label().classes("text-slate-500")
                ui.button(
                    "Publicar",
                    icon="publish",
                    on_click=lambda: _attempt(svc.publish_run, run.id, ok="OP publicada", after=render),
                ).props("unelevated color=positive")
            ui.label(f"Pedido {run.order_id} • {run.client_name} • SLA {_fmt_dt(run.sla_deadline)}").classes("text-slate-600")
            body = ui.column().classes("w-full gap-4")

        def render_stage(item, idx: int, stage) -> None:
            with ui.card().classes("w-full p-2"):
                with ui.row().classes("w-full items-center gap-2"):
                    ui.label(f"{idx + 1}.").classes("w-6")
                    ui.input("Etapa", value=stage.name).classes("flex-1").on(
                        "blur",
                        lambda e, s=stage: _attempt(svc.update_stage, run.id, item.id, s.id, name=e.sender.value),
                    )
                    ui.select(
                        [k.value for k in StageKind],
                        value=stage.kind.value,
                        label="Tipo",
                        on_change=lambda e, s=stage: _attempt(
                            svc.update_stage, run.id, item.id, s.id, kind=e.value, after=render
                        ),
                    ).classes("w-40")
                    ui.number(
                        "Duração (min)",
                        value=stage.planned_duration_min,
                        min=0,
                        format="%d",
                        on_change=lambda e, s=stage: _attempt(
                            svc.update_stage,
                            run.id,
                            item.id,
                            s.id,
                            planned_duration_min=e.value,
                        ),
                    ).classes("w-32")
                    _date_input(
                        "Prazo da etapa",
                        stage.deadline,
                        lambda v, s=stage: _attempt(svc.update_stage, run.id, item.id, s.id, deadline=v),
                    )
                    ui.label(stage.status.value).classes("text-xs text-slate-500")
                    ui.button(
                        icon="arrow_upward",
                        on_click=lambda i=idx: _attempt(svc.reorder_stages, run.id, item.id, i, i - 1, after=render),
                    ).props("flat dense").set_enabled(idx > 0)
                    ui.button(
                        icon="arrow_downward",
                        on_click=lambda i=idx: _attempt(svc.reorder_stages, run.id, item.id, i, i + 1, after=render),
                    ).props("flat dense").set_enabled(idx < len(item.stages) - 1)
                    ui.button(
                        icon="delete",
                        on_click=lambda s=stage: _attempt(svc.remove_stage, run.id, item.id, s.id, after=render),
                    ).props("flat dense color=negative")
                if stage.kind is StageKind.OUTSOURCED:
                    with ui.row().classes("w-full gap-2"):
                        for field_name, label in (("outsourced_partner", "Parceiro"), ("tracking_code", "Rastreio")):
                            ui.input(label, value=getattr(stage, field_name) or "").on(
                                "blur",
                                lambda e, s=stage, f=field_name: _attempt(
                                    svc.update_stage, run.id, item.id, s.id, **{f: e.sender.value}
                                ),
                            )
                        _date_input(
                            "Retorno previsto",
                            stage.return_eta,
                            lambda v, s=stage: _attempt(svc.update_stage, run.id, item.id, s.id, return_eta=v),
                        )
                with ui.expansion(f"Checklist ({stage.checklist.done_count}/{len(stage.checklist)})").classes("w-full"):
                    for entry in stage.checklist:
                        with ui.row().classes("items-center gap-2"):
                            ui.checkbox(
                                entry.text,
                                value=entry.done,
                                on_change=lambda _, s=stage, c=entry: _attempt(
                                    svc.toggle_checklist_item, run.id, item.id, s.id, c.id
                                ),
                            )
                            ui.button(
                                icon="close",
                                on_click=lambda s=stage, c=entry: _attempt(
                                    svc.remove_checklist_item, run.id, item.id, s.id, c.id, after=render
                                ),
                            ).props("flat dense round size=sm")
                    with ui.row().classes("items-center gap-2"):
                        new_item = ui.input("Novo item").props("dense")
                        ui.button(
                            icon="add",
                            on_click=lambda s=stage, inp=new_item: _attempt(
                                svc.add_checklist_item, run.id, item.id, s.id, inp.value, after=render
                            ),
                        ).props("flat dense")

        def render() -> None:
            status_label.set_text("Publicada" if run.published else "Rascunho")
            body.clear()
            with body:
                for item in run.items:
                    with ui.card().classes("w-full p-4"):
                        ui.label(f"{item.product_name} • {item.color_name}").classes("text-lg font-medium")
                        ui.label(format_size_summary(item.planned_quantity_by_size, {}) or "Sem grade").classes(
                            "text-sm text-slate-500"
                        )
                        for idx, stage in enumerate(item.stages):
                            render_stage(item, idx, stage)
                        with ui.row().classes("w-full items-end gap-2"):
                            name_in = ui.input("Nova etapa").classes("flex-1")
                            kind_in = ui.select([k.value for k in StageKind], value=StageKind.INTERNAL.value, label="Tipo")
                            ui.button(
                                "Adicionar",
                                icon="add",
                                on_click=lambda it=item, n=name_in, k=kind_in: _attempt(
                                    svc.add_stage, run.id, it.id, n.value, kind=k.value, after=render
                                ),
                            ).props("outline")
                        with ui.row().classes("gap-1"):
                            for template in STAGE_TEMPLATES:
                                ui.chip(
                                    template,
                                    icon="add",
                                    on_click=lambda it=item, t=template: _attempt(
                                        svc.add_template_stage, run.id, it.id, t, after=render
                                    ),
                                ).props("clickable outline")

        render()

    # ---------- Kanban ----------
    @ui.page("/kanban")
    def kanban() -> None:
        if require_user("kanban") is None:
            return
        render_nav(active="kanban", repo=repo)
        svc = _svc()
        timer_labels: list[tuple[ui.label, str, str, str]] = []

        with page_container():
            with ui.row().classes("w-full items-center gap-4"):
                ui.label("Kanban").classes("text-2xl font-semibold")
                query_in = ui.input("Filtrar (pedido, cliente, etapa, produto, cor)").classes("flex-1")
                overdue_chk = ui.checkbox("Só atrasados", value=False)
            board = ui.column().classes("w-full gap-6")

        def act(fn, card, **kwargs) -> None:
            _attempt(fn, card.run_id, card.item_id, card.stage_id, after=render, **kwargs)

        def move(card, status_value: str) -> None:
            target = Lane(run_id=card.run_id, item_id=card.item_id, status=StageStatus(status_value))
            _attempt(svc.move_card, card, target, after=render)

        def render_card(card) -> None:
            badge, color = sla_badge(card.sla_deadline)
            with ui.card().classes("ob-card w-full p-2 gap-1"):
                with ui.row().classes("w-full items-center justify-between"):
                    ui.label(card.stage_name).classes("font-medium")
                    with ui.row().classes("gap-1"):
                        left = deadline_badge(card.deadline)
                        if left is not None and card.status is not StageStatus.DONE:
                            ui.badge(left[0], color=left[1]).props("outline").tooltip(f"Prazo {_fmt_dt(card.deadline)}")
                        ui.badge(badge, color=color)
                ui.label(f"{card.order_id} • {card.client_name}").classes("text-xs text-slate-500")
                ui.label(f"{card.product_name} • {card.color_name} ({card.product_ref or '—'})").classes("text-xs")
                if card.return_eta is not None:
                    ui.label(f"Retorno previsto {_fmt_dt(card.return_eta)}").classes("text-xs text-slate-500")
                ui.label(format_size_summary(card.planned_by_size, card.produced_by_size, card.product_type)).classes(
                    "text-xs text-slate-600"
                )
                ui.label(f"Previsto {format_minutes(card.planned_duration_min)} • Checklist {card.checklist_done}/{card.checklist_total}").classes(
                    "text-xs text-slate-500"
                )
                with ui.row().classes("items-center gap-1"):
                    lbl = ui.label(format_duration_ms(card.elapsed_ms())).classes("ob-timer font-mono")
                    timer_labels.append((lbl, card.run_id, card.item_id, card.stage_id))
                    if card.status is not StageStatus.DONE:
                        if card.timer_running:
                            ui.button(icon="pause", on_click=lambda c=card: act(svc.pause_stage, c)).props("flat dense round")
                        elif card.status is StageStatus.TODO:
                            ui.button(icon="play_arrow", on_click=lambda c=card: act(svc.start_stage, c)).props(
                                "flat dense round color=positive"
                            )
                        else:
                            ui.button(icon="play_arrow", on_click=lambda c=card: act(svc.resume_stage, c)).props(
                                "flat dense round color=positive"
                            )
                    ui.button(icon="restart_alt", on_click=lambda c=card: act(svc.reset_stage_timer, c)).props(
                        "flat dense round"
                    )
                ui.select(
                    {s.value: s.value for s in allowed_statuses(card.stage_kind)},
                    value=card.status.value,
                    on_change=lambda e, c=card: move(c, e.value),
                ).props("dense outlined").classes("w-full")
                if card.checklist_total:
                    stage = svc.state.find_run(card.run_id).find_stage(card.item_id, card.stage_id)
                    with ui.expansion("Checklist").classes("w-full text-xs"):
                        for entry in stage.checklist:
                            ui.checkbox(
                                entry.text,
                                value=entry.done,
                                on_change=lambda _, c=card, cid=entry.id: act(svc.toggle_checklist_item, c, checklist_item_id=cid),
                            ).props("dense")

        def render() -> None:
            timer_labels.clear()
            board.clear()
            cards = svc.board_cards(query=query_in.value, overdue_only=bool(overdue_chk.value))
            grouped = group_cards(cards)
            with board:
                if not grouped:
                    ui.label("Nenhuma etapa publicada").classes("text-slate-500")
                for (run_id, item_id), lanes in grouped.items():
                    sample = next(c for lane in lanes.values() for c in lane)
                    with ui.column().classes("w-full gap-2"):
                        at_risk, late = deadline_counts([c for lane in lanes.values() for c in lane])
                        with ui.row().classes("items-center gap-2"):
                            ui.label(
                                f"{run_id} • pedido {sample.order_id} • {sample.client_name} • "
                                f"{sample.product_name} {sample.color_name}"
                            ).classes("text-lg font-medium")
                            if at_risk:
                                ui.badge(f"{at_risk} em risco", color="warning")
                            if late:
                                ui.badge(f"{late} atrasada(s)", color="negative")
                        with ui.row().classes("w-full gap-3 flex-nowrap overflow-x-auto items-start"):
                            for status, lane_cards in lanes.items():
                                with ui.column().classes("ob-lane p-2 gap-2"):
                                    ui.label(f"{status.value} ({len(lane_cards)})").classes("text-sm font-semibold")
                                    for card in lane_cards:
                                        render_card(card)

        def tick() -> None:
            t = now_ms()
            for lbl, run_id, item_id, stage_id in timer_labels:
                try:
                    stage = svc.state.find_run(run_id).find_stage(item_id, stage_id)
                except NotFoundError:
                    continue
                lbl.set_text(format_duration_ms(stage.timer.elapsed_ms(t)))

        query_in.on_value_change(lambda _: render())
        overdue_chk.on_value_change(lambda _: render())
        render()
        ui.timer(1.0, tick)

    @ui.page("/kanban/arquivados")
    def kanban_archived() -> None:
        if require_user("kanban") is None:
            return
        render_nav(active="kanban", repo=repo)
        svc = _svc()
        with page_container():
            ui.label("Pedidos arquivados").classes("text-2xl font-semibold")
            list_container = ui.column().classes("w-full gap-2")

        def render_list() -> None:
            list_container.clear()
            with list_container:
                archived = svc.archived_orders()
                if not archived:
                    ui.label("Nenhum pedido arquivado").classes("text-slate-500")
                for order in sorted(archived, key=lambda o: o.archived_at or datetime.min, reverse=True):
                    with ui.row().classes("w-full items-center justify-between border-b py-1"):
                        ui.label(f"{order.id} • {order.client_name} • arquivado em {_fmt_dt(order.archived_at)}")
                        with ui.row().classes("gap-1"):
                            ui.button(
                                icon="assessment", on_click=lambda o=order: ui.navigate.to(f"/relatorios/pedido/{o.id}")
                            ).props("flat dense")
                            ui.button(
                                "Restaurar",
                                on_click=lambda o=order: _attempt(
                                    svc.restore_order, o.id, ok="Pedido restaurado", after=render_list
                                ),
                            ).props("flat dense no-caps")

        render_list()

    # ---------- Reports ----------
    @ui.page("/relatorios/pedido/{order_id}")
    def relatorio_pedido(order_id: str) -> None:
        if require_user("relatorios") is None:
            return
        render_nav(active="pedidos", repo=repo)
        svc = _svc()
        try:
            report = build_order_report(svc.state, order_id)
        except NotFoundError as ex:
            with page_container():
                ui.label(str(ex)).classes("text-slate-500")
            return

        with page_container():
            with ui.row().classes("items-center justify-between w-full"):
                ui.label(f"Relatório do pedido {report.order_id}").classes("text-2xl font-semibold")
                ui.button(
                    "Exportar Excel",
                    icon="download",
                    on_click=lambda: ui.download(report_to_excel_bytes(report), f"pedido_{report.order_id}.xlsx"),
                ).props("unelevated color=primary")
            badge, color = sla_badge(report.sla_deadline)
            with ui.row().classes("items-center gap-2"):
                ui.badge(badge, color=color)
                ui.label(
                    f"{report.client_name} • {report.status} • SLA {_fmt_dt(report.sla_deadline)}"
                    + (" • ATRASADO" if report.overdue else "")
                )
            with ui.row().classes("w-full gap-4"):
                for label, value in (
                    ("Peças", report.total_quantity),
                    ("Itens", report.item_count),
                    ("Etapas", f"{report.done_stage_count}/{report.stage_count}"),
                    ("Tempo total", format_duration_ms(report.elapsed_ms_total)),
                    ("Checklist", f"{report.checklist_done}/{report.checklist_total}"),
                ):
                    with ui.card().classes("p-4 min-w-[160px]"):
                        ui.label(label).classes("text-slate-500")
                        ui.label(str(value)).classes("text-2xl font-semibold")

            ui.table(
                columns=[
                    {"name": "run_id", "label": "OP", "field": "run_id", "sortable": True},
                    {"name": "product", "label": "Produto", "field": "product", "align": "left"},
                    {"name": "stage", "label": "Etapa", "field": "stage", "align": "left"},
                    {"name": "kind", "label": "Tipo", "field": "kind"},
                    {"name": "status", "label": "Status", "field": "status", "sortable": True},
                    {"name": "qty", "label": "Prev./Prod.", "field": "qty"},
                    {"name": "elapsed", "label": "Tempo", "field": "elapsed"},
                    {"name": "checklist", "label": "Checklist", "field": "checklist"},
                ],
                rows=[
                    {
                        "_row_id": i,
                        "run_id": r.run_id,
                        "product": f"{r.product_name} • {r.color_name}",
                        "stage": r.stage_name,
                        "kind": r.kind,
                        "status": r.status,
                        "qty": f"{r.planned_total}/{r.produced_total}",
                        "elapsed": format_duration_ms(r.elapsed_ms),
                        "checklist": f"{r.checklist_done}/{r.checklist_total}",
                    }
                    for i, r in enumerate(report.rows)
                ],
                row_key="_row_id",
            ).classes("w-full").props("dense flat bordered")

    # ---------- Backup ----------
    @ui.page("/backup")
    def backup() -> None:
        if require_user("config") is None:
            return
        render_nav(active="backup", repo=repo)
        svc = _svc()
        with page_container():
            ui.label("Backup").classes("text-2xl font-semibold")
            ui.label(f"Último salvamento: {repo.data.get_state_saved_at() or '—'}").classes("text-slate-500")
            with ui.row().classes("w-full gap-4 items-stretch"):
                with ui.card().classes("p-4 w-[min(420px,100%)]"):
                    ui.label("Exportar").classes("text-lg font-semibold")
                    ui.button(
                        "Baixar JSON",
                        icon="download",
                        on_click=lambda: ui.download(
                            svc.export_json().encode("utf-8"), f"opboard_{datetime.now():%Y%m%d_%H%M}.json"
                        ),
                    ).props("unelevated color=primary")

                with ui.card().classes("p-4 w-[min(420px,100%)]"):
                    ui.label("Importar").classes("text-lg font-semibold")
                    ui.label("Substitui todos os dados atuais.").classes("text-slate-600")

                    async def handle_upload(e) -> None:
                        try:
                            content = await _read_upload(e)
                            state = svc.import_json(content.decode("utf-8"))
                        except (TrackingError, UnicodeDecodeError) as ex:
                            logger.warning("Backup import rejected: %s", ex)
                            notify_error(ex)
                            return
                        ui.notify(
                            f"Importado: {len(state.orders)} pedidos, {len(state.runs)} OPs", type="positive"
                        )

                    ui.upload(label="Enviar backup (.json)", on_upload=handle_upload, auto_upload=True).props(
                        "accept=.json max-files=1"
                    )

                with ui.card().classes("p-4 w-[min(420px,100%)]"):
                    ui.label("Zerar dados").classes("text-lg font-semibold text-negative")
                    with ui.dialog().props("persistent") as reset_dialog, ui.card():
                        ui.label("Apagar todos os pedidos, OPs, clientes e produtos?")
                        with ui.row().classes("w-full justify-end"):
                            ui.button("Cancelar", on_click=reset_dialog.close).props("flat")

                            def do_reset() -> None:
                                svc.reset_state()
                                reset_dialog.close()
                                ui.notify("Dados zerados", type="positive")

                            ui.button("Apagar", on_click=do_reset).props("unelevated color=negative")
                    ui.button("Zerar", icon="delete_forever", on_click=reset_dialog.open).props("outline color=negative")

    # ---------- Audit ----------
    @ui.page("/audit")
    def audit_log() -> None:
        if require_user("config") is None:
            return
        render_nav(active="audit", repo=repo)
        with page_container():
            ui.label("Auditoria").classes("text-2xl font-semibold")
            ui.separator()
            rows = [
                {
                    "id": e.id,
                    "timestamp": e.timestamp,
                    "category": e.category,
                    "message": e.message,
                    "details": e.details or "",
                }
                for e in repo.data.get_recent_audit_entries(limit=500)
            ]
            ui.table(
                columns=[
                    {"name": "timestamp", "label": "Data/Hora", "field": "timestamp", "sortable": True},
                    {"name": "category", "label": "Categoria", "field": "category", "sortable": True},
                    {"name": "message", "label": "Mensagem", "field": "message", "sortable": True, "align": "left"},
                    {"name": "details", "label": "Detalhes", "field": "details", "align": "left"},
                ],
                rows=rows,
                row_key="id",
                pagination=20,
            ).classes("w-full").props("dense")

    # ---------- Users ----------
    @ui.page("/usuarios")
    def usuarios() -> None:
        if require_user("config") is None:
            return
        render_nav(active="usuarios", repo=repo)

        with page_container():
            ui.label("Usuários").classes("text-2xl font-semibold")
            with ui.card().classes("w-full p-4"):
                with ui.row().classes("w-full gap-2"):
                    name_in = ui.input("Nome").classes("flex-1")
                    email_in = ui.input("E-mail").classes("flex-1")
                    pwd_in = ui.input("Senha", password=True)
                    role_in = ui.select(list(ROLES), value="viewer", label="Perfil")
                perms_in = ui.select(list(ALL_PERMISSIONS), value=["dashboard", "kanban"], multiple=True, label="Permissões").classes(
                    "w-full"
                )

                def create() -> None:
                    _attempt(
                        repo.users.create_user,
                        name=name_in.value,
                        email=email_in.value,
                        password=pwd_in.value,
                        role_id=role_in.value,
                        permissions=list(perms_in.value or []),
                        ok="Usuário criado",
                        after=lambda: render_list(),
                    )

                ui.button("Adicionar", icon="person_add", on_click=create).props("unelevated color=primary")
            search = ui.input("Buscar").classes("w-full")
            list_container = ui.column().classes("w-full")

        def edit(user) -> None:
            with ui.dialog() as dialog, ui.card().classes("w-[min(560px,100%)]"):
                ui.label(f"Editar {user.email}").classes("text-lg font-semibold")
                e_name = ui.input("Nome", value=user.name).classes("w-full")
                e_email = ui.input("E-mail", value=user.email).classes("w-full")
                e_role = ui.select(list(ROLES), value=user.role_id, label="Perfil").classes("w-full")
                e_status = ui.select(list(USER_STATUSES), value=user.status, label="Status").classes("w-full")
                e_perms = ui.select(list(ALL_PERMISSIONS), value=[p for p in user.permissions if p in ALL_PERMISSIONS], multiple=True, label="Permissões").classes(
                    "w-full"
                )
                e_pwd = ui.input("Nova senha (opcional)", password=True).classes("w-full")

                def save() -> None:
                    result = _attempt(
                        repo.users.update_user,
                        user.id,
                        name=e_name.value,
                        email=e_email.value,
                        role_id=e_role.value,
                        status=e_status.value,
                        permissions=list(e_perms.value or []),
                        password=e_pwd.value or None,
                        ok="Usuário atualizado",
                    )
                    if result is not None:
                        dialog.close()
                        render_list()

                with ui.row().classes("w-full justify-end"):
                    ui.button("Cancelar", on_click=dialog.close).props("flat")
                    ui.button("Salvar", on_click=save).props("unelevated color=primary")
            dialog.open()

        def render_list() -> None:
            list_container.clear()
            with list_container:
                for user in repo.users.list_users(search.value):
                    with ui.row().classes("w-full items-center justify-between border-b py-1"):
                        ui.label(f"{user.name} • {user.email} • {user.role_id} • {user.status}").classes(
                            "" if user.is_active else "text-slate-400"
                        )
                        with ui.row().classes("gap-1"):
                            ui.button(icon="edit", on_click=lambda u=user: edit(u)).props("flat dense")
                            ui.button(
                                icon="delete",
                                on_click=lambda u=user: _attempt(
                                    repo.users.delete_user, u.id, ok="Usuário excluído", after=render_list
                                ),
                            ).props("flat dense color=negative")

        search.on_value_change(lambda _: render_list())
        render_list()

    # ---------- Config ----------
    @ui.page("/config")
    def config_page() -> None:
        if require_user("config") is None:
            return
        render_nav(active="config", repo=repo)
        with page_container():
            ui.label("Configuração").classes("text-2xl font-semibold text-slate-800")
            with ui.card().classes("w-full p-4"):
                empresa_in = ui.input("Nome da empresa", value=repo.get_config(key="empresa", default="") or "").classes("w-full")
                due_in = ui.number(
                    "Alerta de vencimento (horas)",
                    value=repo.data.get_config_int(key="due_soon_hours", default=24),
                    min=1,
                    format="%d",
                )
                protected_in = ui.input(
                    "E-mails protegidos",
                    value=repo.get_config(key="protected_emails", default="") or "",
                    placeholder="admin@empresa.com, dono@empresa.com",
                ).props("hint='Separe com vírgulas'").classes("w-full")

                def save_cfg() -> None:
                    repo.set_config(key="empresa", value=str(empresa_in.value or "").strip())
                    repo.set_config(key="due_soon_hours", value=str(int(due_in.value or 24)))
                    repo.set_config(key="protected_emails", value=str(protected_in.value or "").strip())
                    ui.notify("Configuração salva", type="positive")

                with ui.row().classes("w-full justify-end"):
                    ui.button("Salvar", icon="save", on_click=save_cfg).props("unelevated color=primary")
