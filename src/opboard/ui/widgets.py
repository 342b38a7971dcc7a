from __future__ import annotations

from contextlib import contextmanager

from nicegui import app, ui

from opboard.data.repository import Repository


_THEME_APPLIED = False

# (key, label, path, permission)
SECTIONS: list[tuple[str, str, str, str]] = [
    ("dashboard", "Dashboard", "/", "dashboard"),
    ("pedidos", "Pedidos", "/pedidos", "pedidos"),
    ("ops", "OPs", "/ops", "ops"),
    ("kanban", "Kanban", "/kanban", "kanban"),
    ("clientes", "Clientes", "/clientes", "clientes"),
    ("produtos", "Produtos", "/produtos", "produtos"),
]


def apply_theme() -> None:
    ui.colors(
        primary="#2563eb",  # blue-600
        secondary="#0ea5e9",  # sky-500
        positive="#16a34a",  # green-600
        negative="#dc2626",  # red-600
        warning="#f59e0b",  # amber-500
    )

    ui.add_css(
        """
        body { background: #f8fafc; }
        .ob-container { max-width: 1280px; margin: 0 auto; padding: 16px; }
        .ob-header { border-bottom: 1px solid rgba(15, 23, 42, 0.08); }
        .ob-lane { min-width: 220px; background: #f1f5f9; border-radius: 8px; }
        .ob-card { border: 1px solid rgba(15, 23, 42, 0.08); }
        .ob-timer { font-variant-numeric: tabular-nums; }
        """
    )


def ensure_theme() -> None:
    """Apply theme once, but only when called from within a page context."""
    global _THEME_APPLIED
    if _THEME_APPLIED:
        return
    apply_theme()
    _THEME_APPLIED = True


@contextmanager
def page_container():
    with ui.element("div").classes("ob-container"):
        yield


# ---------- Session ----------
def current_user() -> dict | None:
    return app.storage.user.get("user")


def login_user(user) -> None:
    app.storage.user["user"] = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role_id": user.role_id,
        "permissions": list(user.permissions),
    }


def logout_user() -> None:
    app.storage.user.pop("user", None)
    ui.navigate.to("/login")


def require_user(permission: str | None = None) -> dict | None:
    """Logged-in user allowed to see ``permission``; redirects and returns None otherwise."""
    user = current_user()
    if user is None:
        ui.navigate.to("/login")
        return None
    if permission and not can(user, permission):
        ui.notify("Sem permissão para esta página", color="negative")
        ui.navigate.to("/")
        return None
    return user


def can(user: dict | None, permission: str) -> bool:
    if not user:
        return False
    if user.get("role_id") == "admin":
        return True
    return permission in (user.get("permissions") or [])


def render_nav(active: str | None = None, repo: Repository | None = None) -> None:
    ensure_theme()
    active_key = active or "dashboard"
    user = current_user()
    title = "Opboard"
    if repo is not None:
        title = repo.get_config(key="empresa", default=title) or title
    admin_active = active_key in {"usuarios", "config", "audit", "backup"}

    with ui.header().classes("ob-header bg-white text-slate-900"):
        with ui.row().classes("w-full items-center justify-between gap-4 px-4 py-2"):
            ui.label(title).classes("text-xl md:text-2xl font-semibold leading-none")
            with ui.row().classes("items-center gap-1"):
                for key, label, path, permission in SECTIONS:
                    if not can(user, permission):
                        continue
                    props = "dense no-caps color=primary" + (" unelevated" if key == active_key else " flat")
                    ui.button(label, on_click=lambda p=path: ui.navigate.to(p)).props(props)

                if can(user, "config"):
                    cfg_props = "dense no-caps color=primary" + (" unelevated" if admin_active else " flat")
                    with ui.button("Admin", icon="settings").props(cfg_props):
                        with ui.menu().props("auto-close"):
                            ui.menu_item("Usuários", on_click=lambda: ui.navigate.to("/usuarios"))
                            ui.menu_item("Configuração", on_click=lambda: ui.navigate.to("/config"))
                            ui.menu_item("Backup", on_click=lambda: ui.navigate.to("/backup"))
                            ui.menu_item("Auditoria", on_click=lambda: ui.navigate.to("/audit"))

                if user:
                    with ui.button(icon="account_circle").props("flat round dense color=primary"):
                        with ui.menu().props("auto-close"):
                            ui.menu_item(f"{user['name']} ({user['role_id']})").props("disable")
                            ui.menu_item("Sair", on_click=logout_user)


def notify_error(ex: Exception) -> None:
    ui.notify(str(ex), color="negative")
