from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from nicegui import app, ui

from opboard.data.db import Db
from opboard.data.repository import Repository
from opboard.logging_conf import configure_logging
from opboard.settings import Settings, default_db_path
from opboard.ui.pages import register_pages


logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Opboard - controle de produção")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--db", type=Path, default=None, help="Arquivo SQLite (padrão: db/opboard.db)")
    parser.add_argument("--log-level", type=str, default=os.environ.get("OPBOARD_LOG_LEVEL", "INFO"))
    parser.add_argument(
        "--storage-secret",
        type=str,
        default=os.environ.get("OPBOARD_STORAGE_SECRET", "opboard-dev-secret"),
        help="Chave usada para assinar o cookie de sessão",
    )
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = Settings(
        db_path=args.db or default_db_path(),
        host=args.host,
        port=args.port,
        storage_secret=args.storage_secret,
        log_level=args.log_level,
    )
    configure_logging(settings.log_level)

    db = Db(settings.db_path)
    db.ensure_schema()
    logger.info("Database ready at %s", settings.db_path)

    repo = Repository(db)
    repo.users.seed_admin_if_empty(
        email=os.environ.get("SEED_ADMIN_EMAIL"),
        password=os.environ.get("SEED_ADMIN_PASSWORD"),
        name=os.environ.get("SEED_ADMIN_NAME") or "Administrador",
    )
    title = repo.get_config(key="empresa", default=settings.title) or settings.title
    register_pages(repo)

    assets_dir = Path(__file__).resolve().parents[2] / "assets"
    if assets_dir.exists():
        app.add_static_files("/assets", str(assets_dir))

    if sys.platform == "win32":
        @app.on_startup
        async def _silence_windows_connection_reset() -> None:
            loop = asyncio.get_running_loop()

            def _handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
                exc = context.get("exception")
                if isinstance(exc, ConnectionResetError) and getattr(exc, "winerror", None) == 10054:
                    return
                loop.default_exception_handler(context)

            loop.set_exception_handler(_handler)

    ui.run(
        host=settings.host,
        port=settings.port,
        title=title,
        storage_secret=settings.storage_secret,
        reload=False,
    )


if __name__ in {"__main__", "__mp_main__"}:
    main()
