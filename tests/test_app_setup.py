from __future__ import annotations

import logging
from pathlib import Path

from opboard.logging_conf import configure_logging
from opboard.settings import Settings, default_db_path


def test_default_db_path_is_repo_local():
    assert default_db_path() == Path("db") / "opboard.db"
    settings = Settings(db_path=default_db_path())
    assert (settings.host, settings.port, settings.log_level) == ("0.0.0.0", 8080, "INFO")


def test_configure_logging_installs_single_handler():
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    try:
        assert configure_logging("debug") == logging.DEBUG
        configure_logging("warning")
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
        assert configure_logging("verbose") == logging.INFO
    finally:
        root.handlers[:] = saved[1]
        root.setLevel(saved[0])


def test_cli_arguments():
    from opboard.app import build_arg_parser

    args = build_arg_parser().parse_args(["--port", "9000", "--db", "x/y.db", "--log-level", "DEBUG"])
    assert args.port == 9000
    assert args.db == Path("x/y.db")
    assert args.log_level == "DEBUG"
