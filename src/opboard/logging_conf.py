import logging
import sys

# Third-party loggers that flood stdout at INFO.
NOISY_LOGGERS = ("uvicorn.access", "watchfiles", "multipart")


def configure_logging(level: str = "INFO") -> int:
    """Install a single stdout handler on the root logger; returns the numeric level."""
    numeric_level = logging.getLevelName(str(level or "INFO").upper())
    bad_level = not isinstance(numeric_level, int)
    if bad_level:
        numeric_level = logging.INFO

    # e.g. "2026-03-02 14:05:11 [INFO] opboard.production.service: KANBAN: Moved 'Corte' of OP-1a2b3c4d5"
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Reloads would otherwise stack handlers.
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if bad_level:
        logging.getLogger(__name__).warning("Invalid log level %r, defaulting to INFO", level)
    return numeric_level
