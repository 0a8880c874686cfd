"""
Logging for ledgerstore entry points.

Library modules only call logging.getLogger("ledgerstore.<module>").
Handlers are attached once, by the entry point, to the "ledgerstore" logger:
the rotating file gets everything at LOG_LEVEL, the console only what an
operator needs to see while a command runs (LOG_CONSOLE_LEVEL).
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from . import config as cfg

LevelLike = Union[int, str]


def resolve_level(value: LevelLike, default: int = logging.INFO) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(
    name: str = "ledgerstore",
    level: Optional[LevelLike] = None,
    log_dir: Optional[Path] = None,
    console_level: Optional[LevelLike] = None,
) -> logging.Logger:
    logger = logging.getLogger(name)
    file_level = resolve_level(cfg.LOG_LEVEL if level is None else level)
    logger.setLevel(file_level)

    # Already configured: only the file level follows the new request
    if logger.handlers:
        for handler in logger.handlers:
            if isinstance(handler, RotatingFileHandler):
                handler.setLevel(file_level)
        return logger

    log_dir = Path(log_dir) if log_dir else cfg.LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_dir / f"{name}.log",
        maxBytes=cfg.LOG_MAX_BYTES,
        backupCount=cfg.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    console = logging.StreamHandler()
    console_at = resolve_level(cfg.LOG_CONSOLE_LEVEL if console_level is None else console_level, logging.WARNING)

    for handler, handler_level in ((file_handler, file_level), (console, console_at)):
        handler.setFormatter(fmt)
        handler.setLevel(handler_level)
        logger.addHandler(handler)

    for driver in ("asyncio", "aiosqlite", "asyncpg"):
        logging.getLogger(driver).setLevel(logging.WARNING)

    return logger
