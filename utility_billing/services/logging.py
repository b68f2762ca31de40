"""Logging for the billing API server.

Records go to stdout and to ``Settings.log_file``. ``LOG_LEVEL`` sets the
overall level; ``LOG_LEVELS`` raises or lowers single loggers, which is how
per-bill penalty detail is switched on without flooding the rest::

    LOG_LEVELS='{"utility_billing.services.penalty_service": "DEBUG"}'

SQL statements only show with ``DATABASE_ECHO`` and request lines from
uvicorn are kept at WARNING; payments are already logged with their reference.
"""

import logging
import sys
from pathlib import Path

from utility_billing.config import Settings

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_level(name: str, default: int = logging.INFO) -> int:
    """Level constant for ``name`` ("debug", "WARNING", ...), or ``default``."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def quiet_loggers(settings: Settings) -> dict[str, int]:
    """Levels for third-party loggers that are too chatty at INFO."""
    return {
        "sqlalchemy.engine": logging.INFO if settings.database_echo else logging.WARNING,
        "aiosqlite": logging.WARNING,
        "uvicorn.access": logging.WARNING,
    }


def configure_logging(settings: Settings) -> int:
    """Install the stdout and file handlers on the root logger.

    Safe to call again; earlier handlers are replaced. Returns the root level.
    """
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    level = parse_level(settings.log_level)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    for handler in (logging.StreamHandler(sys.stdout), logging.FileHandler(log_path)):
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    levels = quiet_loggers(settings)
    levels.update({name: parse_level(value, level) for name, value in settings.log_levels.items()})
    for name, logger_level in levels.items():
        logging.getLogger(name).setLevel(logger_level)

    return level
