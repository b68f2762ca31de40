"""Tests for server logging setup."""

import logging

import pytest

from utility_billing.config import Settings
from utility_billing.services.logging import configure_logging, parse_level

PENALTY_LOGGER = "utility_billing.services.penalty_service"
TOUCHED = ["", "sqlalchemy.engine", "aiosqlite", "uvicorn.access", PENALTY_LOGGER]


@pytest.fixture(autouse=True)
def restore_logging():
    """Put back the root handlers and logger levels pytest started with."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    levels = {name: logging.getLogger(name).level for name in TOUCHED}
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


def settings_for(tmp_path, **overrides) -> Settings:
    return Settings(log_file=str(tmp_path / "logs" / "server.log"), **overrides)


def read_log(tmp_path) -> str:
    for handler in logging.getLogger().handlers:
        handler.flush()
    return (tmp_path / "logs" / "server.log").read_text()


def test_payment_line_written_to_file(tmp_path):
    configure_logging(settings_for(tmp_path))

    logging.getLogger("utility_billing.services.payment_service").info(
        "Recorded payment %s for unit %s", "rcpt-1", "101"
    )

    line = read_log(tmp_path).strip()
    assert line.endswith(
        "utility_billing.services.payment_service - INFO - Recorded payment rcpt-1 for unit 101"
    )
    assert line.startswith("[")


def test_reconfiguring_replaces_handlers(tmp_path):
    configure_logging(settings_for(tmp_path))
    configure_logging(settings_for(tmp_path))

    assert len(logging.getLogger().handlers) == 2


@pytest.mark.parametrize(
    "name,expected",
    [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        (" error ", logging.ERROR),
        ("verbose", logging.INFO),
    ],
)
def test_parse_level(name, expected):
    assert parse_level(name) == expected


def test_root_level_from_settings(tmp_path):
    level = configure_logging(settings_for(tmp_path, log_level="warning"))

    assert level == logging.WARNING
    assert logging.getLogger().level == logging.WARNING


def test_single_logger_raised_to_debug(tmp_path):
    configure_logging(settings_for(tmp_path, log_levels={PENALTY_LOGGER: "DEBUG"}))

    logging.getLogger(PENALTY_LOGGER).debug("Penalty for unit %s: %s", "101", "$5.00")
    logging.getLogger("utility_billing.services.credit_service").debug("Credit detail")

    content = read_log(tmp_path)
    assert "Penalty for unit 101: $5.00" in content
    assert "Credit detail" not in content


@pytest.mark.parametrize("echo,expected", [(False, logging.WARNING), (True, logging.INFO)])
def test_sql_logging_follows_database_echo(tmp_path, echo, expected):
    configure_logging(settings_for(tmp_path, database_echo=echo))

    assert logging.getLogger("sqlalchemy.engine").level == expected
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
