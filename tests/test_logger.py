import logging
from datetime import datetime

import pytest

from padel_bot.config import Config
from padel_bot.utils.logger import PACKAGE_LOGGER, configure_logging, setup_logger


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "LOG_FILE_PREFIX", "settlement_test")
    monkeypatch.setattr(Config, "LOG_TO_FILE", True)
    yield tmp_path / "logs"
    monkeypatch.setattr(Config, "LOG_TO_FILE", False)
    configure_logging()


def test_daily_file_uses_configured_prefix(log_dir):
    configure_logging(log_dir)

    setup_logger("padel_bot.services.expiry_processor").info("sweep finished")

    log_file = log_dir / f"settlement_test_{datetime.now().strftime('%Y%m%d')}.log"
    for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
        handler.flush()
    assert "sweep finished" in log_file.read_text(encoding="utf-8")


def test_module_loggers_share_package_handlers(log_dir):
    configure_logging(log_dir)
    handlers = list(logging.getLogger(PACKAGE_LOGGER).handlers)

    assert setup_logger("padel_bot.cogs.settlement").name == "padel_bot.cogs.settlement"
    assert setup_logger("__main__").name == "padel_bot.__main__"
    assert logging.getLogger(PACKAGE_LOGGER).handlers == handlers
    assert len(handlers) == 2


def test_reconfiguring_does_not_stack_handlers(log_dir, monkeypatch):
    configure_logging(log_dir)
    monkeypatch.setattr(Config, "LOG_TO_FILE", False)

    configure_logging(log_dir)

    assert len(logging.getLogger(PACKAGE_LOGGER).handlers) == 1
