import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from padel_bot.config import Config

# Every module logger lives under this name so services that only call
# logging.getLogger(__name__) share the same handlers.
PACKAGE_LOGGER = 'padel_bot'

def configure_logging(log_dir: Optional[Path] = None) -> logging.Logger:
    """
    (Re)attach console and daily file handlers to the package logger.

    Args:
        log_dir: Directory for the daily log file (default Config.LOG_DIR)

    Returns:
        The package logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    # Set log level based on debug setting
    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    package_logger.setLevel(log_level)
    package_logger.propagate = False

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if Config.LOG_TO_FILE:
        log_dir = Path(log_dir or Config.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        # One file per day, e.g. logs/padel_settlement_20250101.log
        file_handler = logging.FileHandler(
            log_dir / f'{Config.LOG_FILE_PREFIX}_{datetime.now().strftime("%Y%m%d")}.log',
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger

def setup_logger(name: str) -> logging.Logger:
    """Logger for a module, attached to the shared package handlers"""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not package_logger.handlers:
        configure_logging()

    if name != PACKAGE_LOGGER and not name.startswith(f'{PACKAGE_LOGGER}.'):
        name = f'{PACKAGE_LOGGER}.{name}'
    return logging.getLogger(name)
