"""
Logging setup for Traq.

Every component logs under the ``traq`` logger (``traq.client``,
``traq.sync``, ``traq.server``). Handlers live on ``traq`` only, so the
console and the optional log file are configured once per process no matter
which component asks first.

Environment:
    TRAQ_LOG_LEVEL    level name for all Traq loggers (default INFO)
    TRAQ_LOG_TO_FILE  1/true/yes to also write logs/traq.log in the data dir
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from termcolor import colored

from shared.utils import get_data_path

ROOT_LOGGER_NAME = 'traq'
LOG_FILE_NAME = 'traq.log'
LOG_FILE_MAX_BYTES = 1024 * 1024
LOG_FILE_BACKUPS = 3


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


class TraqFormatter(logging.Formatter):
    """[time] [COMPONENT] [LEVEL] message, colored by level on a terminal.

    The component is the logger name below ``traq``, so one formatter serves
    every component.
    """

    LEVEL_COLORS = {
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'magenta'
    }

    def __init__(self, use_colors: bool = True):
        # sys.stdout can be None when running without a console
        try:
            self.use_colors = bool(use_colors and sys.stdout and sys.stdout.isatty())
        except (AttributeError, OSError, ValueError):
            self.use_colors = False
        super().__init__(
            fmt='[%(asctime)s] [%(component)s] [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record):
        prefix = f"{ROOT_LOGGER_NAME}."
        name = record.name[len(prefix):] if record.name.startswith(prefix) else record.name
        record.component = name.upper()

        formatted = super().format(record)
        if self.use_colors:
            return colored(formatted, self.LEVEL_COLORS.get(record.levelname, 'white'))
        return formatted


def setup_logging(level=None, log_to_file=None) -> logging.Logger:
    """Configure the ``traq`` logger once and return it.

    Arguments left as None are read from TRAQ_LOG_LEVEL / TRAQ_LOG_TO_FILE.
    Later calls return the already configured logger unchanged.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if root.handlers:
        return root

    if level is None:
        level = os.environ.get('TRAQ_LOG_LEVEL', 'INFO')
    if log_to_file is None:
        log_to_file = _env_flag('TRAQ_LOG_TO_FILE')

    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.propagate = False

    console_handler = logging.StreamHandler(sys.stdout or sys.stderr)
    console_handler.setFormatter(TraqFormatter())
    root.addHandler(console_handler)

    if log_to_file:
        try:
            log_dir = get_data_path('logs')
            log_dir.mkdir(exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / LOG_FILE_NAME,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding='utf-8'
            )
            file_handler.setFormatter(TraqFormatter(use_colors=False))
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not set up file logging: {e}")

    return root


def get_logger(component: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.lower()}")


def get_client_logger() -> logging.Logger:
    return get_logger("CLIENT")


def get_server_logger() -> logging.Logger:
    return get_logger("SERVER")


def get_sync_logger() -> logging.Logger:
    """Logger for queueing, connectivity and replay"""
    return get_logger("SYNC")


def set_log_level(level: str):
    """Change the level of every Traq logger at runtime"""
    setup_logging().setLevel(getattr(logging, level.upper(), logging.INFO))


def enable_debug_logging():
    set_log_level("DEBUG")
