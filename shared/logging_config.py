"""
Logging for TimeBar.

Each part of the app logs under its own component tag:

- ``CLIENT``: configuration, credentials and the launcher
- ``SYNC``: polling, timer actions, capability probes and stop wizards
- ``TRANSPORT``: requests sent to Odoo
- ``API``: the local control API and its Waitress server

Console output is coloured by level. ``configure_logging`` adds one shared
log file per run, including to loggers created at import time.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from termcolor import colored

from shared.utils import get_data_path

COMPONENTS = ("CLIENT", "SYNC", "TRANSPORT", "API")
LOGGER_PREFIX = "timebar"

# Third-party loggers shown under a TimeBar component tag
FOREIGN_LOGGERS = {
    'waitress': "API",
}

LEVEL_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'magenta',
}

_run_log_file: Optional[Path] = None


class TimeBarFormatter(logging.Formatter):
    """``[time] [COMPONENT] [LEVEL] message``, coloured on a terminal"""

    def __init__(self, component: str, use_colors: bool = True):
        super().__init__(fmt='[%(asctime)s] [%(component)s] [%(levelname)s] %(message)s',
                         datefmt='%Y-%m-%d %H:%M:%S')
        self.component = component
        # sys.stdout is None in frozen builds without a console
        try:
            self.use_colors = bool(use_colors and sys.stdout and sys.stdout.isatty())
        except (AttributeError, OSError):
            self.use_colors = False

    def format(self, record):
        record.component = self.component
        formatted = super().format(record)
        if self.use_colors:
            return colored(formatted, LEVEL_COLORS.get(record.levelname, 'white'))
        return formatted


def _logger_name(component: str) -> str:
    return f"{LOGGER_PREFIX}.{component.lower()}"


def _has_file_handler(logger: logging.Logger) -> bool:
    return any(isinstance(handler, logging.FileHandler) for handler in logger.handlers)


def _run_log_path() -> Path:
    """The log file shared by every component for this run"""
    global _run_log_file
    if _run_log_file is None:
        log_dir = get_data_path('logs')
        log_dir.mkdir(parents=True, exist_ok=True)
        _run_log_file = log_dir / f"timebar_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.log"
    return _run_log_file


def _attach_file(logger: logging.Logger, component: str) -> None:
    if _has_file_handler(logger):
        return
    try:
        file_handler = logging.FileHandler(_run_log_path(), encoding='utf-8')
    except OSError as e:
        logger.warning(f"Could not open log file: {e}")
        return
    file_handler.setFormatter(TimeBarFormatter(component, use_colors=False))
    logger.addHandler(file_handler)


def setup_logging(component: str, level: str = "INFO", log_to_file: bool = False) -> logging.Logger:
    """Return the logger of a component, adding its handlers on first use.

    A later call with ``log_to_file`` still adds the run log file to a logger
    that was first created console-only.
    """
    logger = logging.getLogger(_logger_name(component))
    if not logger.handlers:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        console_handler = logging.StreamHandler(sys.stdout or sys.stderr)
        console_handler.setFormatter(TimeBarFormatter(component))
        logger.addHandler(console_handler)

    if log_to_file:
        _attach_file(logger, component)
    return logger


def configure_logging(level: str = "INFO", log_to_file: bool = True) -> None:
    """Set up every component, and the third-party loggers mapped onto them, for a run"""
    for component in COMPONENTS:
        setup_logging(component, level, log_to_file)
    for name, component in FOREIGN_LOGGERS.items():
        foreign = logging.getLogger(name)
        foreign.handlers = list(logging.getLogger(_logger_name(component)).handlers)
        foreign.propagate = False
    set_log_level(level)


def get_logger(component: str) -> logging.Logger:
    return setup_logging(component)


def get_client_logger() -> logging.Logger:
    return get_logger("CLIENT")


def get_sync_logger() -> logging.Logger:
    return get_logger("SYNC")


def get_transport_logger() -> logging.Logger:
    return get_logger("TRANSPORT")


def get_api_logger() -> logging.Logger:
    return get_logger("API")


def set_log_level(level: str):
    """Set the level of every TimeBar logger and handler"""
    level_obj = getattr(logging, level.upper(), logging.INFO)
    names = [_logger_name(component) for component in COMPONENTS] + list(FOREIGN_LOGGERS)
    for name in names:
        logger = logging.getLogger(name)
        logger.setLevel(level_obj)
        for handler in logger.handlers:
            handler.setLevel(level_obj)
