"""
Process-aware logging for shard groups.

Every process of a distributed run logs through the root logger configured here. Records
carry the process rank; non-main ranks only print warnings and errors to the console so
the main process output stays readable, while a log file (when given) keeps everything.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional


DEFAULT_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s: %(message)s'
RANK_FORMAT = '%(asctime)s | %(levelname)-8s | [rank %(rank)d] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class Colors:
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Console formatter that colors the level name by severity."""

    COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD_RED,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record):
        # The file handler formats the same record; color a copy only.
        if self.use_colors and record.levelno in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelno]}{record.levelname}{Colors.RESET}"
        return super().format(record)


class RankFilter(logging.Filter):
    """Stamp every record with the process rank as `record.rank`."""

    def __init__(self, rank: int) -> None:
        super().__init__()
        self.rank = int(rank)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None,
    rank: Optional[int] = None,
) -> None:
    """
    Configure the root logger for one training process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file, appended to
        use_colors: Enable color-coded console output
        log_format: Custom format string; defaults include the rank when `rank` is given
        rank: Process rank. Ranks other than 0 print only warnings and above to the console
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format is None:
        log_format = DEFAULT_FORMAT if rank is None else RANK_FORMAT
        date_format: Optional[str] = DATE_FORMAT
    else:
        date_format = None

    console_level = level
    if rank is not None and rank != 0:
        console_level = max(level, logging.WARNING)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors))
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    for handler in handlers:
        if rank is not None:
            handler.addFilter(RankFilter(rank))
        root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Named logger for a module: `logger = get_logger(__name__)`."""
    return logging.getLogger(name)


_EMITTED_ONCE: set[tuple[str, int, str]] = set()
_EMITTED_ONCE_LOCK = threading.Lock()


def log_once(logger: logging.Logger, level: int, msg: str, *args) -> bool:
    """
    Emit `msg` through `logger` only the first time this (logger, level, msg) is seen.

    The key uses the unformatted message, so the same template with different arguments
    is still emitted once. Returns whether the record was emitted.
    """
    key = (logger.name, level, msg)
    with _EMITTED_ONCE_LOCK:
        if key in _EMITTED_ONCE:
            return False
        _EMITTED_ONCE.add(key)
    logger.log(level, msg, *args)
    return True
