#!/usr/bin/env python3
"""
Logging setup for clusterscaler

The cluster pass runs on the executor thread and the job pass on the loop
thread, so every line carries the thread name.
"""

import logging
import sys
from typing import Optional
from pathlib import Path

# Kubernetes, Docker and Redis clients log every request at DEBUG/INFO
CLIENT_LOGGERS = ("requests", "urllib3", "docker", "kubernetes", "redis")

CONSOLE_FORMAT = "%(asctime)s [%(threadName)s] %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = ("%(asctime)s [%(threadName)s] %(name)s - %(levelname)s - "
               "%(module)s:%(funcName)s:%(lineno)d - %(message)s")


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        # The file handler formats the same record
        record = logging.makeLogRecord(record.__dict__)
        levelcolor = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        record.levelname = f"{levelcolor}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    enable_colors: bool = True
) -> None:
    """
    Route all clusterscaler logging to stdout and, optionally, a file

    Replaces any handlers already on the root logger, so it is called once
    from the service bootstrap.

    Args:
        level: Level name for clusterscaler loggers (DEBUG, INFO, ...)
        log_file: Path of an additional plain-text log file
        enable_colors: Colour level names on the console
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        ColoredFormatter(CONSOLE_FORMAT) if enable_colors else logging.Formatter(CONSOLE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level} level"
                + (f", writing to {log_file}" if log_file else ""))


def get_logger(name: str) -> logging.Logger:
    """Logger for a clusterscaler module"""
    return logging.getLogger(name)


def log_section(logger: logging.Logger, title: str, width: int = 60) -> None:
    """Log a framed header, used to mark the start of each scaling tick"""
    logger.info("=" * width)
    logger.info(title.center(width))
    logger.info("=" * width)
