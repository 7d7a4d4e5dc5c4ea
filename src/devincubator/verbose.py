"""Per-run logging: every run keeps a full debug.log, the terminal gets it on request."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

FILE_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
CONSOLE_FORMAT = "%(levelname)-7s %(message)s"


def setup_logger(
    debug_file: Path,
    verbose: bool = False,
    logger_name: str = "devincubator",
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure and return the logger for one run.

    The debug file receives everything, including the output of every
    external command. With ``verbose`` the same records are mirrored to
    *stream* (stderr by default) so outcome lines on stdout stay greppable.

    Calling this again for the same ``logger_name`` replaces the previous
    handlers, so consecutive runs in one process do not log into each
    other's run directory.
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    logger.disabled = False
    logger.propagate = False
    logger.setLevel(logging.DEBUG)

    debug_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(debug_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    )
    logger.addHandler(file_handler)

    if verbose:
        console = logging.StreamHandler(stream or sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT))
        logger.addHandler(console)

    return logger
