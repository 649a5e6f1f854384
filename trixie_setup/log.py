"""
Logging setup: Rich console output plus a persistent, rotated log file.
"""

import datetime
import gzip
import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from .console import console, print_warning

LOGGER_NAME = "trixie_setup"
DEFAULT_MAX_SIZE = 10 * 1024 * 1024


def rotate_log(log_file: Path, max_size: int = DEFAULT_MAX_SIZE) -> Optional[Path]:
    """
    Compress the log file into a timestamped .gz when it exceeds max_size.

    Args:
        log_file: Active log file
        max_size: Size in bytes above which the file is rotated

    Returns:
        Path to the rotated archive, or None if no rotation happened
    """
    if not log_file.exists() or log_file.stat().st_size <= max_size:
        return None
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    rotated = log_file.with_name(f"{log_file.name}.{ts}.gz")
    with (
        open(log_file, "rb") as fin,
        gzip.open(rotated, "wb") as fout,
    ):
        shutil.copyfileobj(fin, fout)
    open(log_file, "w").close()
    return rotated


def setup_logger(
    log_file: Optional[Union[str, Path]] = None,
    verbose: bool = False,
    max_size: int = DEFAULT_MAX_SIZE,
) -> logging.Logger:
    """
    Configure the ``trixie_setup`` logger with Rich formatting and file logging.

    Args:
        log_file: Path to the log file; None for console-only logging
        verbose: Show debug messages on the console
        max_size: Rotate the log file above this size in bytes

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_path=False,
    )
    rich_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(rich_handler)

    if log_file is None:
        return logger

    log_path = Path(log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotated = rotate_log(log_path, max_size)
        if rotated is not None:
            console.print(f"Rotated log file to [path]{rotated}[/path]")
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)s | %(name)s | %(message)s", "%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(file_handler)
        os.chmod(log_path, 0o600)
    except OSError as e:
        print_warning(f"Could not set up file logging to {log_path}: {e}")

    logger.debug("Logging initialized: %s", log_path)
    return logger
