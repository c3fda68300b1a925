"""Utility functions for the permutation FDR pipeline."""

import logging
import os
from pathlib import Path
from typing import Optional


def setup_logging(log_dir=None, level=logging.INFO):
    """Set up logging configuration.

    Args:
        log_dir: Directory to store log files
        level: Logging level

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'pipeline.log'

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        # Write immediately so the log file exists even for short runs
        root_logger.info("Logging initialized")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    return logging.getLogger('permgsea')


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def available_workers(requested: Optional[int] = None) -> int:
    """Number of trial workers to use.

    One CPU is kept free for the coordinating process, so the result is
    capped at ``cpu_count - 1`` and never drops below 1.

    Args:
        requested: Worker count asked for in the configuration, if any

    Returns:
        Worker count to use
    """
    limit = max(1, (os.cpu_count() or 1) - 1)
    if requested is None:
        return limit
    return max(1, min(int(requested), limit))
