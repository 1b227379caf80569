#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logging helpers shared by the workflow runner.

Human-readable INFO goes to stderr; a DEBUG log with timestamps goes to
``<out_dir>/logs/run_debug.log`` for batch runs on HPC/GPFS.
"""

from __future__ import annotations

import logging
import os
import resource
import sys
import time
from pathlib import Path
from typing import Optional

import psutil

LOGGER_NAME = "q2_workflow"

# Wall-clock start for runtime/elapsed logging
_SCRIPT_START_TIME = time.time()


def setup_logging(*, out_dir: Path, run_label: str) -> logging.Logger:
    """
    Configure logging to both stderr (human) and a file (machine).

    Parameters
    ----------
    out_dir : pathlib.Path
        The run's output directory; the log lands in ``logs/run_debug.log``.
    run_label : str
        Identifier for the run; used in the opening banner.

    Returns
    -------
    logging.Logger
        Configured logger instance ('q2_workflow').
    """
    log_dir = Path(out_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "run_debug.log"

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    for h in list(logger.handlers):
        h.close()
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    file_handler = logging.FileHandler(filename=log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    logger.info("Run label: %s", run_label)
    logger.info("Output directory: %s", Path(out_dir).resolve())
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    return logger


def get_logger() -> logging.Logger:
    """Return the runner logger (unconfigured loggers fall back to root handlers)."""
    return logging.getLogger(LOGGER_NAME)


def script_start_time() -> float:
    """Return the wall-clock time (epoch seconds) at which the run started."""
    return _SCRIPT_START_TIME


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: Optional[str] = None,
) -> None:
    """
    Log the current and peak resident set size, plus elapsed time.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    prefix : str
        Optional prefix (e.g., 'START', 'END').
    extra_msg : str | None
        Optional extra text appended to the log message.
    """
    cur_gb = psutil.Process(os.getpid()).memory_info().rss / (1024 ** 3)

    # ru_maxrss is KB on Linux, bytes on macOS
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        peak_gb = peak / (1024 ** 3)
    else:
        peak_gb = peak / (1024 ** 2)

    elapsed_min = max(0.0, time.time() - _SCRIPT_START_TIME) / 60.0

    parts = []
    if prefix:
        parts.append(prefix.strip())
    parts.append(f"RAM: {cur_gb:.2f} GB")
    parts.append(f"Peak: {peak_gb:.2f} GB")
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)
    logger.info(" | ".join(parts))
