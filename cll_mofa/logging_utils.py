# -*- coding: utf-8 -*-
"""Logging setup shared by the CLI and the analysis pipeline."""
import os
import sys
import logging
from datetime import datetime

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'
DATE_FORMAT = '%H:%M:%S'


def setup_logging(log_dir=None, level=logging.INFO, name="cll_mofa") -> logging.Logger:
    """
    Configure the package logger with a stdout handler and, optionally, a
    timestamped log file in `log_dir`.

    Existing handlers on the logger are removed first, so calling this twice
    does not duplicate every line.
    """
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.hasHandlers():
        logger.handlers.clear()

    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_filename = f"{name}_{datetime.now():%Y%m%d_%H%M%S}.log"
        fh = logging.FileHandler(os.path.join(log_dir, log_filename))
        fh.setFormatter(formatter)
        logger.addHandler(fh)
        logger.info(f"Logging to {os.path.join(log_dir, log_filename)}")

    return logger


def log_section(logger, title):
    """Log a banner line for a pipeline section."""
    logger.info("=" * 80)
    logger.info(title)
    logger.info("=" * 80)
