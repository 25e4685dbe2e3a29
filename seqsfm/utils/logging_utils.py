"""
seqsfm/utils/logging_utils.py

Logger setup and stage timing shared by the engine and its stages.
"""

import logging
import time
from contextlib import contextmanager

LOG_FORMAT = "[%(levelname)s] %(message)s"


def make_logger(name: str = "seqsfm", level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(h)
    logger.setLevel(level)
    return logger


def log_block(logger: logging.Logger, title: str, body: str, level: int = logging.DEBUG) -> None:
    """Log a multi-line report (e.g. a histogram) one line per record under a title."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, title)
    for line in body.splitlines():
        logger.log(level, f"  {line}")


@contextmanager
def timed(logger: logging.Logger, msg: str, level: int = logging.INFO):
    t0 = time.perf_counter()
    logger.log(level, f"{msg} ...")
    yield
    logger.log(level, f"{msg} done in {time.perf_counter() - t0:.2f}s")
