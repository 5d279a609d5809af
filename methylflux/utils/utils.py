import logging
import sys
import time
from contextlib import contextmanager
from functools import wraps
from typing import Callable

import numpy as np

logger = logging.getLogger("methylflux")

if not logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s",
                                            datefmt="%H:%M:%S"))
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

_INDENT = {"level": 0}


def _prefix(msg: str) -> str:
    return "  " * _INDENT["level"] + msg


def log_info(msg: str) -> None:
    logger.info(_prefix(msg))


def log_warning(msg: str) -> None:
    logger.warning(_prefix(msg))


@contextmanager
def log_indent(step: int = 1):
    """Indent every log line emitted inside the block."""
    _INDENT["level"] += step
    try:
        yield
    finally:
        _INDENT["level"] -= step


def log_time(label: str) -> Callable:
    """Decorator logging start and elapsed wall time of a pipeline step."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{label}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{label} done in {time.perf_counter() - start:.2f}s")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df, index_col: str = "INDEX"):
    """Split a wide polars frame into (float matrix, index values); (None, None) for None."""
    if df is None:
        return None, None
    index = df.select(index_col).to_series().to_list()
    mat = df.drop(index_col).to_numpy().astype(np.float64)
    return mat, index
