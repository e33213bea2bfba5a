import logging
import sys
import time
from contextlib import contextmanager
from functools import wraps

logger = logging.getLogger("deflux")

_INDENT = {"level": 0}


def _prefix() -> str:
    return "  " * _INDENT["level"]


def log_info(msg: str) -> None:
    logger.info(f"{_prefix()}{msg}")


def log_warning(msg: str) -> None:
    logger.warning(f"{_prefix()}{msg}")


def log_error(msg: str) -> None:
    logger.error(f"{_prefix()}{msg}")


@contextmanager
def log_indent():
    """Indent every log line emitted inside the block by one level."""
    _INDENT["level"] += 1
    try:
        yield
    finally:
        _INDENT["level"] -= 1


def log_time(step: str):
    """Decorator logging the start and wall time of a pipeline step."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            log_info(f"{step}...")
            start = time.perf_counter()
            with log_indent():
                out = fn(*args, **kwargs)
            log_info(f"{step} done in {time.perf_counter() - start:.2f}s")
            return out
        return wrapper
    return decorator


def setup_logging(level: int = logging.INFO) -> None:
    """Attach a single stdout handler to the package logger."""
    if logger.handlers:
        logger.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)

