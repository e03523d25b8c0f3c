from __future__ import annotations

import logging
import sys


def setup_logging(*, verbose: bool = False) -> logging.Logger:
    """
    Set up logging for darkroom.

    Args:
        verbose: If True, show DEBUG level logs. If False (default), only show INFO and above.
    """
    logger = logging.getLogger("darkroom")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    logger.propagate = False
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger("darkroom")


def _max_rss_mb() -> float | None:
    try:
        import resource
    except ImportError:
        return None
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes on Linux
    if sys.platform == "darwin":
        return round(rss / 1024 / 1024, 2)
    return round(rss / 1024, 2)


def log_memory_usage(logger: logging.Logger, phase: str) -> None:
    rss = _max_rss_mb()
    if rss is None:
        return
    logger.info(f"Memory usage [{phase}]: peak RSS {rss}MB")
