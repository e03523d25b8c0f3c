from __future__ import annotations

import logging
from unittest.mock import MagicMock

from darkroom.logging_utils import _max_rss_mb, get_logger, log_memory_usage, setup_logging


def test_setup_logging_default():
    logger = setup_logging()
    assert isinstance(logger, logging.Logger)
    assert logger.name == "darkroom"
    assert logger.propagate is False
    assert len(logger.handlers) == 1
    assert logger.handlers[0].level == logging.INFO


def test_setup_logging_verbose():
    logger = setup_logging(verbose=True)
    assert logger.handlers[0].level == logging.DEBUG


def test_setup_logging_is_idempotent():
    setup_logging()
    logger = setup_logging()
    assert len(logger.handlers) == 1
    assert get_logger() is logger


def test_max_rss_is_positive():
    rss = _max_rss_mb()
    assert rss is None or rss > 0


def test_log_memory_usage():
    logger = MagicMock()
    log_memory_usage(logger, "start")
    if _max_rss_mb() is not None:
        msg = logger.info.call_args[0][0]
        assert msg.startswith("Memory usage [start]")
