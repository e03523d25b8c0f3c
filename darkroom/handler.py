"""
AWS Lambda entry point: darkroom.handler.lambda_handler.

Configuration, logging and the S3 client are built once per warm container
and reused across invocations.
"""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

from .aws_boto3 import S3Store
from .config import Config, load_config
from .logging_utils import setup_logging
from .pipeline import run_pipeline


@lru_cache(maxsize=1)
def _runtime() -> tuple[Config, S3Store, logging.Logger]:
    cfg = load_config()
    logger = setup_logging(verbose=cfg.detailed_logging)
    logger.info(f"Configuration: {json.dumps(cfg.summary(), sort_keys=True)}")
    return cfg, S3Store(), logger


def lambda_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    cfg, store, logger = _runtime()
    request_id = getattr(context, "aws_request_id", None)
    if request_id:
        logger.info(f"Request: {request_id}")
    return run_pipeline(event, cfg=cfg, store=store, logger=logger)
