from __future__ import annotations

import time
import traceback
from typing import Any

from .duplicates import DuplicateResolution, DuplicateVerdict
from .errors import Phase, SkipJob, categorize


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def success_response(
    *,
    base_name: str,
    original_key: str,
    source_bucket: str,
    destination_bucket: str,
    processed_files: list[str],
    metadata_path: str,
    metrics: dict[str, Any],
    verdict: DuplicateVerdict | None = None,
    resolution: DuplicateResolution | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "status": "success",
        "baseName": base_name,
        "originalKey": original_key,
        "sourceBucket": source_bucket,
        "destinationBucket": destination_bucket,
        "processedFiles": list(processed_files),
        "metadataPath": metadata_path,
        "processingMetrics": dict(metrics),
    }
    if verdict is not None and verdict.is_duplicate and resolution is not None:
        out["duplicate"] = {**verdict.to_dict(), "action": resolution.action}
    return out


def skipped_response(skip: SkipJob, *, original_key: str | None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "status": "skipped",
        "reason": skip.reason,
        "originalKey": original_key,
        "message": str(skip),
    }
    # context keys override the defaults above
    out.update(skip.context)
    return out


def error_response(
    exc: BaseException,
    *,
    phase: Phase,
    original_key: str | None,
    started: float,
    detailed: bool = False,
) -> dict[str, Any]:
    """Classify a failure caught at the top of the pipeline into the error contract."""
    category, failed_phase = categorize(exc, phase)
    out: dict[str, Any] = {
        "status": "error",
        "error": str(exc) or type(exc).__name__,
        "errorType": type(exc).__name__,
        "errorCategory": category,
        "processingPhase": failed_phase.value,
        "originalKey": original_key,
        "processingTimeMs": _elapsed_ms(started),
    }
    cause = exc.__cause__
    if cause is not None:
        out["cause"] = f"{type(cause).__name__}: {cause}"
    if detailed:
        out["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return out
