"""
Heuristic duplicate detection against already-processed output.

Detection is best effort: there is no locking across invocations, and two
identical photos arriving at the same moment can both pass the check.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .events import Job
from .exif_utils import CaptureMetadata, format_timestamp
from .media import content_type_for
from .retry import RetryingTransport


SIZE_TOLERANCE_BYTES = 1024

REASON_EXACT_DIMENSIONS = "exact_match_exif_timestamp_camera_dimensions"
REASON_EXACT = "exact_match_exif_timestamp_camera"
REASON_SIZE_CAMERA = "size_camera_match_no_exif_comparison"

QUARANTINE_CACHE_CONTROL = "public, max-age=86400"


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    reason: str | None = None
    confidence: str | None = None
    matched_record: str | None = None
    matched_base_name: str | None = None
    matched_original: str | None = None
    scanned_count: int = 0
    search_prefix: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "isDuplicate": self.is_duplicate,
            "scannedCount": self.scanned_count,
        }
        if self.is_duplicate:
            out.update(
                {
                    "reason": self.reason,
                    "confidence": self.confidence,
                    "matchedRecord": self.matched_record,
                }
            )
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class DuplicateResolution:
    action: str
    location: str | None = None


def search_prefix(shot_at: datetime, *, output_prefix: str = "") -> str:
    """Date-bucketed listing prefix, e.g. photo-2024-01-15."""
    day = format_timestamp(shot_at)[:10]
    return f"{output_prefix}photo-{day}"


def _same_camera(a: Any, b: Any) -> bool:
    return str(a or "unknown").lower() == str(b or "unknown").lower()


def compare_record(
    existing: dict[str, Any],
    *,
    capture: CaptureMetadata,
    file_size: int,
) -> tuple[str, str] | None:
    """
    Score one processed record against the incoming photo.

    Returns (reason, confidence) on a match, None otherwise.
    """
    existing_size = existing.get("fileSizeBytes")
    if isinstance(existing_size, bool) or not isinstance(existing_size, (int, float)):
        return None
    if abs(existing_size - file_size) >= SIZE_TOLERANCE_BYTES:
        return None

    existing_capture = existing.get("captureMetadata")
    if capture.available and isinstance(existing_capture, dict):
        existing_ts = existing_capture.get("captureTimestamp")
        current_ts = capture.captured_at_iso
        if existing_ts and current_ts and existing_ts == current_ts:
            existing_camera = existing_capture.get("camera") or existing.get("camera")
            if _same_camera(existing_camera, capture.camera):
                dims = existing.get("originalDimensions") or {}
                if (
                    capture.width is not None
                    and capture.height is not None
                    and dims.get("width") == capture.width
                    and dims.get("height") == capture.height
                ):
                    return REASON_EXACT_DIMENSIONS, "high"
                return REASON_EXACT, "high"

    if _same_camera(existing.get("camera"), capture.camera):
        return REASON_SIZE_CAMERA, "medium"
    return None


def _base_name_from_key(key: str) -> str:
    name = key.rsplit("/", 1)[-1]
    return name[: -len(".json")] if name.endswith(".json") else name


def _original_path(record: dict[str, Any]) -> str | None:
    paths = record.get("renditionPaths")
    original = paths.get("original") if isinstance(paths, dict) else None
    return original if isinstance(original, str) and original else None


def find_duplicate(
    transport: RetryingTransport,
    *,
    bucket: str,
    capture: CaptureMetadata,
    shot_at: datetime,
    file_size: int,
    output_prefix: str = "",
    max_keys: int = 100,
    logger: logging.Logger | None = None,
) -> DuplicateVerdict:
    """
    Look for an already-processed copy of this photo among same-day records.

    The first qualifying candidate in listing order wins. Listing failures
    degrade to "not a duplicate"; unreadable candidates are skipped.
    """
    prefix = search_prefix(shot_at, output_prefix=output_prefix)
    if logger is not None:
        logger.info(f"Searching for duplicates with prefix: {prefix}")

    try:
        entries = transport.list(bucket, prefix, max_keys=max_keys)
    except Exception as e:
        if logger is not None:
            logger.warning(f"Duplicate check failed: {e}")
        return DuplicateVerdict(is_duplicate=False, search_prefix=prefix, error=str(e))

    candidates = [e for e in entries if e.key.endswith(".json")]
    if logger is not None:
        logger.info(f"Found {len(entries)} existing files from same date ({len(candidates)} records)")

    scanned = 0
    for entry in candidates:
        scanned += 1
        try:
            existing = json.loads(transport.get(bucket, entry.key).data)
        except Exception as e:
            if logger is not None:
                logger.warning(f"Failed to parse metadata for {entry.key}: {e}")
            continue
        if not isinstance(existing, dict):
            continue

        match = compare_record(existing, capture=capture, file_size=file_size)
        if match is None:
            continue
        reason, confidence = match
        if logger is not None:
            logger.info(f"Duplicate found: {entry.key} ({reason}, confidence={confidence})")
        return DuplicateVerdict(
            is_duplicate=True,
            reason=reason,
            confidence=confidence,
            matched_record=entry.key,
            matched_base_name=existing.get("baseName") or _base_name_from_key(entry.key),
            matched_original=_original_path(existing),
            scanned_count=scanned,
            search_prefix=prefix,
        )

    return DuplicateVerdict(is_duplicate=False, scanned_count=scanned, search_prefix=prefix)


def quarantine_key(filename: str, *, prefix: str, now: datetime) -> str:
    # duplicates/2025-09-20_03-23-33-DSCF8545.jpg
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
    return f"{prefix}{stamp}-{filename}"


def resolve_duplicate(
    transport: RetryingTransport,
    job: Job,
    verdict: DuplicateVerdict,
    *,
    action: str,
    quarantine_prefix: str,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> DuplicateResolution:
    """Apply the configured disposition to the source object of a detected duplicate."""
    now = now or datetime.now(timezone.utc)
    action = action.lower()

    if action == "replace":
        if logger is not None:
            logger.info(f"Replacing existing processed record for duplicate: {job.key}")
        transport.delete(job.source_bucket, job.key)
        return DuplicateResolution(action="replace", location=verdict.matched_record)

    if action == "delete":
        if logger is not None:
            logger.info(f"Deleting duplicate file: {job.key}")
        transport.delete(job.source_bucket, job.key)
        return DuplicateResolution(action="deleted")

    if action == "move":
        dst_key = quarantine_key(job.filename, prefix=quarantine_prefix, now=now)
        if logger is not None:
            logger.info(f"Moving duplicate file to: {job.target_bucket}/{dst_key}")
        transport.copy(
            job.source_bucket,
            job.key,
            job.target_bucket,
            dst_key,
            content_type=job.content_type or content_type_for(job.extension),
            cache_control=QUARANTINE_CACHE_CONTROL,
            content_disposition="inline",
            metadata={
                "original-key": job.key,
                "original-bucket": job.source_bucket,
                "duplicate-reason": verdict.reason or "",
                "duplicate-confidence": verdict.confidence or "",
                "existing-file": verdict.matched_record or "",
                "detected-at": format_timestamp(now),
            },
        )
        transport.delete(job.source_bucket, job.key)
        return DuplicateResolution(action="moved", location=dst_key)

    if logger is not None:
        logger.info(f"Keeping duplicate file in place: {job.key}")
    return DuplicateResolution(action="kept", location=job.key)
