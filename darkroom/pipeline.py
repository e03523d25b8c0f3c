from __future__ import annotations

import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable

from .config import Config
from .duplicates import DuplicateResolution, DuplicateVerdict, find_duplicate, resolve_duplicate
from .errors import DownloadFailure, DuplicateDetected, InvalidEvent, Phase, SkipJob
from .events import Job, check_size, parse_event, validate_event
from .exif_utils import extract_capture_metadata, parse_capture_tags
from .image_processing import generate_renditions, resize_image
from .logging_utils import get_logger, log_memory_usage
from .records import RENDITION_LABELS, ProcessedRecord, build_base_name, build_outputs, build_record
from .reporting import error_response, skipped_response, success_response
from .retry import RetryingTransport, RetryPolicy
from .storage import ObjectStore
from .uploads import upload_outputs


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Progress:
    """Current phase of a job. Read once, by the top-level handler, when something fails."""

    def __init__(self, logger: logging.Logger) -> None:
        self.phase = Phase.INITIALIZATION
        self._logger = logger

    def enter(self, phase: Phase) -> None:
        self.phase = phase
        self._logger.debug(f"Phase: {phase.value}")


def _ms_since(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def _download(transport: RetryingTransport, job: Job, cfg: Config, logger: logging.Logger) -> Job:
    try:
        obj = transport.get(job.source_bucket, job.key)
    except Exception as e:
        raise DownloadFailure(
            f"Failed to download s3://{job.source_bucket}/{job.key} after {cfg.retry_attempts} attempts: {e}"
        ) from e
    if not obj.data:
        raise DownloadFailure(f"Downloaded object is empty: s3://{job.source_bucket}/{job.key}")
    # declared size may be missing or stale
    check_size(obj.size, cfg)
    logger.info(f"Downloaded {obj.size:,} bytes ({obj.size / 1024 / 1024:.2f}MB)")
    return job.with_download(obj.data, obj.content_type)


def _key_from_event(event: Any) -> str | None:
    try:
        return parse_event(event).key
    except InvalidEvent:
        return None


def _delete_source(transport: RetryingTransport, job: Job, logger: logging.Logger) -> None:
    try:
        transport.delete(job.source_bucket, job.key)
        logger.info(f"Deleted original: s3://{job.source_bucket}/{job.key}")
    except Exception as e:
        logger.warning(f"Failed to delete original s3://{job.source_bucket}/{job.key}: {e}")


def _delete_stale_original(
    transport: RetryingTransport,
    bucket: str,
    stale_key: str | None,
    record: ProcessedRecord,
    logger: logging.Logger,
) -> None:
    # a replaced record keeps one original, the one it now references
    if not stale_key or stale_key == record.rendition_paths["original"]:
        return
    if not stale_key.startswith(record.photo_folder):
        return
    try:
        transport.delete(bucket, stale_key)
        logger.info(f"Removed superseded original: s3://{bucket}/{stale_key}")
    except Exception as e:
        logger.warning(f"Failed to remove superseded original s3://{bucket}/{stale_key}: {e}")


def run_pipeline(
    event: Any,
    *,
    cfg: Config,
    store: ObjectStore,
    logger: logging.Logger | None = None,
    parse: Callable[[bytes], dict[str, Any]] = parse_capture_tags,
    resize: Callable[..., Any] = resize_image,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[float, float], float] = random.uniform,
    now: Callable[[], datetime] = _utcnow,
) -> dict[str, Any]:
    """
    Ingest the object named by one storage notification.

    Always returns a result dict with status success, skipped or error; no
    exception escapes. Failures are attributed to the phase that was active
    when they were raised.
    """
    logger = logger or get_logger()
    started = time.monotonic()
    progress = _Progress(logger)
    original_key: str | None = None

    try:
        log_memory_usage(logger, "start")
        if cfg.detailed_logging:
            logger.debug(f"Event: {json.dumps(event, default=str)}")

        transport = RetryingTransport(
            store,
            policy=RetryPolicy(
                attempts=cfg.retry_attempts,
                base_delay=cfg.retry_base_delay_seconds,
                jitter=cfg.retry_jitter_seconds,
            ),
            logger=logger,
            sleep=sleep,
            rand=rand,
        )

        progress.enter(Phase.VALIDATION)
        job = validate_event(event, cfg, logger=logger)
        original_key = job.key

        progress.enter(Phase.DOWNLOAD)
        t0 = time.monotonic()
        job = _download(transport, job, cfg, logger)
        download_ms = _ms_since(t0)

        progress.enter(Phase.METADATA)
        t0 = time.monotonic()
        capture = extract_capture_metadata(
            job.raw_bytes, timeout=cfg.operation_timeout_seconds, parse=parse, logger=logger
        )
        metadata_ms = _ms_since(t0)
        shot_at = capture.captured_at or now()
        base_name = build_base_name(shot_at, capture.camera)
        logger.info(f"Camera: {capture.camera}, captured: {capture.captured_at_iso or 'unknown'}, baseName: {base_name}")

        progress.enter(Phase.DUPLICATE_CHECK)
        t0 = time.monotonic()
        verdict: DuplicateVerdict | None = None
        resolution: DuplicateResolution | None = None
        if cfg.check_duplicates:
            verdict = find_duplicate(
                transport,
                bucket=job.target_bucket,
                capture=capture,
                shot_at=shot_at,
                file_size=job.size,
                output_prefix=cfg.output_prefix,
                max_keys=cfg.duplicate_scan_limit,
                logger=logger,
            )
            if verdict.is_duplicate:
                resolution = resolve_duplicate(
                    transport,
                    job,
                    verdict,
                    action=cfg.duplicate_action,
                    quarantine_prefix=cfg.duplicates_prefix,
                    now=now(),
                    logger=logger,
                )
                if resolution.action != "replace":
                    raise DuplicateDetected(
                        f"Duplicate of {verdict.matched_record} ({verdict.reason})",
                        context={
                            "bucket": job.source_bucket,
                            "originalKey": job.key,
                            "action": resolution.action,
                            "location": resolution.location,
                            "duplicateInfo": verdict.to_dict(),
                        },
                    )
                # overwrite the matched folder instead of creating a second one
                base_name = verdict.matched_base_name or base_name
        else:
            logger.info("Duplicate check disabled")
        duplicate_ms = _ms_since(t0)

        progress.enter(Phase.IMAGE_PROCESSING)
        renditions = generate_renditions(
            job.raw_bytes,
            timeout=cfg.operation_timeout_seconds,
            resize=resize,
            original_format=job.extension,
            logger=logger,
        )

        progress.enter(Phase.BUILD)
        record = build_record(
            job=job,
            capture=capture,
            renditions=renditions,
            base_name=base_name,
            shot_at=shot_at,
            output_prefix=cfg.output_prefix,
            processed_at=now(),
        )
        outputs = build_outputs(record, job, renditions)

        progress.enter(Phase.UPLOAD)
        upload_ms = upload_outputs(
            transport,
            job.target_bucket,
            outputs,
            max_workers=cfg.upload_workers,
            logger=logger,
        )

        progress.enter(Phase.DONE)
        if cfg.delete_original and resolution is None:
            _delete_source(transport, job, logger)
        if resolution is not None and verdict is not None:
            _delete_stale_original(transport, job.target_bucket, verdict.matched_original, record, logger)

        metrics = {
            "totalTimeMs": _ms_since(started),
            "downloadTimeMs": download_ms,
            "metadataTimeMs": metadata_ms,
            "duplicateCheckTimeMs": duplicate_ms,
            "processingTimeMs": renditions.processing_ms,
            "uploadTimeMs": upload_ms,
            "originalSizeMB": round(job.size / 1024 / 1024, 2),
        }
        logger.info(f"Processed {job.key} -> s3://{job.target_bucket}/{record.photo_folder} in {metrics['totalTimeMs']}ms")
        return success_response(
            base_name=base_name,
            original_key=job.key,
            source_bucket=job.source_bucket,
            destination_bucket=job.target_bucket,
            processed_files=[record.rendition_paths[label] for label in RENDITION_LABELS],
            metadata_path=outputs[-1].key,
            metrics=metrics,
            verdict=verdict,
            resolution=resolution,
        )
    except SkipJob as skip:
        logger.info(f"Skipping ({skip.reason}): {skip}")
        return skipped_response(skip, original_key=original_key or skip.context.get("originalKey"))
    except Exception as e:
        result = error_response(
            e,
            phase=progress.phase,
            original_key=original_key or _key_from_event(event),
            started=started,
            detailed=cfg.detailed_logging,
        )
        logger.error(
            f"Processing failed in phase {result['processingPhase']} "
            f"({result['errorCategory']}, {result['errorType']}): {result['error']}"
        )
        return result
    finally:
        log_memory_usage(logger, "end")
