from __future__ import annotations

import logging
import re
import urllib.parse
from dataclasses import dataclass, replace
from typing import Any

from . import media
from .config import Config
from .errors import AlreadyHandled, InvalidEvent, SizeExceeded, SourceNotAllowed, UnsupportedFormat


# Folder written by this pipeline when no output prefix is configured.
PROCESSED_FOLDER_RE = re.compile(r"^photo-\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}-\d{3}Z-[^/]+/")


@dataclass(frozen=True)
class ObjectRef:
    bucket: str
    key: str
    size: int | None


@dataclass(frozen=True)
class Job:
    source_bucket: str
    key: str
    target_bucket: str
    declared_size: int | None
    extension: str
    raw_bytes: bytes = b""
    content_type: str | None = None

    @property
    def filename(self) -> str:
        return self.key.rsplit("/", 1)[-1]

    @property
    def uses_separate_bucket(self) -> bool:
        return self.target_bucket != self.source_bucket

    @property
    def size(self) -> int:
        return len(self.raw_bytes) if self.raw_bytes else (self.declared_size or 0)

    def with_download(self, data: bytes, content_type: str | None) -> Job:
        return replace(self, raw_bytes=data, content_type=content_type)


def _normalize_records(evt: Any) -> list[dict[str, Any]]:
    """Return a list of pseudo-S3-records in the shape of evt['Records'][]."""
    if isinstance(evt, dict) and isinstance(evt.get("Records"), list):
        return [r for r in evt["Records"] if isinstance(r, dict)]
    # EventBridge S3 Object Created event (single record)
    if (
        isinstance(evt, dict)
        and evt.get("source") == "aws.s3"
        and isinstance(evt.get("detail"), dict)
    ):
        detail = evt["detail"]
        return [
            {
                "s3": {
                    "bucket": detail.get("bucket") or {},
                    "object": detail.get("object") or {},
                }
            }
        ]
    return []


def _parse_size(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def parse_event(event: Any, *, logger: logging.Logger | None = None) -> ObjectRef:
    """
    Extract the changed object from a storage notification.

    Only the first record of a batch is consumed; the rest are ignored.
    """
    records = _normalize_records(event)
    if not records:
        raise InvalidEvent("No S3 records found in event")
    if len(records) > 1 and logger is not None:
        logger.warning(f"Event carries {len(records)} records; only the first is processed")

    s3 = records[0].get("s3")
    if not isinstance(s3, dict):
        raise InvalidEvent("Invalid S3 record structure: missing 's3'")
    bucket = (s3.get("bucket") or {}).get("name")
    obj = s3.get("object") or {}
    raw_key = obj.get("key")
    if not bucket or not raw_key:
        raise InvalidEvent("Invalid S3 record structure: missing bucket name or object key")

    # S3 keys arrive URL-encoded, with spaces as '+'
    key = urllib.parse.unquote_plus(str(raw_key))
    return ObjectRef(bucket=str(bucket), key=key, size=_parse_size(obj.get("size")))


def is_already_handled(key: str, cfg: Config) -> str | None:
    """Skip reason if `key` is one of this pipeline's own outputs, else None."""
    if key.startswith(cfg.duplicates_prefix):
        return "already_in_duplicates"
    if cfg.output_prefix:
        if key.startswith(cfg.output_prefix):
            return "already_processed"
    elif PROCESSED_FOLDER_RE.match(key):
        return "already_processed"
    return None


def check_size(size: int | None, cfg: Config) -> None:
    if size is not None and size > cfg.max_file_size:
        size_mb = size / 1024 / 1024
        max_mb = cfg.max_file_size / 1024 / 1024
        raise SizeExceeded(f"File size {size_mb:.2f}MB exceeds maximum {max_mb:.2f}MB")


def validate_event(event: Any, cfg: Config, *, logger: logging.Logger | None = None) -> Job:
    ref = parse_event(event, logger=logger)
    ext = media.extension_of(ref.key)
    context = {"bucket": ref.bucket, "originalKey": ref.key}

    if ext not in media.SUPPORTED_EXTS:
        raise UnsupportedFormat(
            f"Unsupported file format: {ext or '(none)'}",
            context={**context, "extension": ext},
        )

    if not cfg.is_source_allowed(ref.bucket):
        raise SourceNotAllowed(f"Bucket {ref.bucket} not allowed", context=context)

    reason = is_already_handled(ref.key, cfg)
    if reason is not None:
        raise AlreadyHandled(f"Object {ref.key} is an output of this pipeline", reason=reason, context=context)

    check_size(ref.size, cfg)

    target = cfg.target_bucket_for(ref.bucket)
    if logger is not None:
        logger.info(f"Processing file: {ref.bucket}/{ref.key} -> {target}")
    return Job(
        source_bucket=ref.bucket,
        key=ref.key,
        target_bucket=target,
        declared_size=ref.size,
        extension=ext,
    )
