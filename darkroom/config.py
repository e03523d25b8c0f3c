from __future__ import annotations

import json
import os
from dataclasses import dataclass, field


DUPLICATE_ACTIONS = ("delete", "move", "keep", "replace")

_TRUTHY = ("true", "1", "yes", "on", "enabled")
_FALSY = ("false", "0", "no", "off", "disabled")


def _split_csv(s: str) -> list[str]:
    return [p.strip() for p in s.split(",") if p.strip()]


def _parse_bool(s: str | None, default: bool) -> bool:
    if s is None or not str(s).strip():
        return default
    v = str(s).strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    raise ValueError(f"Invalid boolean '{s}' (expected true/false)")


def _parse_mappings(s: str) -> dict[str, str]:
    """
    Accepts either {"ingress": "processed"} or {"ingress": {"processed": "processed"}}.
    """
    s = (s or "").strip()
    if not s:
        return {}
    try:
        raw = json.loads(s)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid bucket mappings JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("Bucket mappings must be a JSON object of source -> destination")

    out: dict[str, str] = {}
    for src, dst in raw.items():
        if isinstance(dst, dict):
            dst = dst.get("processed")
        if not isinstance(dst, str) or not dst.strip():
            raise ValueError(f"Bucket mapping for '{src}' has no destination bucket")
        out[str(src)] = dst.strip()
    return out


def _normalize_prefix(p: str) -> str:
    p = (p or "").strip().lstrip("/")
    if p and not p.endswith("/"):
        p += "/"
    return p


def _ms(value: str | int | float) -> float:
    return float(value) / 1000.0


@dataclass(frozen=True)
class Config:
    allowed_source_buckets: frozenset[str] | None
    bucket_mappings: dict[str, str] = field(default_factory=dict)

    check_duplicates: bool = True
    duplicate_action: str = "replace"
    duplicates_prefix: str = "duplicates/"
    output_prefix: str = ""
    duplicate_scan_limit: int = 100

    max_file_size: int = 100 * 1024 * 1024
    operation_timeout_seconds: float = 30.0

    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_jitter_seconds: float = 1.0

    delete_original: bool = False
    upload_workers: int = 6

    detailed_logging: bool = False

    def target_bucket_for(self, source_bucket: str) -> str:
        return self.bucket_mappings.get(source_bucket) or source_bucket

    def is_source_allowed(self, bucket: str) -> bool:
        return self.allowed_source_buckets is None or bucket in self.allowed_source_buckets

    def summary(self) -> dict:
        return {
            "allowedSourceBuckets": sorted(self.allowed_source_buckets) if self.allowed_source_buckets else "any",
            "bucketMappings": dict(self.bucket_mappings),
            "checkDuplicates": self.check_duplicates,
            "duplicateAction": self.duplicate_action,
            "duplicatesPrefix": self.duplicates_prefix,
            "outputPrefix": self.output_prefix,
            "maxFileSize": self.max_file_size,
            "operationTimeoutSeconds": self.operation_timeout_seconds,
            "retryAttempts": self.retry_attempts,
            "deleteOriginal": self.delete_original,
            "detailedLogging": self.detailed_logging,
        }


def load_config(
    *,
    allowed_source_buckets: str | list[str] | None = None,
    bucket_mappings: str | dict | None = None,
    check_duplicates: bool | None = None,
    duplicate_action: str | None = None,
    duplicates_prefix: str | None = None,
    output_prefix: str | None = None,
    duplicate_scan_limit: int | None = None,
    max_file_size: int | None = None,
    operation_timeout_ms: int | None = None,
    retry_attempts: int | None = None,
    retry_base_delay_ms: int | None = None,
    retry_jitter_ms: int | None = None,
    delete_original: bool | None = None,
    upload_workers: int | None = None,
    detailed_logging: bool | None = None,
) -> Config:
    env = os.environ

    if allowed_source_buckets is None:
        allowed_source_buckets = env.get("DARKROOM_ALLOWED_SOURCE_BUCKETS", "")
    if isinstance(allowed_source_buckets, str):
        allowed_source_buckets = _split_csv(allowed_source_buckets)
    allowed = frozenset(allowed_source_buckets) if allowed_source_buckets else None

    if bucket_mappings is None:
        bucket_mappings = env.get("DARKROOM_BUCKET_MAPPINGS", "")
    if isinstance(bucket_mappings, dict):
        bucket_mappings = json.dumps(bucket_mappings)
    mappings = _parse_mappings(bucket_mappings)

    if check_duplicates is None:
        check_duplicates = _parse_bool(env.get("DARKROOM_CHECK_DUPLICATES"), True)

    duplicate_action = (duplicate_action or env.get("DARKROOM_DUPLICATE_ACTION", "replace")).strip().lower()
    if duplicate_action not in DUPLICATE_ACTIONS:
        raise ValueError(
            f"Invalid duplicate action '{duplicate_action}' (expected one of: {', '.join(DUPLICATE_ACTIONS)})"
        )

    duplicates_prefix = _normalize_prefix(
        duplicates_prefix if duplicates_prefix is not None else env.get("DARKROOM_DUPLICATES_PREFIX", "duplicates/")
    )
    if not duplicates_prefix:
        raise ValueError("Duplicates prefix must not be empty")
    output_prefix = _normalize_prefix(
        output_prefix if output_prefix is not None else env.get("DARKROOM_OUTPUT_PREFIX", "")
    )

    duplicate_scan_limit = int(
        duplicate_scan_limit
        if duplicate_scan_limit is not None
        else env.get("DARKROOM_DUPLICATE_SCAN_LIMIT", "100")
    )
    max_file_size = int(
        max_file_size if max_file_size is not None else env.get("DARKROOM_MAX_FILE_SIZE", str(100 * 1024 * 1024))
    )
    operation_timeout_ms = int(
        operation_timeout_ms
        if operation_timeout_ms is not None
        else env.get("DARKROOM_OPERATION_TIMEOUT_MS", "30000")
    )

    retry_attempts = int(
        retry_attempts if retry_attempts is not None else env.get("DARKROOM_RETRY_ATTEMPTS", "3")
    )
    retry_base_delay_ms = int(
        retry_base_delay_ms
        if retry_base_delay_ms is not None
        else env.get("DARKROOM_RETRY_BASE_DELAY_MS", "1000")
    )
    retry_jitter_ms = int(
        retry_jitter_ms if retry_jitter_ms is not None else env.get("DARKROOM_RETRY_JITTER_MS", "1000")
    )

    if delete_original is None:
        delete_original = _parse_bool(env.get("DARKROOM_DELETE_ORIGINAL"), False)
    upload_workers = int(
        upload_workers if upload_workers is not None else env.get("DARKROOM_UPLOAD_WORKERS", "6")
    )
    if detailed_logging is None:
        detailed_logging = _parse_bool(env.get("DARKROOM_DETAILED_LOGGING"), False)

    for name, value in (
        ("duplicate scan limit", duplicate_scan_limit),
        ("max file size", max_file_size),
        ("operation timeout", operation_timeout_ms),
        ("retry attempts", retry_attempts),
        ("upload workers", upload_workers),
    ):
        if value <= 0:
            raise ValueError(f"Invalid {name}: {value} (must be positive)")
    if retry_base_delay_ms < 0 or retry_jitter_ms < 0:
        raise ValueError("Retry delays must not be negative")

    return Config(
        allowed_source_buckets=allowed,
        bucket_mappings=mappings,
        check_duplicates=bool(check_duplicates),
        duplicate_action=duplicate_action,
        duplicates_prefix=duplicates_prefix,
        output_prefix=output_prefix,
        duplicate_scan_limit=duplicate_scan_limit,
        max_file_size=max_file_size,
        operation_timeout_seconds=_ms(operation_timeout_ms),
        retry_attempts=retry_attempts,
        retry_base_delay_seconds=_ms(retry_base_delay_ms),
        retry_jitter_seconds=_ms(retry_jitter_ms),
        delete_original=bool(delete_original),
        upload_workers=upload_workers,
        detailed_logging=bool(detailed_logging),
    )
