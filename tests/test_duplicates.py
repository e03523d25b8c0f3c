from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from darkroom.duplicates import (
    REASON_EXACT,
    REASON_EXACT_DIMENSIONS,
    REASON_SIZE_CAMERA,
    compare_record,
    find_duplicate,
    quarantine_key,
    resolve_duplicate,
    search_prefix,
)
from darkroom.events import Job
from darkroom.exif_utils import CaptureMetadata
from darkroom.retry import RetryingTransport, RetryPolicy
from darkroom.storage import StorageError


SHOT_AT = datetime(2024, 1, 15, 14, 30, 0, tzinfo=timezone.utc)
BASE = "photo-2024-01-15_14-30-00-000Z-Canon"
NOW = datetime(2024, 1, 16, 9, 5, 7, tzinfo=timezone.utc)


def _transport(store) -> RetryingTransport:
    return RetryingTransport(store, policy=RetryPolicy(attempts=1))


def _capture(**kw) -> CaptureMetadata:
    kw.setdefault("camera", "Canon")
    kw.setdefault("captured_at", SHOT_AT)
    kw.setdefault("width", 4000)
    kw.setdefault("height", 3000)
    kw.setdefault("available", True)
    return CaptureMetadata(**kw)


def _record(*, size=500_000, camera="Canon", ts="2024-01-15T14:30:00.000Z", width=4000, height=3000,
            with_capture=True, base=BASE) -> dict:
    return {
        "baseName": base,
        "camera": camera,
        "fileSizeBytes": size,
        "originalDimensions": {"width": width, "height": height, "format": "jpg"},
        "captureMetadata": {"captureTimestamp": ts, "camera": camera} if with_capture else None,
    }


def _seed(store, record: dict, *, bucket="processed-1", key=None) -> str:
    key = key or f"{record['baseName']}/{record['baseName']}.json"
    store.put(bucket, key, json.dumps(record).encode(), content_type="application/json")
    return key


def _job() -> Job:
    return Job(
        source_bucket="ingress-1",
        key="IMG_0001.jpg",
        target_bucket="processed-1",
        declared_size=500_000,
        extension="jpg",
        raw_bytes=b"x" * 10,
        content_type="image/jpeg",
    )


def test_search_prefix():
    assert search_prefix(SHOT_AT) == "photo-2024-01-15"
    assert search_prefix(SHOT_AT, output_prefix="processed/") == "processed/photo-2024-01-15"


def test_compare_record_tiers():
    cap = _capture()
    assert compare_record(_record(), capture=cap, file_size=500_100) == (REASON_EXACT_DIMENSIONS, "high")
    assert compare_record(_record(width=10), capture=cap, file_size=500_000) == (REASON_EXACT, "high")
    assert compare_record(_record(camera="CANON"), capture=cap, file_size=500_000) == (REASON_EXACT_DIMENSIONS, "high")
    # different timestamp falls through to the camera-only comparison
    assert compare_record(_record(ts="2024-01-15T09:00:00.000Z"), capture=cap, file_size=500_000) == (
        REASON_SIZE_CAMERA,
        "medium",
    )


def test_compare_record_size_window():
    cap = _capture()
    assert compare_record(_record(), capture=cap, file_size=500_000 + 1023) is not None
    assert compare_record(_record(), capture=cap, file_size=500_000 + 1024) is None
    assert compare_record(_record(size="big"), capture=cap, file_size=500_000) is None


def test_compare_record_without_capture_metadata():
    unknown = CaptureMetadata()
    existing = _record(camera="unknown", with_capture=False)
    assert compare_record(existing, capture=unknown, file_size=500_000) == (REASON_SIZE_CAMERA, "medium")
    assert compare_record(_record(camera="Nikon"), capture=_capture(), file_size=500_000) is None


def test_find_duplicate_high_confidence(store):
    key = _seed(store, _record())
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_200)
    assert verdict.is_duplicate
    assert verdict.confidence == "high"
    assert verdict.reason == "exact_match_exif_timestamp_camera_dimensions"
    assert verdict.matched_record == key
    assert verdict.matched_base_name == BASE
    assert verdict.search_prefix == "photo-2024-01-15"
    assert verdict.matched_original is None


def test_find_duplicate_reports_matched_original(store):
    record = _record()
    record["renditionPaths"] = {"original": f"{BASE}/IMG_0001.jpg", "large": f"{BASE}/large.jpg"}
    _seed(store, record)
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000)
    assert verdict.matched_original == f"{BASE}/IMG_0001.jpg"


def test_find_duplicate_none_on_other_day(store):
    other = "photo-2024-01-14_10-00-00-000Z-Canon"
    _seed(store, _record(base=other, ts="2024-01-14T10:00:00.000Z"))
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000)
    assert not verdict.is_duplicate
    assert verdict.scanned_count == 0


def test_find_duplicate_first_candidate_wins(store):
    medium = "photo-2024-01-15_08-00-00-000Z-Canon"
    _seed(store, _record(base=medium, ts="2024-01-15T08:00:00.000Z"))
    _seed(store, _record())
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000)
    # listing order, not best match
    assert verdict.matched_base_name == medium
    assert verdict.confidence == "medium"
    assert verdict.scanned_count == 1


def test_find_duplicate_skips_unreadable_candidates(store):
    store.put("processed-1", "photo-2024-01-15_00-00-00-000Z-x/broken.json", b"{not json",
              content_type="application/json")
    _seed(store, _record())
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000)
    assert verdict.is_duplicate
    assert verdict.scanned_count == 2


def test_find_duplicate_ignores_non_record_entries(store):
    store.put("processed-1", f"{BASE}/large.jpg", b"jpeg", content_type="image/jpeg")
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=4)
    assert not verdict.is_duplicate


def test_find_duplicate_respects_scan_limit(store):
    _seed(store, _record())
    store.put("processed-1", f"{BASE}/00-first.jpg", b"jpeg", content_type="image/jpeg")
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000, max_keys=1)
    assert not verdict.is_duplicate


def test_find_duplicate_listing_failure_degrades():
    store = MagicMock()
    store.list.side_effect = StorageError("AccessDenied")
    logger = MagicMock()
    verdict = find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                             file_size=500_000, logger=logger)
    assert not verdict.is_duplicate
    assert "AccessDenied" in verdict.error
    assert logger.warning.called


def test_quarantine_key():
    assert quarantine_key("IMG_0001.jpg", prefix="duplicates/", now=NOW) == "duplicates/2024-01-16_09-05-07-IMG_0001.jpg"


@pytest.fixture
def duplicate(store):
    key = _seed(store, _record())
    store.put("ingress-1", "IMG_0001.jpg", b"x" * 10, content_type="image/jpeg")
    return find_duplicate(_transport(store), bucket="processed-1", capture=_capture(), shot_at=SHOT_AT,
                          file_size=500_000), key


def test_resolve_delete(store, duplicate):
    verdict, _ = duplicate
    res = resolve_duplicate(_transport(store), _job(), verdict, action="delete", quarantine_prefix="duplicates/",
                            now=NOW)
    assert res.action == "deleted"
    assert not store.exists("ingress-1", "IMG_0001.jpg")


def test_resolve_keep(store, duplicate):
    verdict, _ = duplicate
    res = resolve_duplicate(_transport(store), _job(), verdict, action="keep", quarantine_prefix="duplicates/",
                            now=NOW)
    assert res.action == "kept"
    assert store.exists("ingress-1", "IMG_0001.jpg")


def test_resolve_replace(store, duplicate):
    verdict, key = duplicate
    res = resolve_duplicate(_transport(store), _job(), verdict, action="replace", quarantine_prefix="duplicates/",
                            now=NOW)
    assert res.action == "replace"
    assert res.location == key
    assert not store.exists("ingress-1", "IMG_0001.jpg")


def test_resolve_move(store, duplicate):
    verdict, key = duplicate
    res = resolve_duplicate(_transport(store), _job(), verdict, action="move", quarantine_prefix="duplicates/",
                            now=NOW)

    assert res.action == "moved"
    assert res.location == "duplicates/2024-01-16_09-05-07-IMG_0001.jpg"
    assert not store.exists("ingress-1", "IMG_0001.jpg")

    moved = store.get("processed-1", res.location)
    assert moved.data == b"x" * 10
    assert moved.content_type == "image/jpeg"
    assert moved.metadata == {
        "original-key": "IMG_0001.jpg",
        "original-bucket": "ingress-1",
        "duplicate-reason": "exact_match_exif_timestamp_camera_dimensions",
        "duplicate-confidence": "high",
        "existing-file": key,
        "detected-at": "2024-01-16T09:05:07.000Z",
    }
