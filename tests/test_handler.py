from __future__ import annotations

from types import SimpleNamespace

import pytest

from darkroom import handler
from darkroom.local_store import LocalStore


@pytest.fixture
def runtime(tmp_path, monkeypatch: pytest.MonkeyPatch):
    store = LocalStore(tmp_path / "s3")
    monkeypatch.setenv("DARKROOM_BUCKET_MAPPINGS", '{"ingress-1": "processed-1"}')
    monkeypatch.setenv("DARKROOM_ALLOWED_SOURCE_BUCKETS", "ingress-1")
    monkeypatch.setattr(handler, "S3Store", lambda: store)
    handler._runtime.cache_clear()
    yield store
    handler._runtime.cache_clear()


def test_lambda_handler_processes_event(runtime, make_jpeg, s3_event):
    runtime.put("ingress-1", "IMG_0001.jpg", make_jpeg(), content_type="image/jpeg")

    result = handler.lambda_handler(s3_event("ingress-1", "IMG_0001.jpg"), SimpleNamespace(aws_request_id="req-1"))

    assert result["status"] == "success"
    assert result["destinationBucket"] == "processed-1"
    assert len(result["processedFiles"]) == 5


def test_lambda_handler_skips_disallowed_bucket(runtime, s3_event):
    result = handler.lambda_handler(s3_event("other", "IMG_0001.jpg"), None)
    assert result == {
        "status": "skipped",
        "reason": "bucket_not_allowed",
        "originalKey": "IMG_0001.jpg",
        "message": "Bucket other not allowed",
        "bucket": "other",
    }


def test_runtime_is_built_once(runtime):
    first = handler._runtime()
    second = handler._runtime()
    assert first is second
    cfg, store, logger = first
    assert store is runtime
    assert cfg.allowed_source_buckets == frozenset({"ingress-1"})
    assert logger.name == "darkroom"
