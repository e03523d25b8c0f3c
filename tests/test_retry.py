from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from darkroom.retry import RetryingTransport, RetryPolicy, retry_call
from darkroom.storage import StorageError, StoredObject


def _no_jitter(a: float, b: float) -> float:
    return 0.0


def test_delay_grows_exponentially():
    policy = RetryPolicy(attempts=4, base_delay=1.0, jitter=1.0)
    assert [policy.delay_for(n, rand=_no_jitter) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_jitter_is_added():
    policy = RetryPolicy(base_delay=0.5, jitter=1.0)
    assert policy.delay_for(1, rand=lambda a, b: b) == 1.5


def test_retry_call_recovers():
    calls = []
    sleeps: list[float] = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StorageError("transient")
        return "ok"

    result = retry_call(flaky, policy=RetryPolicy(), sleep=sleeps.append, rand=_no_jitter)
    assert result == "ok"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retry_call_reraises_last_error_unchanged():
    errors = [StorageError(f"attempt {n}") for n in (1, 2, 3)]
    sleeps: list[float] = []
    logger = MagicMock()

    def always_fails():
        raise errors.pop(0)

    with pytest.raises(StorageError) as exc:
        retry_call(always_fails, policy=RetryPolicy(attempts=3), logger=logger, sleep=sleeps.append, rand=_no_jitter)

    assert str(exc.value) == "attempt 3"
    # N attempts -> N-1 increasing waits
    assert len(sleeps) == 2
    assert sleeps[0] < sleeps[1]
    assert logger.warning.call_count == 2


def test_single_attempt_never_sleeps():
    sleeps: list[float] = []

    def broken():
        raise ValueError("x")

    with pytest.raises(ValueError):
        retry_call(broken, policy=RetryPolicy(attempts=1), sleep=sleeps.append)
    assert sleeps == []


def test_transport_retries_store_calls():
    store = MagicMock()
    obj = StoredObject(bucket="b", key="k", data=b"abc")
    store.get.side_effect = [StorageError("boom"), obj]
    sleeps: list[float] = []

    transport = RetryingTransport(store, policy=RetryPolicy(), sleep=sleeps.append, rand=_no_jitter)

    assert transport.get("b", "k") is obj
    assert store.get.call_count == 2
    assert sleeps == [1.0]


def test_transport_passes_write_options_through():
    store = MagicMock()
    transport = RetryingTransport(store, policy=RetryPolicy(attempts=1))

    transport.put("b", "k", b"x", content_type="image/jpeg", cache_control="public, max-age=3600")
    transport.copy("src", "a.jpg", "dst", "duplicates/a.jpg", content_type="image/jpeg", metadata={"k": "v"})
    transport.list("b", "photo-", max_keys=10)
    transport.delete("b", "k")

    store.put.assert_called_once_with(
        "b", "k", b"x", content_type="image/jpeg", cache_control="public, max-age=3600", metadata=None
    )
    assert store.copy.call_args.kwargs["metadata"] == {"k": "v"}
    store.list.assert_called_once_with("b", "photo-", max_keys=10)
    store.delete.assert_called_once_with("b", "k")
