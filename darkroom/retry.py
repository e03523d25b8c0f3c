from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .storage import ObjectStore, ObjectSummary, StoredObject


T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 1.0

    def delay_for(self, attempt: int, *, rand: Callable[[float, float], float] = random.uniform) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay * (2 ** (attempt - 1)) + rand(0.0, self.jitter)


def retry_call(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    description: str = "operation",
    logger: logging.Logger | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[float, float], float] = random.uniform,
) -> T:
    """
    Run `fn` up to `policy.attempts` times with exponential backoff and jitter.

    The last exception is re-raised unchanged once attempts are exhausted.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as e:
            if attempt >= attempts:
                raise
            delay = policy.delay_for(attempt, rand=rand)
            if logger is not None:
                logger.warning(
                    f"Attempt {attempt}/{attempts} of {description} failed: {e}. "
                    f"Retrying in {int(delay * 1000)}ms..."
                )
            sleep(delay)
    raise AssertionError("unreachable")


class RetryingTransport:
    """Wraps an object store so every call goes through the same retry policy."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        policy: RetryPolicy,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.store = store
        self.policy = policy
        self.logger = logger
        self._sleep = sleep
        self._rand = rand

    def _call(self, fn: Callable[[], T], description: str) -> T:
        return retry_call(
            fn,
            policy=self.policy,
            description=description,
            logger=self.logger,
            sleep=self._sleep,
            rand=self._rand,
        )

    def get(self, bucket: str, key: str) -> StoredObject:
        return self._call(lambda: self.store.get(bucket, key), f"get s3://{bucket}/{key}")

    def list(self, bucket: str, prefix: str, *, max_keys: int) -> list[ObjectSummary]:
        return self._call(
            lambda: self.store.list(bucket, prefix, max_keys=max_keys),
            f"list s3://{bucket}/{prefix}*",
        )

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._call(
            lambda: self.store.put(
                bucket, key, data, content_type=content_type, cache_control=cache_control, metadata=metadata
            ),
            f"put s3://{bucket}/{key}",
        )

    def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        *,
        content_type: str | None = None,
        cache_control: str | None = None,
        content_disposition: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._call(
            lambda: self.store.copy(
                src_bucket,
                src_key,
                dst_bucket,
                dst_key,
                content_type=content_type,
                cache_control=cache_control,
                content_disposition=content_disposition,
                metadata=metadata,
            ),
            f"copy s3://{src_bucket}/{src_key} -> s3://{dst_bucket}/{dst_key}",
        )

    def delete(self, bucket: str, key: str) -> None:
        self._call(lambda: self.store.delete(bucket, key), f"delete s3://{bucket}/{key}")
