from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from .errors import UploadFailure
from .records import OutputObject
from .retry import RetryingTransport


def upload_outputs(
    transport: RetryingTransport,
    bucket: str,
    outputs: list[OutputObject],
    *,
    max_workers: int = 6,
    logger: logging.Logger | None = None,
) -> int:
    """
    Write every output object concurrently and wait for all of them.

    Writes that already succeeded are not rolled back when another one fails;
    output keys are deterministic, so re-delivering the event overwrites them.
    Returns the elapsed time in milliseconds.
    """
    start = time.monotonic()
    uploaded_ok = 0
    failures: list[tuple[str, BaseException]] = []

    def _upload_one(obj: OutputObject) -> str:
        transport.put(
            bucket,
            obj.key,
            obj.data,
            content_type=obj.content_type,
            cache_control=obj.cache_control,
        )
        return obj.key

    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="darkroom-upload") as ex:
        futures = {ex.submit(_upload_one, obj): obj for obj in outputs}
        for fut in as_completed(futures):
            obj = futures[fut]
            try:
                fut.result()
                uploaded_ok += 1
                if logger is not None:
                    logger.debug(f"Uploaded s3://{bucket}/{obj.key} ({len(obj.data):,} bytes)")
            except Exception as e:
                failures.append((obj.key, e))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    if failures:
        if logger is not None:
            logger.error("Upload failures:\n" + "\n".join(f"  {key}: {e}" for key, e in failures))
        # first in submission order, so the report does not depend on thread timing
        order = {obj.key: i for i, obj in enumerate(outputs)}
        key, first = min(failures, key=lambda f: order[f[0]])
        raise UploadFailure(
            f"Upload failed for {len(failures)} of {len(outputs)} objects "
            f"({uploaded_ok} succeeded). First failure ({key}): {first}"
        ) from first

    if logger is not None:
        logger.info(f"Uploaded {uploaded_ok} objects to s3://{bucket} in {elapsed_ms}ms")
    return elapsed_ms
