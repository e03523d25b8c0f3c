from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


class StorageError(RuntimeError):
    pass


class ObjectNotFound(StorageError):
    pass


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    key: str
    data: bytes
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ObjectSummary:
    key: str
    size: int
    last_modified: datetime | None = None


class ObjectStore(Protocol):
    """The storage operations the pipeline needs. Implemented by S3Store and LocalStore."""

    def get(self, bucket: str, key: str) -> StoredObject: ...

    def list(self, bucket: str, prefix: str, *, max_keys: int) -> list[ObjectSummary]: ...

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None: ...

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
    ) -> None: ...

    def delete(self, bucket: str, key: str) -> None: ...
