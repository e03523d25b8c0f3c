from __future__ import annotations

import json
import os
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path

from .storage import ObjectNotFound, ObjectSummary, StorageError, StoredObject


META_DIR = ".darkroom-meta"


class LocalStore:
    """
    Directory-backed object store for local invocation and tests.

    Layout: <root>/<bucket>/<key>, with content type and user metadata kept in
    <root>/.darkroom-meta/<bucket>/<key>.json.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, bucket: str, key: str) -> Path:
        if not bucket or bucket.startswith(".") or "/" in bucket:
            raise StorageError(f"Invalid bucket name: {bucket!r}")
        p = self.root / bucket / key
        if ".." in Path(key).parts:
            raise StorageError(f"Refusing to use unsafe key: {key}")
        return p

    def _meta_path(self, bucket: str, key: str) -> Path:
        return self.root / META_DIR / bucket / f"{key}.json"

    def _write_meta(self, bucket: str, key: str, content_type: str | None, metadata: dict[str, str] | None,
                    **headers: str | None) -> None:
        mp = self._meta_path(bucket, key)
        mp.parent.mkdir(parents=True, exist_ok=True)
        doc = {"ContentType": content_type, "Metadata": dict(metadata or {})}
        doc.update({k: v for k, v in headers.items() if v})
        mp.write_text(json.dumps(doc, indent=2) + "\n", encoding="utf-8")

    def _read_meta(self, bucket: str, key: str) -> dict:
        mp = self._meta_path(bucket, key)
        if not mp.exists():
            return {}
        return json.loads(mp.read_text(encoding="utf-8"))

    def get(self, bucket: str, key: str) -> StoredObject:
        p = self._path(bucket, key)
        try:
            data = p.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFound(f"No such object: {bucket}/{key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {bucket}/{key}: {e}") from e
        meta = self._read_meta(bucket, key)
        return StoredObject(
            bucket=bucket,
            key=key,
            data=data,
            content_type=meta.get("ContentType"),
            metadata=dict(meta.get("Metadata") or {}),
        )

    def list(self, bucket: str, prefix: str, *, max_keys: int) -> list[ObjectSummary]:
        base = self.root / bucket
        if not base.is_dir():
            return []
        keys = sorted(
            p.relative_to(base).as_posix()
            for p in base.rglob("*")
            if p.is_file()
        )
        out: list[ObjectSummary] = []
        for key in keys:
            if not key.startswith(prefix):
                continue
            st = (base / key).stat()
            out.append(
                ObjectSummary(
                    key=key,
                    size=st.st_size,
                    last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                )
            )
            if len(out) >= max_keys:
                break
        return out

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
        p = self._path(bucket, key)
        with self._lock:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp = p.with_name(p.name + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, p)
            self._write_meta(bucket, key, content_type, metadata, CacheControl=cache_control)

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
        src = self._path(src_bucket, src_key)
        dst = self._path(dst_bucket, dst_key)
        if not src.is_file():
            raise ObjectNotFound(f"No such object: {src_bucket}/{src_key}")
        src_meta = self._read_meta(src_bucket, src_key)
        with self._lock:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
            self._write_meta(
                dst_bucket,
                dst_key,
                content_type or src_meta.get("ContentType"),
                metadata if metadata is not None else src_meta.get("Metadata"),
                CacheControl=cache_control,
                ContentDisposition=content_disposition,
            )

    def delete(self, bucket: str, key: str) -> None:
        p = self._path(bucket, key)
        with self._lock:
            # S3 deletes are idempotent
            p.unlink(missing_ok=True)
            self._meta_path(bucket, key).unlink(missing_ok=True)

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()
