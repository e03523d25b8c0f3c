from __future__ import annotations

import io
import os
from pathlib import Path

import pytest
from PIL import Image

from darkroom.local_store import LocalStore


@pytest.fixture(autouse=True)
def _clean_darkroom_env(monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.startswith("DARKROOM_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_jpeg():
    """Factory for in-memory JPEGs, optionally carrying EXIF Make/DateTime/Orientation."""

    def _make(
        width: int = 1200,
        height: int = 800,
        *,
        make: str | None = None,
        taken: str | None = None,
        orientation: int | None = None,
        color: tuple[int, int, int] = (120, 160, 200),
    ) -> bytes:
        img = Image.new("RGB", (width, height), color)
        exif = Image.Exif()
        if make is not None:
            exif[271] = make
        if taken is not None:
            exif[306] = taken
        if orientation is not None:
            exif[0x0112] = orientation
        buf = io.BytesIO()
        if len(exif):
            img.save(buf, format="JPEG", quality=90, exif=exif)
        else:
            img.save(buf, format="JPEG", quality=90)
        return buf.getvalue()

    return _make


@pytest.fixture
def s3_event():
    def _event(bucket: str, key: str, size: int | None = 500_000) -> dict:
        obj: dict = {"key": key}
        if size is not None:
            obj["size"] = size
        return {"Records": [{"eventSource": "aws:s3", "s3": {"bucket": {"name": bucket}, "object": obj}}]}

    return _event


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "s3")
