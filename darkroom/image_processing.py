from __future__ import annotations

import io
import logging
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ProcessingError, ProcessingTimeout


@dataclass(frozen=True)
class SizeTier:
    label: str
    max_dimension: int
    quality: int


# Ordered largest first; the labels double as output file names.
SIZE_TIERS: tuple[SizeTier, ...] = (
    SizeTier("large", 1920, 85),
    SizeTier("medium", 800, 80),
    SizeTier("small", 400, 75),
    SizeTier("thumb", 150, 70),
)


@dataclass(frozen=True)
class ResizeResult:
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class Rendition:
    label: str
    data: bytes
    width: int
    height: int
    format: str


@dataclass(frozen=True)
class RenditionSet:
    original: Rendition
    derived: tuple[Rendition, ...]
    processing_ms: int

    @property
    def all(self) -> tuple[Rendition, ...]:
        return (self.original, *self.derived)


def resize_image(
    data: bytes,
    *,
    max_width: int,
    max_height: int,
    quality: int,
    resampling: Image.Resampling | None = None,
) -> ResizeResult:
    """
    - Auto-orient using EXIF orientation
    - Fit inside max_width x max_height, keeping aspect ratio (only shrink)
    - Encode as JPEG without EXIF

    Args:
        data: Source image bytes
        max_width, max_height: Bounding box in pixels (never enlarged)
        quality: JPEG quality (1-100)
        resampling: Resampling algorithm (default: BILINEAR for outputs <=512px, LANCZOS for larger)
    """
    if resampling is None:
        if max(max_width, max_height) <= 512:
            resampling = Image.Resampling.BILINEAR
        else:
            resampling = Image.Resampling.LANCZOS

    try:
        with Image.open(io.BytesIO(data)) as im:
            im = ImageOps.exif_transpose(im)

            # JPEG has no alpha or palette
            if im.mode != "RGB":
                im = im.convert("RGB")

            w, h = im.size
            scale = min(max_width / float(w), max_height / float(h), 1.0)
            if scale < 1.0:
                new_size = (max(1, round(w * scale)), max(1, round(h * scale)))
                im = im.resize(new_size, resampling)

            out = io.BytesIO()
            im.save(
                out,
                format="JPEG",
                quality=int(quality),
                optimize=True,
                progressive=True,
            )
            return ResizeResult(data=out.getvalue(), width=im.size[0], height=im.size[1])
    except UnidentifiedImageError as e:
        raise ProcessingError(
            "Failed to resize image: cannot identify image data\n"
            "  The object may not be a valid image, or the upload is truncated."
        ) from e
    except (OSError, ValueError) as e:
        raise ProcessingError(
            f"Failed to resize image to {max_width}x{max_height}\n"
            f"  Error type: {type(e).__name__}\n"
            f"  Original error: {e}"
        ) from e


def probe_image(data: bytes) -> tuple[int, int, str]:
    """(width, height, format) of the original, honouring EXIF orientation for the size."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            fmt = (im.format or "unknown").lower()
            w, h = im.size
            orientation = im.getexif().get(0x0112)
    except (UnidentifiedImageError, OSError) as e:
        raise ProcessingError(f"Cannot read original image dimensions: {e}") from e
    if orientation in (5, 6, 7, 8):
        w, h = h, w
    return w, h, fmt


def generate_renditions(
    data: bytes,
    *,
    timeout: float,
    tiers: tuple[SizeTier, ...] = SIZE_TIERS,
    resize: Callable[..., ResizeResult] = resize_image,
    original_format: str | None = None,
    logger: logging.Logger | None = None,
) -> RenditionSet:
    """
    Resize `data` into every tier concurrently. All tiers share one timeout;
    if it fires first the job fails with ProcessingTimeout.
    """
    start = time.monotonic()
    width, height, fmt = probe_image(data)
    original = Rendition("original", data, width, height, original_format or fmt)

    ex = ThreadPoolExecutor(max_workers=len(tiers), thread_name_prefix="darkroom-resize")
    try:
        futures = [
            ex.submit(resize, data, max_width=t.max_dimension, max_height=t.max_dimension, quality=t.quality)
            for t in tiers
        ]
        done, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                raise exc
        if pending:
            raise ProcessingTimeout(f"Image processing timeout after {timeout:.1f}s ({len(pending)} of {len(tiers)} sizes unfinished)")

        derived = []
        for tier, fut in zip(tiers, futures):
            res = fut.result()
            derived.append(Rendition(tier.label, res.data, res.width, res.height, "jpeg"))
    finally:
        ex.shutdown(wait=False, cancel_futures=True)

    processing_ms = int((time.monotonic() - start) * 1000)
    if logger is not None:
        sizes = ", ".join(f"{r.label}={r.width}x{r.height}" for r in derived)
        logger.info(f"Generated {len(derived)} renditions in {processing_ms}ms ({sizes})")
    return RenditionSet(original=original, derived=tuple(derived), processing_ms=processing_ms)
