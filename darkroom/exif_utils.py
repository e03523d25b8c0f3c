from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from PIL import ExifTags, Image


UNKNOWN_CAMERA = "unknown"

# EXIF sub-IFD pointers
IFD_EXIF = 0x8769
IFD_GPS = 0x8825

# Raw tags kept in the processed record (by name)
KEPT_TAGS = (
    "Make",
    "Model",
    "Software",
    "Orientation",
    "DateTime",
    "DateTimeOriginal",
    "LensModel",
    "ISOSpeedRatings",
    "ExposureTime",
    "FNumber",
    "FocalLength",
    "ExifImageWidth",
    "ExifImageHeight",
)


@dataclass(frozen=True)
class CaptureMetadata:
    camera: str = UNKNOWN_CAMERA
    captured_at: datetime | None = None
    gps: dict[str, float] | None = None
    make: str | None = None
    model: str | None = None
    width: int | None = None
    height: int | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    available: bool = False

    @property
    def captured_at_iso(self) -> str | None:
        return format_timestamp(self.captured_at) if self.captured_at is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "captureTimestamp": self.captured_at_iso,
            "camera": self.camera,
            "make": self.make,
            "model": self.model,
            "gps": self.gps,
            "width": self.width,
            "height": self.height,
            "tags": dict(self.tags),
        }


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2024-01-15T14:30:00.000Z."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _parse_exif_datetime(s: str) -> datetime | None:
    """
    Common EXIF datetime format: 'YYYY:MM:DD HH:MM:SS'.
    EXIF carries no zone, so the wall-clock value is taken as UTC.
    """
    s = (s or "").strip().rstrip("\x00")
    if not s:
        return None
    for fmt in ("%Y:%m:%d %H:%M:%S", "%Y:%m:%d %H:%M:%S%z"):
        try:
            dt = datetime.strptime(s, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def _json_safe(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").rstrip("\x00")
    if isinstance(value, str):
        return value.strip().rstrip("\x00")
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, tuple):
        return [_json_safe(v) for v in value]
    try:
        # IFDRational and friends
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return str(value)


def _dms_to_degrees(dms: Any, ref: Any) -> float:
    d, m, s = (float(x) for x in dms)
    deg = d + m / 60.0 + s / 3600.0
    if str(ref).strip().upper() in ("S", "W"):
        deg = -deg
    return round(deg, 7)


def _parse_gps(gps_ifd: dict) -> dict[str, float] | None:
    if not gps_ifd:
        return None
    names = {ExifTags.GPSTAGS.get(k, k): v for k, v in gps_ifd.items()}
    try:
        lat = _dms_to_degrees(names["GPSLatitude"], names.get("GPSLatitudeRef", "N"))
        lon = _dms_to_degrees(names["GPSLongitude"], names.get("GPSLongitudeRef", "E"))
    except (KeyError, TypeError, ValueError, ZeroDivisionError):
        return None
    out = {"latitude": lat, "longitude": lon}
    alt = names.get("GPSAltitude")
    if alt is not None:
        try:
            out["altitude"] = round(float(alt), 2)
        except (TypeError, ValueError, ZeroDivisionError):
            pass
    return out


def parse_capture_tags(data: bytes) -> dict[str, Any]:
    """
    Parse the EXIF block of an image with Pillow.

    Returns a dict of tag name -> value (top-level and Exif sub-IFD merged), plus
    the pseudo-tags "GPS" (decoded GPS IFD) and "ImageSize" ((w, h) from the header).
    Raises on data Pillow cannot open or when the image carries no EXIF at all.
    """
    with Image.open(io.BytesIO(data)) as im:
        exif = im.getexif()
        size = im.size
    if not exif:
        raise ValueError("Image carries no EXIF data")

    tags: dict[str, Any] = {}
    for tag_id, value in exif.items():
        tags[ExifTags.TAGS.get(tag_id, str(tag_id))] = value
    for tag_id, value in exif.get_ifd(IFD_EXIF).items():
        tags[ExifTags.TAGS.get(tag_id, str(tag_id))] = value
    tags["GPS"] = dict(exif.get_ifd(IFD_GPS))
    tags["ImageSize"] = size
    return tags


def capture_metadata_from_tags(tags: dict[str, Any]) -> CaptureMetadata:
    make = _json_safe(tags.get("Make")) or None
    model = _json_safe(tags.get("Model")) or None
    dt_raw = tags.get("DateTimeOriginal") or tags.get("DateTime")
    captured_at = _parse_exif_datetime(str(_json_safe(dt_raw)) if dt_raw is not None else "")

    width = height = None
    size = tags.get("ImageSize")
    if isinstance(size, (tuple, list)) and len(size) == 2:
        width, height = int(size[0]), int(size[1])
        # report the displayed size, as the record's originalDimensions does
        if tags.get("Orientation") in (5, 6, 7, 8):
            width, height = height, width

    return CaptureMetadata(
        camera=str(make) if make else UNKNOWN_CAMERA,
        captured_at=captured_at,
        gps=_parse_gps(tags.get("GPS") or {}),
        make=str(make) if make else None,
        model=str(model) if model else None,
        width=width,
        height=height,
        tags={name: _json_safe(tags[name]) for name in KEPT_TAGS if name in tags},
        available=True,
    )


def extract_capture_metadata(
    data: bytes,
    *,
    timeout: float,
    parse: Callable[[bytes], dict[str, Any]] = parse_capture_tags,
    logger: logging.Logger | None = None,
) -> CaptureMetadata:
    """
    Best-effort capture metadata. Parsing runs on a worker thread and is abandoned
    after `timeout` seconds; any failure yields CaptureMetadata() with camera="unknown".
    """
    ex = ThreadPoolExecutor(max_workers=1, thread_name_prefix="darkroom-exif")
    try:
        fut = ex.submit(parse, data)
        tags = fut.result(timeout=timeout)
        return capture_metadata_from_tags(tags)
    except FutureTimeout:
        if logger is not None:
            logger.warning(f"EXIF parsing timed out after {timeout:.1f}s; continuing without capture metadata")
        return CaptureMetadata()
    except Exception as e:
        if logger is not None:
            logger.warning(f"Failed to parse EXIF: {type(e).__name__}: {e}")
        return CaptureMetadata()
    finally:
        ex.shutdown(wait=False, cancel_futures=True)
