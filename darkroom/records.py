from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .events import Job
from .exif_utils import CaptureMetadata, format_timestamp
from .image_processing import RenditionSet
from .media import content_type_for


RENDITION_LABELS = ("original", "large", "medium", "small", "thumb")
DERIVED_EXT = "jpg"
ORIGINAL_PREFIX = "original-"

METADATA_CACHE_CONTROL = "public, max-age=3600"


@dataclass(frozen=True)
class OutputObject:
    key: str
    data: bytes
    content_type: str
    cache_control: str | None = None


@dataclass(frozen=True)
class ProcessedRecord:
    original_key: str
    source_bucket: str
    base_name: str
    photo_folder: str
    capture_timestamp: str
    camera: str
    file_size_bytes: int
    original_dimensions: dict[str, Any]
    capture_metadata: dict[str, Any] | None
    processed_at: str
    rendition_paths: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "originalKey": self.original_key,
            "sourceBucket": self.source_bucket,
            "baseName": self.base_name,
            "photoFolder": self.photo_folder,
            "captureTimestamp": self.capture_timestamp,
            "camera": self.camera,
            "fileSizeBytes": self.file_size_bytes,
            "originalDimensions": dict(self.original_dimensions),
            "captureMetadata": self.capture_metadata,
            "processedAt": self.processed_at,
            "renditionPaths": dict(self.rendition_paths),
        }

    def to_json(self) -> bytes:
        return (json.dumps(self.to_dict(), indent=2) + "\n").encode("utf-8")


def _camera_slug(camera: str) -> str:
    slug = re.sub(r"\s+", "_", (camera or "unknown").strip())
    # keep the folder a single path segment
    return slug.replace("/", "_") or "unknown"


def build_base_name(shot_at: datetime, camera: str) -> str:
    """
    photo-<YYYY-MM-DD_HH-MM-SS-mmmZ>-<camera>; pure in (shot_at, camera).
    """
    ts = format_timestamp(shot_at).replace(":", "-").replace(".", "-").replace("T", "_")
    return f"photo-{ts}-{_camera_slug(camera)}"


def photo_folder(base_name: str, *, output_prefix: str = "") -> str:
    return f"{output_prefix}{base_name}/"


def metadata_key(folder: str, base_name: str) -> str:
    return f"{folder}{base_name}.json"


def rendition_paths(folder: str, original_filename: str, *, base_name: str | None = None) -> dict[str, str]:
    paths = {label: f"{folder}{label}.{DERIVED_EXT}" for label in RENDITION_LABELS[1:]}
    taken = set(paths.values())
    if base_name is not None:
        taken.add(metadata_key(folder, base_name))
    original = f"{folder}{original_filename}"
    if original in taken:
        # the original never shares a key with a derived object
        original = f"{folder}{ORIGINAL_PREFIX}{original_filename}"
    return {"original": original, **paths}


def build_record(
    *,
    job: Job,
    capture: CaptureMetadata,
    renditions: RenditionSet,
    base_name: str,
    shot_at: datetime,
    output_prefix: str = "",
    processed_at: datetime | None = None,
) -> ProcessedRecord:
    folder = photo_folder(base_name, output_prefix=output_prefix)
    original = renditions.original
    return ProcessedRecord(
        original_key=job.key,
        source_bucket=job.source_bucket,
        base_name=base_name,
        photo_folder=folder,
        capture_timestamp=format_timestamp(shot_at),
        camera=capture.camera,
        file_size_bytes=len(job.raw_bytes),
        original_dimensions={"width": original.width, "height": original.height, "format": job.extension},
        capture_metadata=capture.to_dict() if capture.available else None,
        processed_at=format_timestamp(processed_at or datetime.now(timezone.utc)),
        rendition_paths=rendition_paths(folder, job.filename, base_name=base_name),
    )


def build_outputs(record: ProcessedRecord, job: Job, renditions: RenditionSet) -> list[OutputObject]:
    """The six objects a successful job writes: original, four renditions, metadata."""
    outputs = [
        OutputObject(
            key=record.rendition_paths["original"],
            data=job.raw_bytes,
            content_type=job.content_type or content_type_for(job.extension),
        )
    ]
    for r in renditions.derived:
        outputs.append(OutputObject(key=record.rendition_paths[r.label], data=r.data, content_type="image/jpeg"))
    outputs.append(
        OutputObject(
            key=metadata_key(record.photo_folder, record.base_name),
            data=record.to_json(),
            content_type="application/json",
            cache_control=METADATA_CACHE_CONTROL,
        )
    )
    return outputs
