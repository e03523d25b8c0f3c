from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """Pipeline stage active when a failure happened. Only used for error attribution."""

    INITIALIZATION = "initialization"
    VALIDATION = "validation"
    DOWNLOAD = "download"
    METADATA = "metadata_parsing"
    DUPLICATE_CHECK = "duplicate_check"
    IMAGE_PROCESSING = "image_processing"
    BUILD = "metadata_build"
    UPLOAD = "upload"
    DONE = "done"


# Category used for exceptions that carry no tag of their own.
PHASE_CATEGORIES: dict[Phase, str] = {
    Phase.INITIALIZATION: "unknown",
    Phase.VALIDATION: "validation",
    Phase.DOWNLOAD: "source_download",
    Phase.METADATA: "metadata_parsing",
    Phase.DUPLICATE_CHECK: "duplicate_check",
    Phase.IMAGE_PROCESSING: "image_processing",
    Phase.BUILD: "image_processing",
    Phase.UPLOAD: "upload",
    Phase.DONE: "unknown",
}


class IngestError(RuntimeError):
    """Base for failures raised by the pipeline itself.

    `category` is fixed by the class. `phase` is normally the stage the
    pipeline was in when the error surfaced; a raise site may pin it explicitly.
    """

    category = "unknown"
    phase: Phase | None = None

    def __init__(self, message: str, *, phase: Phase | None = None) -> None:
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class SkipJob(IngestError):
    """A job that ends with status=skipped instead of status=error."""

    reason = "skipped"

    def __init__(self, message: str, *, reason: str | None = None, context: dict | None = None,
                 phase: Phase | None = None) -> None:
        super().__init__(message, phase=phase)
        if reason is not None:
            self.reason = reason
        self.context = dict(context or {})


class InvalidEvent(IngestError):
    category = "validation"


class SizeExceeded(IngestError):
    category = "resource_limit"


class SourceNotAllowed(SkipJob):
    category = "validation"
    reason = "bucket_not_allowed"


class AlreadyHandled(SkipJob):
    category = "validation"
    reason = "already_processed"


class UnsupportedFormat(SkipJob):
    category = "validation"
    reason = "unsupported_format"


class DownloadFailure(IngestError):
    category = "source_download"


class DuplicateDetected(SkipJob):
    category = "duplicate_check"
    reason = "duplicate_detected"


class ProcessingError(IngestError):
    category = "image_processing"


class ProcessingTimeout(IngestError):
    category = "timeout"


class UploadFailure(IngestError):
    category = "upload"


def categorize(exc: BaseException, phase: Phase) -> tuple[str, Phase]:
    """Return (category, phase) for a failure caught at the top of the pipeline."""
    if isinstance(exc, IngestError):
        return exc.category, exc.phase or phase
    if isinstance(exc, MemoryError):
        return "resource_limit", phase
    return PHASE_CATEGORIES.get(phase, "unknown"), phase
