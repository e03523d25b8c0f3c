from __future__ import annotations


SUPPORTED_EXTS = {"jpg", "jpeg", "png", "tiff", "tif", "webp"}

_CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "tiff": "image/tiff",
    "tif": "image/tiff",
    "webp": "image/webp",
}


def extension_of(key: str) -> str:
    """Lower-cased extension of an object key, without the dot ('' if none)."""
    name = key.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def is_supported(key: str) -> bool:
    return extension_of(key) in SUPPORTED_EXTS


def content_type_for(ext: str) -> str:
    return _CONTENT_TYPES.get(ext.lower().lstrip("."), "application/octet-stream")
