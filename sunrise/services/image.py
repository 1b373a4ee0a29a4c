from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Dict, Optional

from PIL import Image

MAX_AVATAR_SIZE = 500
AVATAR_QUALITY = 85
# Decoded size cap; checked from the header before any pixel data is read.
MAX_IMAGE_PIXELS = 25_000_000

# mime -> file extension
SUPPORTED_IMAGE_TYPES: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class ImageError(ValueError):
    pass


_PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


@dataclass(frozen=True)
class ImageValidation:
    valid: bool
    detected_type: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProcessedImage:
    buffer: bytes
    mime_type: str
    width: int
    height: int

    @property
    def extension(self) -> str:
        return SUPPORTED_IMAGE_TYPES[self.mime_type]


def detect_image_type(data: bytes) -> Optional[str]:
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def validate_image_magic_bytes(data: bytes) -> ImageValidation:
    """Check the file signature rather than trusting the declared content type."""
    if not data or len(data) < 8:
        return ImageValidation(valid=False, error="File too small to be a valid image")
    detected = detect_image_type(data)
    if not detected:
        return ImageValidation(valid=False, error="Invalid or unsupported image format")
    return ImageValidation(valid=True, detected_type=detected)


def process_image(
    data: bytes,
    *,
    max_width: int = MAX_AVATAR_SIZE,
    max_height: int = MAX_AVATAR_SIZE,
    quality: int = AVATAR_QUALITY,
) -> ProcessedImage:
    """Shrink to fit inside max_width x max_height (never enlarge) and re-encode.

    The output keeps the input format except GIF, which becomes PNG.
    """
    detected = detect_image_type(data) or "image/jpeg"
    out_mime = "image/png" if detected == "image/gif" else detected

    try:
        opened = Image.open(io.BytesIO(data))
    except Image.DecompressionBombError as e:
        raise ImageError(str(e)) from e

    with opened as img:
        if img.width * img.height > MAX_IMAGE_PIXELS:
            raise ImageError(f"Image dimensions too large: {img.width}x{img.height}")
        img.load()
        if img.width > max_width or img.height > max_height:
            img.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)

        if out_mime == "image/jpeg" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        elif out_mime == "image/png" and img.mode == "P":
            img = img.convert("RGBA")

        buf = io.BytesIO()
        save_kwargs = {}
        if out_mime in ("image/jpeg", "image/webp"):
            save_kwargs["quality"] = quality
        if out_mime == "image/png":
            save_kwargs["optimize"] = True
        img.save(buf, format=_PIL_FORMATS[out_mime], **save_kwargs)
        width, height = img.width, img.height

    return ProcessedImage(buffer=buf.getvalue(), mime_type=out_mime, width=width, height=height)
