"""Image buffer containers and Pillow decode/encode helpers."""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass

import numpy as np
from PIL import Image, UnidentifiedImageError

from product_imagery.core.errors import ImageDecodeError

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass(frozen=True, slots=True)
class ImagePayload:
    """An encoded image buffer together with its MIME type."""

    data: bytes
    mime_type: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @classmethod
    def from_base64(cls, data: str, mime_type: str) -> "ImagePayload":
        return cls(data=base64.b64decode(data), mime_type=mime_type)


@dataclass(frozen=True, slots=True)
class SourceImagePayload:
    """A fetched reference image. Immutable once fetched."""

    url: str
    data: bytes
    base64: str
    mime_type: str
    sha256: str

    def as_payload(self) -> ImagePayload:
        return ImagePayload(data=self.data, mime_type=self.mime_type)


def pick_mime_type(content_type: str | None) -> str:
    """Normalize a Content-Type header to one of the supported image types."""
    if not content_type:
        return "image/png"
    lowered = content_type.lower()
    if "png" in lowered:
        return "image/png"
    if "webp" in lowered:
        return "image/webp"
    if "jpeg" in lowered or "jpg" in lowered:
        return "image/jpeg"
    return "image/png"


def sniff_mime_type(data: bytes, declared: str | None = None) -> str:
    """Detect the image type from magic bytes, falling back to the header."""
    if data.startswith(PNG_SIGNATURE):
        return "image/png"
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return pick_mime_type(declared)


def open_image(data: bytes) -> Image.Image:
    """Decode an image buffer, raising ImageDecodeError on failure."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Unable to decode image: {exc}") from exc
    return image


def image_has_alpha(image: Image.Image) -> bool:
    """True when the decoded image carries an alpha band or a tRNS entry."""
    if image.mode in ("RGBA", "LA", "PA", "RGBa", "La"):
        return True
    return "transparency" in image.info


def to_rgba_array(image: Image.Image) -> np.ndarray:
    """Return a writable (H, W, 4) uint8 array."""
    return np.array(image.convert("RGBA"), dtype=np.uint8)


def encode_png(rgba: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(rgba).save(buffer, format="PNG")
    return buffer.getvalue()


def extension_from_mime_type(mime_type: str) -> str:
    if "jpeg" in mime_type:
        return "jpg"
    if "webp" in mime_type:
        return "webp"
    return "png"
