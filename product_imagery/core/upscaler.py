"""Deterministic HD resize and re-encode of final catalog images."""

from __future__ import annotations

import io
import math
from dataclasses import dataclass
from typing import Tuple

from PIL import Image, ImageFilter

from product_imagery.config import OUTPUT_MIN_LONG_EDGE, logger
from product_imagery.core.imaging import ImagePayload, image_has_alpha, open_image

DEFAULT_MAX_SCALE = 4.0
DEFAULT_MAX_LONG_EDGE = 4096


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_target_dimensions(
    width: int,
    height: int,
    scale_factor: float,
    max_long_edge: int,
) -> Tuple[int, int]:
    target_width = max(1, _round_half_up(width * scale_factor))
    target_height = max(1, _round_half_up(height * scale_factor))
    if max_long_edge > 0:
        long_edge = max(target_width, target_height)
        if long_edge > max_long_edge:
            ratio = max_long_edge / long_edge
            target_width = max(1, _round_half_up(target_width * ratio))
            target_height = max(1, _round_half_up(target_height * ratio))
    return target_width, target_height


@dataclass(frozen=True)
class HdRenderResult:
    image: ImagePayload
    width: int
    height: int
    has_alpha: bool


def render_hd(image: ImagePayload, width: int, height: int) -> HdRenderResult:
    """
    Resize with Lanczos and sharpen.

    Images with alpha are written as optimized PNG, opaque ones as lossless WEBP.

    Raises:
        ImageDecodeError: If the buffer cannot be decoded
    """
    source = open_image(image.data)
    has_alpha = image_has_alpha(source)
    mode = "RGBA" if has_alpha else "RGB"

    resized = source.convert(mode).resize((width, height), Image.Resampling.LANCZOS)
    sharpened = resized.filter(ImageFilter.UnsharpMask(radius=1.25, percent=85, threshold=2))

    buffer = io.BytesIO()
    if has_alpha:
        sharpened.save(buffer, format="PNG", optimize=True)
        mime_type = "image/png"
    else:
        sharpened.save(buffer, format="WEBP", lossless=True, quality=100, method=6)
        mime_type = "image/webp"

    return HdRenderResult(
        image=ImagePayload(data=buffer.getvalue(), mime_type=mime_type),
        width=width,
        height=height,
        has_alpha=has_alpha,
    )


@dataclass(frozen=True)
class UpscaleResult:
    image: ImagePayload
    upscaled: bool
    width: int
    height: int


def upscale_to_minimum(
    image: ImagePayload,
    min_long_edge: int = OUTPUT_MIN_LONG_EDGE,
    max_scale: float = DEFAULT_MAX_SCALE,
    max_long_edge: int = DEFAULT_MAX_LONG_EDGE,
) -> UpscaleResult:
    """Enlarge the image until its long edge reaches ``min_long_edge``."""
    width, height = open_image(image.data).size
    long_edge = max(width, height)
    if long_edge >= min_long_edge:
        return UpscaleResult(image=image, upscaled=False, width=width, height=height)

    scale = min(max_scale, min_long_edge / long_edge)
    target_width, target_height = compute_target_dimensions(
        width, height, scale, max_long_edge
    )
    rendered = render_hd(image, target_width, target_height)
    logger.debug(
        f"Upscaled output from {width}x{height} to {target_width}x{target_height}"
    )
    return UpscaleResult(
        image=rendered.image,
        upscaled=True,
        width=target_width,
        height=target_height,
    )
