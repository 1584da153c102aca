"""
Local border flood-fill background cutout.

Last-resort remover used when neither the model nor the external providers
return a usable alpha channel. It only works for flat or near-flat studio
backdrops: dominant border colors are treated as background and every
background-colored region connected to the image border is cleared.
"""

from __future__ import annotations

import math
from typing import List, Optional, Tuple

import cv2
import numpy as np

from product_imagery.config import logger
from product_imagery.core.errors import ImageDecodeError
from product_imagery.core.imaging import ImagePayload, encode_png, open_image, to_rgba_array
from product_imagery.core.transparency import (
    DEFAULT_THRESHOLDS,
    TransparencyThresholds,
    analyze_transparency,
)

MIN_DIMENSION = 32
QUANTIZE_STEP = 12
MAX_BACKGROUND_COLORS = 4
MIN_BUCKET_SHARE = 0.04
MIN_BUCKET_PIXELS = 8
BACKGROUND_MIN_ALPHA = 240
COLOR_TOLERANCE_SQ = 900
MIN_REMOVED_SHARE = 0.02
MAX_REMOVED_SHARE = 0.995

Color = Tuple[int, int, int]


def decode_for_cutout(image: ImagePayload) -> Optional[np.ndarray]:
    if "png" not in image.mime_type and "jpeg" not in image.mime_type and "jpg" not in image.mime_type:
        return None
    try:
        return to_rgba_array(open_image(image.data))
    except ImageDecodeError:
        return None


def _border_ring(rgba: np.ndarray) -> np.ndarray:
    """Pixels of the one-pixel outer ring, each exactly once."""
    return np.concatenate(
        [
            rgba[0, :],
            rgba[-1, :],
            rgba[1:-1, 0],
            rgba[1:-1, -1],
        ]
    )


def collect_dominant_border_colors(rgba: np.ndarray) -> List[Color]:
    height, width = rgba.shape[:2]
    if width < 2 or height < 2:
        return []

    ring = _border_ring(rgba)
    ring_size = len(ring)
    solid = ring[ring[:, 3] >= BACKGROUND_MIN_ALPHA][:, :3].astype(np.int64)
    if not len(solid):
        return []

    quantized = (np.floor(solid / QUANTIZE_STEP + 0.5) * QUANTIZE_STEP).astype(np.int64)
    keys = quantized[:, 0] * 1_000_000 + quantized[:, 1] * 1_000 + quantized[:, 2]
    _, inverse, counts = np.unique(keys, return_inverse=True, return_counts=True)

    min_bucket = max(MIN_BUCKET_PIXELS, int(math.floor(ring_size * MIN_BUCKET_SHARE)))
    colors: List[Color] = []
    for bucket in np.argsort(-counts, kind="stable"):
        if counts[bucket] < min_bucket:
            break
        members = solid[inverse.reshape(-1) == bucket]
        mean = np.floor(members.mean(axis=0) + 0.5).astype(int)
        colors.append((int(mean[0]), int(mean[1]), int(mean[2])))
        if len(colors) >= MAX_BACKGROUND_COLORS:
            break
    return colors


def background_mask(rgba: np.ndarray, colors: List[Color]) -> np.ndarray:
    rgb = rgba[:, :, :3].astype(np.int32)
    mask = np.zeros(rgba.shape[:2], dtype=bool)
    for color in colors:
        diff = rgb - np.array(color, dtype=np.int32)
        mask |= (diff * diff).sum(axis=2) <= COLOR_TOLERANCE_SQ
    return mask & (rgba[:, :, 3] >= BACKGROUND_MIN_ALPHA)


def flood_from_border(candidates: np.ndarray) -> np.ndarray:
    """Background pixels reachable from the border through 4-connected candidates."""
    _, labels = cv2.connectedComponents(candidates.astype(np.uint8), connectivity=4)
    edge_labels = np.unique(
        np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]])
    )
    edge_labels = edge_labels[edge_labels != 0]
    return np.isin(labels, edge_labels)


def feather_alpha(rgba: np.ndarray, flooded: np.ndarray) -> None:
    """Soften alpha of subject pixels touching cleared background, in place."""
    padded = np.pad(flooded, 1, mode="constant").astype(np.uint8)
    height, width = flooded.shape
    neighbours = np.zeros((height, width), dtype=np.uint8)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dy == 0 and dx == 0:
                continue
            neighbours += padded[1 + dy:1 + dy + height, 1 + dx:1 + dx + width]

    alpha = rgba[:, :, 3]
    edge = ~flooded & (alpha > 0) & (neighbours > 0)
    softened = np.where(neighbours >= 4, 150, np.where(neighbours >= 2, 190, 220)).astype(np.uint8)
    alpha[edge] = np.minimum(alpha[edge], softened[edge])


def apply_border_cutout(
    image: ImagePayload,
    thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS,
) -> Optional[ImagePayload]:
    """Return a transparent PNG cutout, or None when the cutout is rejected."""
    rgba = decode_for_cutout(image)
    if rgba is None:
        return None

    height, width = rgba.shape[:2]
    if width < MIN_DIMENSION or height < MIN_DIMENSION:
        return None

    colors = collect_dominant_border_colors(rgba)
    if not colors:
        return None

    flooded = flood_from_border(background_mask(rgba, colors))
    pixel_count = width * height
    removed = int(flooded.sum())
    if removed < int(math.floor(pixel_count * MIN_REMOVED_SHARE)) or removed > int(
        math.floor(pixel_count * MAX_REMOVED_SHARE)
    ):
        logger.debug(
            f"Local cutout rejected: removed {removed}/{pixel_count} pixels"
        )
        return None

    rgba[:, :, 3][flooded] = 0
    feather_alpha(rgba, flooded)

    output = encode_png(rgba)
    if not analyze_transparency(output, thresholds).has_usable_transparency:
        logger.debug("Local cutout rejected by transparency gate")
        return None
    return ImagePayload(data=output, mime_type="image/png")
