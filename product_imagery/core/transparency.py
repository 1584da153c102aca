"""
Alpha-channel quality metrics for generated catalog images.

The transparency gate decides whether an image's alpha channel is usable for
storefront card compositing. Every repair stage re-runs the analysis against
its freshly produced buffer; results are never cached.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict

import numpy as np

from product_imagery.core.errors import ImageDecodeError
from product_imagery.core.imaging import image_has_alpha, open_image, to_rgba_array


@dataclass(frozen=True)
class TransparencyThresholds:
    """Gate constants. Tuned empirically on light studio backdrops."""

    alpha_transparent_max: int = 5
    alpha_near_opaque_min: int = 224
    min_transparent_ratio: float = 0.03
    max_transparent_ratio: float = 0.98
    min_border_transparent_ratio: float = 0.55
    max_border_opaque_ratio: float = 0.08
    max_border_semi_transparent_ratio: float = 0.22
    max_center_transparent_ratio: float = 0.9
    min_opaque_ratio: float = 0.02
    max_foreground_bbox_area_ratio: float = 0.95


DEFAULT_THRESHOLDS = TransparencyThresholds()


@dataclass(frozen=True)
class TransparencyAnalysis:
    has_alpha_channel: bool
    transparent_ratio: float
    border_transparent_ratio: float
    border_opaque_ratio: float
    border_semi_transparent_ratio: float
    center_transparent_ratio: float
    opaque_ratio: float
    foreground_bbox_area_ratio: float
    foreground_touches_all_edges: bool
    has_usable_transparency: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


UNDECODABLE_ANALYSIS = TransparencyAnalysis(
    has_alpha_channel=False,
    transparent_ratio=0.0,
    border_transparent_ratio=0.0,
    border_opaque_ratio=0.0,
    border_semi_transparent_ratio=0.0,
    center_transparent_ratio=1.0,
    opaque_ratio=0.0,
    foreground_bbox_area_ratio=0.0,
    foreground_touches_all_edges=False,
    has_usable_transparency=False,
)

OPAQUE_ANALYSIS = TransparencyAnalysis(
    has_alpha_channel=False,
    transparent_ratio=0.0,
    border_transparent_ratio=0.0,
    border_opaque_ratio=1.0,
    border_semi_transparent_ratio=0.0,
    center_transparent_ratio=1.0,
    opaque_ratio=1.0,
    foreground_bbox_area_ratio=1.0,
    foreground_touches_all_edges=True,
    has_usable_transparency=False,
)


def border_thickness(width: int, height: int) -> int:
    return max(2, min(12, int(math.floor(min(width, height) * 0.03))))


def analyze_transparency(
    image_bytes: bytes,
    thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS,
) -> TransparencyAnalysis:
    """Decode an encoded image and compute its transparency metrics."""
    try:
        image = open_image(image_bytes)
    except ImageDecodeError:
        return UNDECODABLE_ANALYSIS

    width, height = image.size
    if width <= 0 or height <= 0:
        return UNDECODABLE_ANALYSIS
    if not image_has_alpha(image):
        return OPAQUE_ANALYSIS

    return analyze_rgba(to_rgba_array(image), thresholds=thresholds)


def analyze_rgba(
    rgba: np.ndarray,
    has_alpha: bool = True,
    thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS,
) -> TransparencyAnalysis:
    """Compute transparency metrics from an (H, W, 4) uint8 array."""
    if not has_alpha:
        return OPAQUE_ANALYSIS
    if rgba.ndim != 3 or rgba.shape[2] < 4 or rgba.shape[0] == 0 or rgba.shape[1] == 0:
        return UNDECODABLE_ANALYSIS

    height, width = rgba.shape[:2]
    total = width * height
    alpha = rgba[:, :, 3]

    transparent = alpha <= thresholds.alpha_transparent_max
    near_opaque = alpha >= thresholds.alpha_near_opaque_min
    semi = ~transparent & ~near_opaque

    transparent_count = int(transparent.sum())
    transparent_ratio = transparent_count / total
    opaque_ratio = (total - transparent_count) / total

    thickness = border_thickness(width, height)
    border = np.zeros((height, width), dtype=bool)
    border[:thickness, :] = True
    border[height - thickness:, :] = True
    border[:, :thickness] = True
    border[:, width - thickness:] = True
    border_count = int(border.sum())
    if border_count:
        border_transparent_ratio = int((transparent & border).sum()) / border_count
        border_opaque_ratio = int((near_opaque & border).sum()) / border_count
        border_semi_ratio = int((semi & border).sum()) / border_count
    else:
        border_transparent_ratio = border_opaque_ratio = border_semi_ratio = 0.0

    center = transparent[
        int(math.floor(height * 0.2)):int(math.ceil(height * 0.8)),
        int(math.floor(width * 0.3)):int(math.ceil(width * 0.7)),
    ]
    center_transparent_ratio = float(center.mean()) if center.size else 1.0

    ys, xs = np.nonzero(near_opaque)
    if xs.size:
        min_x, max_x = int(xs.min()), int(xs.max())
        min_y, max_y = int(ys.min()), int(ys.max())
        bbox_area_ratio = ((max_x - min_x + 1) * (max_y - min_y + 1)) / total
        touches_all_edges = (
            min_x == 0 and max_x == width - 1 and min_y == 0 and max_y == height - 1
        )
    else:
        bbox_area_ratio = 0.0
        touches_all_edges = False

    t = thresholds
    usable = (
        t.min_transparent_ratio <= transparent_ratio <= t.max_transparent_ratio
        and border_transparent_ratio >= t.min_border_transparent_ratio
        and border_opaque_ratio <= t.max_border_opaque_ratio
        and border_semi_ratio <= t.max_border_semi_transparent_ratio
        and center_transparent_ratio <= t.max_center_transparent_ratio
        and opaque_ratio >= t.min_opaque_ratio
        and bbox_area_ratio <= t.max_foreground_bbox_area_ratio
        and not (touches_all_edges and bbox_area_ratio >= t.max_foreground_bbox_area_ratio)
    )

    return TransparencyAnalysis(
        has_alpha_channel=True,
        transparent_ratio=transparent_ratio,
        border_transparent_ratio=border_transparent_ratio,
        border_opaque_ratio=border_opaque_ratio,
        border_semi_transparent_ratio=border_semi_ratio,
        center_transparent_ratio=center_transparent_ratio,
        opaque_ratio=opaque_ratio,
        foreground_bbox_area_ratio=bbox_area_ratio,
        foreground_touches_all_edges=touches_all_edges,
        has_usable_transparency=bool(usable),
    )


def has_usable_transparency(
    image_bytes: bytes,
    thresholds: TransparencyThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    return analyze_transparency(image_bytes, thresholds).has_usable_transparency
