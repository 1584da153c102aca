import numpy as np
import pytest

from product_imagery.core.transparency import (
    TransparencyThresholds,
    analyze_rgba,
    analyze_transparency,
    border_thickness,
    has_usable_transparency,
)
from tests.builders import cutout_png, rgba_png, studio_png


def test_clean_cutout_is_usable():
    analysis = analyze_transparency(cutout_png())

    assert analysis.has_alpha_channel
    assert analysis.has_usable_transparency
    assert analysis.transparent_ratio == pytest.approx(0.75)
    assert analysis.border_transparent_ratio == 1.0
    assert analysis.opaque_ratio == pytest.approx(0.25)


def test_image_without_alpha_is_rejected():
    analysis = analyze_transparency(studio_png())

    assert not analysis.has_alpha_channel
    assert not analysis.has_usable_transparency
    assert analysis.border_opaque_ratio == 1.0


def test_undecodable_bytes_are_rejected_not_raised():
    analysis = analyze_transparency(b"definitely not an image")

    assert not analysis.has_alpha_channel
    assert not analysis.has_usable_transparency


def test_rgba_with_opaque_backdrop_is_rejected():
    analysis = analyze_transparency(studio_png(mode="RGBA"))

    assert analysis.has_alpha_channel
    assert analysis.transparent_ratio == 0.0
    assert not analysis.has_usable_transparency


def test_fully_transparent_image_is_rejected():
    analysis = analyze_transparency(rgba_png(alpha=0))

    assert analysis.transparent_ratio == 1.0
    assert analysis.opaque_ratio == 0.0
    assert not analysis.has_usable_transparency


def test_uniform_half_alpha_counts_as_semi_transparent_border():
    analysis = analyze_transparency(rgba_png(alpha=128))

    assert analysis.border_semi_transparent_ratio == 1.0
    assert not analysis.has_usable_transparency


def test_subject_touching_every_edge_is_rejected():
    rgba = np.zeros((64, 64, 4), dtype=np.uint8)
    rgba[:, :, 3] = 0
    rgba[0, :, 3] = 255
    rgba[-1, :, 3] = 255
    rgba[:, 0, 3] = 255
    rgba[:, -1, 3] = 255

    analysis = analyze_rgba(rgba)

    assert analysis.foreground_touches_all_edges
    assert analysis.foreground_bbox_area_ratio == 1.0
    assert not analysis.has_usable_transparency


def test_thresholds_are_configurable():
    strict = TransparencyThresholds(min_opaque_ratio=0.5)

    assert has_usable_transparency(cutout_png())
    assert not has_usable_transparency(cutout_png(), strict)


@pytest.mark.parametrize(
    "width,height,expected",
    [(64, 64, 2), (200, 300, 6), (1000, 1000, 12), (10, 4000, 2)],
)
def test_border_thickness(width, height, expected):
    assert border_thickness(width, height) == expected


def test_analysis_serializes_all_metrics():
    data = analyze_transparency(cutout_png()).to_dict()

    assert set(data) >= {
        "has_alpha_channel",
        "transparent_ratio",
        "border_transparent_ratio",
        "center_transparent_ratio",
        "foreground_bbox_area_ratio",
        "has_usable_transparency",
    }


def test_repeated_analysis_is_identical():
    data = cutout_png()

    first = analyze_transparency(data)
    second = analyze_transparency(data)

    assert first == second
    assert first.to_dict() == second.to_dict()
