from __future__ import annotations

import io

import numpy as np
from PIL import Image
import pytest

from rembg_service.errors import InvalidOptions
from rembg_service.postprocessing import (
    ColorKeyRefiner,
    ThresholdRefiner,
    build_refiners,
    composite_over_color,
    encode_png,
    estimate_background,
    parse_hex_color,
    refine_and_compose,
    standalone_mask,
)


def _scene():
    """Grey backdrop with a near-grey ring and a dark subject in the middle."""
    rgb = np.full((40, 40, 3), 200, dtype=np.uint8)
    rgb[10:30, 10:30] = 190
    rgb[15:25, 15:25] = 10
    return rgb


def test_threshold_binarizes(settings) -> None:
    rgb = np.zeros((4, 4, 3), dtype=np.uint8)
    mask = np.full((4, 4), 200, dtype=np.uint8)

    kept = refine_and_compose(rgb, mask, mask_threshold=150, settings=settings)
    dropped = refine_and_compose(rgb, mask, mask_threshold=220, settings=settings)

    assert kept.mode == "RGBA"
    assert (kept.image[..., 3] == 255).all()
    assert (dropped.image[..., 3] == 0).all()


def test_threshold_boundary_is_inclusive() -> None:
    mask = np.array([[149, 150, 151]], dtype=np.uint8)
    out = ThresholdRefiner(150).apply(np.zeros((1, 3, 3), dtype=np.uint8), mask)
    assert out.tolist() == [[0, 255, 255]]


def test_bgcolor_over_transparent_mask_is_solid(settings) -> None:
    rgb = np.random.default_rng(0).integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
    mask = np.zeros((8, 8), dtype=np.uint8)

    out = refine_and_compose(rgb, mask, bgcolor=parse_hex_color("00FF00"), settings=settings)

    assert out.mode == "RGB"
    assert out.image.shape == (8, 8, 3)
    assert (out.image == np.array([0, 255, 0], dtype=np.uint8)).all()


def test_composite_blend_rounds() -> None:
    rgb = np.full((1, 1, 3), 255, dtype=np.uint8)
    alpha = np.array([[128]], dtype=np.uint8)
    out = composite_over_color(rgb, alpha, (0, 0, 0))
    assert out[0, 0].tolist() == [128, 128, 128]


def test_color_key_is_monotonic_in_tolerance() -> None:
    rgb = _scene()
    mask = np.full((40, 40), 255, dtype=np.uint8)
    removed = []
    for tolerance in (0, 5, 20, 60, 400):
        keyed = ColorKeyRefiner(tolerance).apply(rgb, mask)
        removed.append(int((keyed == 0).sum()))
        # Pixels far from the backdrop stay opaque until the tolerance covers them.
        if tolerance < 300:
            assert (keyed[15:25, 15:25] == 255).all()

    assert removed == sorted(removed)
    assert removed[0] == 0
    assert removed[1] == 40 * 40 - 20 * 20
    assert removed[2] == 40 * 40 - 10 * 10


def test_color_key_only_touches_foreground() -> None:
    rgb = _scene()
    mask = np.zeros((40, 40), dtype=np.uint8)
    mask[:, 20:] = 255
    keyed = ColorKeyRefiner(60).apply(rgb, mask)
    assert (keyed[:, :20] == 0).all()
    assert keyed[20, 22] == 255


def test_color_key_skipped_with_bgcolor(settings) -> None:
    rgb = _scene()
    mask = np.full((40, 40), 255, dtype=np.uint8)
    out = refine_and_compose(rgb, mask, bgcolor=(0, 0, 255), color_key_tolerance=400, settings=settings)
    assert (out.image == rgb).all()
    assert [r.name for r in build_refiners(None, 400, with_color_key=False)] == []


def test_estimate_background_uses_corners() -> None:
    rgb = np.zeros((20, 20, 3), dtype=np.uint8)
    rgb[:6, :6] = 100
    rgb[:6, -6:] = 100
    rgb[-6:, :6] = 100
    rgb[-6:, -6:] = 100
    rgb[8:12, 8:12] = 255
    assert estimate_background(rgb) == (100, 100, 100)
    assert estimate_background(np.zeros((0, 0, 3), dtype=np.uint8)) == (255, 255, 255)


@pytest.mark.parametrize("value", ["00FF00", "#00ff00", " #00FF00 "])
def test_parse_hex_color(value) -> None:
    assert parse_hex_color(value) == (0, 255, 0)


@pytest.mark.parametrize("value", ["", "0F0", "#GG0000", "1234567"])
def test_parse_hex_color_rejects(value) -> None:
    with pytest.raises(InvalidOptions):
        parse_hex_color(value)


def test_png_is_lossless() -> None:
    rgba = np.random.default_rng(1).integers(0, 256, size=(9, 7, 4), dtype=np.uint8)
    decoded = Image.open(io.BytesIO(encode_png(rgba, "RGBA")))
    assert decoded.mode == "RGBA"
    assert decoded.size == (7, 9)
    assert (np.asarray(decoded) == rgba).all()


def test_standalone_mask() -> None:
    mask = np.array([[10, 128, 250]], dtype=np.uint8)
    assert standalone_mask(mask).tolist() == [[10, 128, 250]]
    assert standalone_mask(mask, 128).tolist() == [[0, 255, 255]]
