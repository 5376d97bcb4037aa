"""Mask refinement and compositing for segmentation masks."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from . import config
from .errors import EncodeError, InvalidOptions

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

BG_PATCH_SIZE = 6
DEFAULT_BACKGROUND: RGB = (255, 255, 255)


def parse_hex_color(value: str) -> RGB:
    """Parse ``RRGGBB`` or ``#RRGGBB``."""
    raw = (value or "").strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        raise InvalidOptions(f"invalid bgcolor {value!r} (expected RRGGBB or #RRGGBB)", bgcolor=value)
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError as exc:
        raise InvalidOptions(f"invalid bgcolor {value!r} (expected RRGGBB or #RRGGBB)", bgcolor=value) from exc


def estimate_background(rgb: np.ndarray, patch: int = BG_PATCH_SIZE) -> RGB:
    """Mean color of the four corner patches; white for an empty image."""
    h, w = rgb.shape[:2]
    if h == 0 or w == 0:
        return DEFAULT_BACKGROUND
    p = min(patch, w, h)
    corners = [
        rgb[0:p, 0:p],
        rgb[0:p, w - p : w],
        rgb[h - p : h, 0:p],
        rgb[h - p : h, w - p : w],
    ]
    samples = np.concatenate([c.reshape(-1, 3) for c in corners]).astype(np.uint64)
    mean = samples.sum(axis=0) // samples.shape[0]
    return int(mean[0]), int(mean[1]), int(mean[2])


# ---------- mask refiners ----------


class MaskRefiner:
    """One step of mask post-processing. Refiners never raise on pixel data."""

    name = "none"

    def apply(self, rgb: np.ndarray, mask: np.ndarray) -> np.ndarray:
        return mask


@dataclass
class ThresholdRefiner(MaskRefiner):
    threshold: int
    name = "threshold"

    def apply(self, rgb: np.ndarray, mask: np.ndarray) -> np.ndarray:
        return np.where(mask >= self.threshold, 255, 0).astype(np.uint8)


@dataclass
class ColorKeyRefiner(MaskRefiner):
    """
    Punch out foreground pixels whose color is close to the estimated background.

    Distance is Euclidean in RGB; a pixel is keyed out when the distance is
    ``<= tolerance``. The background estimate is the corner-patch mean.
    """

    tolerance: int
    background: Optional[RGB] = None
    name = "color_key"

    def apply(self, rgb: np.ndarray, mask: np.ndarray) -> np.ndarray:
        if self.tolerance <= 0:
            return mask
        bg = self.background or estimate_background(rgb)
        diff = rgb.astype(np.int32) - np.asarray(bg, dtype=np.int32)
        dist2 = np.einsum("ijk,ijk->ij", diff, diff)
        keyed = (dist2 <= self.tolerance * self.tolerance) & (mask > 0)
        if not np.any(keyed):
            return mask
        out = mask.copy()
        out[keyed] = 0
        logger.debug("color key bg=%s tol=%d removed %d px", bg, self.tolerance, int(keyed.sum()))
        return out


def build_refiners(
    mask_threshold: Optional[int] = None,
    color_key_tolerance: Optional[int] = None,
    with_color_key: bool = True,
) -> List[MaskRefiner]:
    refiners: List[MaskRefiner] = []
    if mask_threshold is not None:
        refiners.append(ThresholdRefiner(int(mask_threshold)))
    if with_color_key and color_key_tolerance:
        refiners.append(ColorKeyRefiner(int(color_key_tolerance)))
    return refiners


def refine_mask(rgb: np.ndarray, mask: np.ndarray, refiners: Iterable[MaskRefiner]) -> np.ndarray:
    for refiner in refiners:
        mask = refiner.apply(rgb, mask)
    return mask


# ---------- compositing ----------


def compose_rgba(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    return np.dstack((rgb.astype(np.uint8), alpha.astype(np.uint8)))


def composite_over_color(rgb: np.ndarray, alpha: np.ndarray, color: RGB) -> np.ndarray:
    """Alpha-blend over a solid color in integer math: ``(fg*a + bg*(255-a) + 127) // 255``."""
    a = alpha.astype(np.uint32)[..., None]
    fg = rgb.astype(np.uint32)
    bg = np.asarray(color, dtype=np.uint32)
    out = (fg * a + bg * (255 - a) + 127) // 255
    return out.astype(np.uint8)


def encode_png(array: np.ndarray, mode: str) -> bytes:
    try:
        image = Image.fromarray(np.ascontiguousarray(array))
        if image.mode != mode:
            image = image.convert(mode)
        buf = BytesIO()
        image.save(buf, format="PNG")
    except (ValueError, TypeError, OSError) as exc:
        raise EncodeError(f"failed to encode {mode} PNG: {exc}") from exc
    return buf.getvalue()


@dataclass
class ComposeResult:
    image: np.ndarray
    mode: str
    mask: np.ndarray


def _maybe_dump_debug(raw: np.ndarray, final: np.ndarray, debug_dir: Path) -> None:
    """Optionally write the raw and refined masks when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "mask_raw.png"), raw)
        cv2.imwrite(str(debug_dir / "mask_final.png"), final)
        logger.debug("postprocess: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)


def refine_and_compose(
    rgb: np.ndarray,
    mask: np.ndarray,
    mask_threshold: Optional[int] = None,
    bgcolor: Optional[RGB] = None,
    color_key_tolerance: Optional[int] = None,
    settings: Optional[config.Settings] = None,
) -> ComposeResult:
    """
    Turn a full-resolution 8-bit mask into the output raster.

    With ``bgcolor`` the foreground is blended over that color into an opaque
    RGB image (the color key is not applied there); otherwise the refined mask
    becomes the alpha channel of an RGBA image.
    """
    settings = settings or config.get_settings()
    mask = mask.astype(np.uint8)
    refiners = build_refiners(mask_threshold, color_key_tolerance, with_color_key=bgcolor is None)
    logger.debug("postprocess refiners=%s bgcolor=%s", [r.name for r in refiners], bgcolor)
    alpha = refine_mask(rgb, mask, refiners)

    if settings.debug:
        _maybe_dump_debug(mask, alpha, Path(settings.debug_output_dir))

    if bgcolor is not None:
        return ComposeResult(image=composite_over_color(rgb, alpha, bgcolor), mode="RGB", mask=alpha)
    return ComposeResult(image=compose_rgba(rgb, alpha), mode="RGBA", mask=alpha)


def standalone_mask(mask: np.ndarray, mask_threshold: Optional[int] = None) -> np.ndarray:
    """Mask emitted next to the cutout: thresholded when a threshold is set."""
    if mask_threshold is None:
        return mask.astype(np.uint8)
    return np.where(mask >= int(mask_threshold), 255, 0).astype(np.uint8)
