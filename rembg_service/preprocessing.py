"""
Image decoding and preprocessing for the segmentation models.

Every registry model takes a fixed square input, so the image is resized
(aspect ratio not preserved) with a fixed Lanczos filter and normalized per
channel. The same bytes always produce the same tensor.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError
from .registry import ModelSpec


@dataclass
class PreprocessResult:
    tensor: np.ndarray  # (1, 3, H, W) float32
    orig_size: Tuple[int, int]  # (width, height)
    resized_size: Tuple[int, int]


def decode_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into an RGB image honoring EXIF orientation."""
    if not image_bytes:
        raise DecodeError("input image is empty")
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            image = ImageOps.exif_transpose(image)
            rgb = image.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"invalid or corrupted image data: {exc}") from exc
    if rgb.width <= 0 or rgb.height <= 0:
        raise DecodeError("image has no pixels")
    return rgb


def normalize(rgb: np.ndarray, mean, scale) -> np.ndarray:
    """``(pixel / 255 - mean) / scale`` per channel, HWC uint8 -> CHW float32."""
    im = rgb.astype(np.float32) / 255.0
    im = (im - np.asarray(mean, dtype=np.float32)) / np.asarray(scale, dtype=np.float32)
    return np.transpose(im, (2, 0, 1)).astype(np.float32)


def prepare_tensor(image: Image.Image, spec: ModelSpec) -> PreprocessResult:
    """Resize to the model's input size and normalize into an NCHW batch of one."""
    orig_size = image.size
    if orig_size != spec.input_size:
        resized = image.resize(spec.input_size, Image.LANCZOS)
    else:
        resized = image
    tensor = normalize(np.asarray(resized, dtype=np.uint8), spec.mean, spec.scale)[np.newaxis, ...]
    return PreprocessResult(tensor=np.ascontiguousarray(tensor), orig_size=orig_size, resized_size=spec.input_size)
