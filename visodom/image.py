"""Grey-level image access: bilinear sampling, pyramids and loading."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Union

import numpy as np
from PIL import Image

Number = Union[float, np.ndarray]


def _gray(image: np.ndarray) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError(f"expected a single-channel image, got shape {array.shape}")
    if array.shape[0] == 0 or array.shape[1] == 0:
        raise ValueError("image is empty")
    return array


def get_pixel_value(image: np.ndarray, x: Number, y: Number) -> Number:
    """Bilinearly interpolated value at ``(x, y)``; coordinates are clamped to the image.

    ``x`` and ``y`` may be scalars or arrays of the same shape.
    """
    img = _gray(image)
    h, w = img.shape
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    xa = np.where(xa < 0.0, 0.0, xa)
    ya = np.where(ya < 0.0, 0.0, ya)
    xa = np.where(xa >= w, w - 1.0, xa)
    ya = np.where(ya >= h, h - 1.0, ya)

    x0 = np.floor(xa).astype(np.int64)
    y0 = np.floor(ya).astype(np.int64)
    x1 = np.minimum(x0 + 1, w - 1)
    y1 = np.minimum(y0 + 1, h - 1)
    xx = xa - x0
    yy = ya - y0

    value = (
        (1.0 - xx) * (1.0 - yy) * img[y0, x0]
        + xx * (1.0 - yy) * img[y0, x1]
        + (1.0 - xx) * yy * img[y1, x0]
        + xx * yy * img[y1, x1]
    )
    if np.ndim(value) == 0:
        return float(value)
    return value


def _resize_bilinear(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Bilinear resize with pixel centres aligned, as used for image pyramids."""
    h, w = image.shape
    src = image.astype(float)

    def coords(dst: int, size: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        ratio = size / dst
        pos = (np.arange(dst) + 0.5) * ratio - 0.5
        pos = np.clip(pos, 0.0, size - 1.0)
        low = np.floor(pos).astype(np.int64)
        high = np.minimum(low + 1, size - 1)
        return low, high, pos - low

    x0, x1, wx = coords(width, w)
    y0, y1, wy = coords(height, h)
    top = src[y0][:, x0] * (1.0 - wx) + src[y0][:, x1] * wx
    bottom = src[y1][:, x0] * (1.0 - wx) + src[y1][:, x1] * wx
    result = top * (1.0 - wy)[:, None] + bottom * wy[:, None]

    if np.issubdtype(image.dtype, np.integer):
        info = np.iinfo(image.dtype)
        return np.clip(np.rint(result), info.min, info.max).astype(image.dtype)
    return result.astype(image.dtype)


def build_pyramid(image: np.ndarray, levels: int = 4, scale: float = 0.5) -> list[np.ndarray]:
    """Image pyramid; level 0 is the image itself, each next level resized by ``scale``."""
    img = _gray(image)
    if levels < 1:
        raise ValueError("a pyramid needs at least one level")
    if not 0.0 < scale <= 1.0:
        raise ValueError("scale must be in (0, 1]")
    pyramid = [img]
    for _ in range(1, levels):
        previous = pyramid[-1]
        height = int(math.floor(previous.shape[0] * scale))
        width = int(math.floor(previous.shape[1] * scale))
        if height < 1 or width < 1:
            raise ValueError("image is too small for this many pyramid levels")
        pyramid.append(_resize_bilinear(previous, width, height))
    return pyramid


def load_gray(path: Union[str, Path]) -> np.ndarray:
    """Load an image file as an 8-bit single-channel array."""
    with Image.open(path) as picture:
        return np.asarray(picture.convert("L"))