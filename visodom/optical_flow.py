"""Lucas-Kanade optical flow by Gauss-Newton, single level and coarse to fine."""

from __future__ import annotations

import dataclasses
import sys
import time
from typing import Optional, Sequence

import numpy as np
from PIL import Image, ImageDraw
from scipy.ndimage import maximum_filter, sobel, uniform_filter

from visodom.features import KeyPoint
from visodom.image import build_pyramid, get_pixel_value, load_gray

DEFAULT_FIRST_FILE = "./LK1.png"
DEFAULT_SECOND_FILE = "./LK2.png"

HALF_PATCH_SIZE = 4
ITERATIONS = 10
CONVERGENCE = 1e-2
PYRAMIDS = 4
PYRAMID_SCALE = 0.5

_OFFSET_X, _OFFSET_Y = (
    grid.ravel().astype(float)
    for grid in np.meshgrid(
        np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE),
        np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE),
    )
)


def _solve(hessian: np.ndarray, bias: np.ndarray) -> Optional[np.ndarray]:
    try:
        update = np.linalg.solve(hessian, bias)
    except np.linalg.LinAlgError:
        return None
    return update if np.all(np.isfinite(update)) else None


def _gradient(img: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    return -np.stack(
        [
            0.5 * (get_pixel_value(img, xs + 1, ys) - get_pixel_value(img, xs - 1, ys)),
            0.5 * (get_pixel_value(img, xs, ys + 1) - get_pixel_value(img, xs, ys - 1)),
        ]
    )


def _track(
    img1: np.ndarray,
    img2: np.ndarray,
    kp: KeyPoint,
    dx: float,
    dy: float,
    inverse: bool,
) -> tuple[float, float, bool]:
    x1 = kp.x + _OFFSET_X
    y1 = kp.y + _OFFSET_Y
    reference = get_pixel_value(img1, x1, y1)
    hessian = np.zeros((2, 2))
    jacobian = np.zeros((2, len(x1)))
    last_cost = 0.0
    succ = True

    for iteration in range(ITERATIONS):
        if not inverse:
            hessian = np.zeros((2, 2))
        x2 = x1 + dx
        y2 = y1 + dy
        error = reference - get_pixel_value(img2, x2, y2)
        if not inverse:
            jacobian = _gradient(img2, x2, y2)
        elif iteration == 0:
            # The inverse formulation keeps the template gradient fixed.
            jacobian = _gradient(img1, x1, y1)

        bias = -(jacobian @ error)
        cost = float(error @ error)
        if not inverse or iteration == 0:
            hessian = hessian + jacobian @ jacobian.T

        update = _solve(hessian, bias)
        if update is None:
            succ = False
            break
        if iteration > 0 and cost > last_cost:
            break

        dx += float(update[0])
        dy += float(update[1])
        last_cost = cost
        succ = True
        if float(np.linalg.norm(update)) < CONVERGENCE:
            break

    return dx, dy, succ


def optical_flow_single_level(
    img1: np.ndarray,
    img2: np.ndarray,
    kp1: Sequence[KeyPoint],
    kp2: Optional[Sequence[KeyPoint]] = None,
    inverse: bool = False,
    has_initial: bool = False,
) -> tuple[list[KeyPoint], list[bool]]:
    """Track ``kp1`` from ``img1`` into ``img2``.

    With ``has_initial`` the positions in ``kp2`` are the starting guesses.
    Returns the tracked keypoints and, for each, whether tracking succeeded.
    """
    first = np.asarray(img1)
    second = np.asarray(img2)
    for image in (first, second):
        if image.ndim != 2:
            raise ValueError(f"expected a single-channel image, got shape {image.shape}")
    if has_initial:
        if kp2 is None:
            raise ValueError("initial guesses are required when has_initial is set")
        if len(kp2) != len(kp1):
            raise ValueError(f"got {len(kp2)} initial guesses for {len(kp1)} keypoints")

    tracked: list[KeyPoint] = []
    success: list[bool] = []
    for i, kp in enumerate(kp1):
        if has_initial:
            guess = kp2[i]
            dx, dy = guess.x - kp.x, guess.y - kp.y
        else:
            dx = dy = 0.0
        dx, dy, succ = _track(first, second, kp, dx, dy, inverse)
        tracked.append(dataclasses.replace(kp, x=kp.x + dx, y=kp.y + dy))
        success.append(succ)
    return tracked, success


def optical_flow_multi_level(
    img1: np.ndarray,
    img2: np.ndarray,
    kp1: Sequence[KeyPoint],
    inverse: bool = False,
) -> tuple[list[KeyPoint], list[bool]]:
    """Coarse-to-fine tracking over a four-level pyramid halved at each level."""
    pyr1 = build_pyramid(img1, PYRAMIDS, PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, PYRAMIDS, PYRAMID_SCALE)
    top = PYRAMID_SCALE ** (PYRAMIDS - 1)

    kp1_pyr = [dataclasses.replace(kp, x=kp.x * top, y=kp.y * top) for kp in kp1]
    kp2_pyr = list(kp1_pyr)
    success: list[bool] = [True] * len(kp1)

    for level in range(PYRAMIDS - 1, -1, -1):
        kp2_pyr, success = optical_flow_single_level(
            pyr1[level], pyr2[level], kp1_pyr, kp2_pyr, inverse, True
        )
        if level > 0:
            kp1_pyr = [
                dataclasses.replace(kp, x=kp.x / PYRAMID_SCALE, y=kp.y / PYRAMID_SCALE)
                for kp in kp1_pyr
            ]
            kp2_pyr = [
                dataclasses.replace(kp, x=kp.x / PYRAMID_SCALE, y=kp.y / PYRAMID_SCALE)
                for kp in kp2_pyr
            ]
    return kp2_pyr, success


def _good_features_to_track(
    image: np.ndarray,
    max_corners: int = 500,
    quality_level: float = 0.01,
    min_distance: float = 20.0,
) -> list[KeyPoint]:
    """Shi-Tomasi corners: strongest first, at least ``min_distance`` apart."""
    img = np.asarray(image, dtype=float)
    gx = sobel(img, axis=1)
    gy = sobel(img, axis=0)
    a = uniform_filter(gx * gx, 3)
    b = uniform_filter(gx * gy, 3)
    c = uniform_filter(gy * gy, 3)
    response = 0.5 * (a + c) - np.sqrt(0.25 * (a - c) ** 2 + b * b)
    peak = float(response.max())
    if peak <= 0.0:
        return []
    keep = (response > quality_level * peak) & (response >= maximum_filter(response, size=3))
    ys, xs = np.nonzero(keep)
    order = np.argsort(-response[ys, xs], kind="stable")

    accepted: list[tuple[float, float]] = []
    corners: list[KeyPoint] = []
    limit = min_distance * min_distance
    for idx in order:
        x, y = float(xs[idx]), float(ys[idx])
        if any((x - ax) ** 2 + (y - ay) ** 2 < limit for ax, ay in accepted):
            continue
        accepted.append((x, y))
        corners.append(KeyPoint(x=x, y=y, size=3.0, response=float(response[ys[idx], xs[idx]])))
        if len(corners) >= max_corners:
            break
    return corners


def _draw_tracks(
    image: np.ndarray,
    kp1: Sequence[KeyPoint],
    kp2: Sequence[KeyPoint],
    success: Sequence[bool],
) -> Image.Image:
    canvas = Image.fromarray(np.asarray(image).astype(np.uint8)).convert("RGB")
    draw = ImageDraw.Draw(canvas)
    green = (0, 250, 0)
    for start, end, ok in zip(kp1, kp2, success):
        if ok:
            draw.ellipse((end.x - 2, end.y - 2, end.x + 2, end.y + 2), outline=green, width=2)
            draw.line((start.x, start.y, end.x, end.y), fill=green)
    return canvas


def main(argv: list[str] | None = None) -> int:
    """Track corners between two images and save pictures of the tracks."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) not in (0, 2):
        print("usage: optical_flow [img1 img2]")
        return 1
    first_file, second_file = args if args else (DEFAULT_FIRST_FILE, DEFAULT_SECOND_FILE)
    try:
        img1 = load_gray(first_file)
        img2 = load_gray(second_file)
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    kp1 = _good_features_to_track(img1, 500, 0.01, 20.0)

    kp2_single, success_single = optical_flow_single_level(img1, img2, kp1)

    t1 = time.perf_counter()
    kp2_multi, success_multi = optical_flow_multi_level(img1, img2, kp1, True)
    t2 = time.perf_counter()
    print(f"optical flow by gauss-newton: {t2 - t1}")

    _draw_tracks(img2, kp1, kp2_single, success_single).save("tracked_single.png")
    _draw_tracks(img2, kp1, kp2_multi, success_multi).save("tracked_multi.png")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())