"""Camera motion by the direct method: photometric error of sparse pixels."""

from __future__ import annotations

import random
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from visodom.image import build_pyramid, get_pixel_value, load_gray
from visodom.lie import SE3

HALF_PATCH_SIZE = 1
ITERATIONS = 10
CONVERGENCE = 1e-3
PYRAMIDS = 4
PYRAMID_SCALE = 0.5
SCALES = (1.0, 0.5, 0.25, 0.125)

BASELINE = 0.573
LEFT_FILE = "left.png"
DISPARITY_FILE = "disparity.png"
OTHERS_FORMAT = "{:06d}.png"
N_POINTS = 2000
BORDER = 20

_OFFSETS = np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE + 1, dtype=float)
_OFFSET_X, _OFFSET_Y = (g.ravel() for g in np.meshgrid(_OFFSETS, _OFFSETS, indexing="ij"))


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole camera parameters."""

    fx: float = 718.856
    fy: float = 718.856
    cx: float = 607.1928
    cy: float = 185.2157

    def scaled(self, scale: float) -> "Intrinsics":
        """Parameters for an image resized by ``scale``."""
        return Intrinsics(self.fx * scale, self.fy * scale, self.cx * scale, self.cy * scale)


def _gray(image: np.ndarray) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError(f"expected a single-channel image, got shape {array.shape}")
    return array


def _reference(px_ref, depth_ref) -> tuple[np.ndarray, np.ndarray]:
    px = np.asarray(px_ref, dtype=float)
    depth = np.asarray(depth_ref, dtype=float)
    if px.ndim != 2 or px.shape[1] != 2:
        raise ValueError(f"px_ref must be an (n, 2) array, got shape {px.shape}")
    if depth.shape != (len(px),):
        raise ValueError(f"depth_ref must hold {len(px)} depths, got shape {depth.shape}")
    return px, depth


class JacobianAccumulator:
    """Accumulates the Gauss-Newton system of the photometric error over pixel ranges."""

    def __init__(
        self,
        img1: np.ndarray,
        img2: np.ndarray,
        px_ref,
        depth_ref,
        T21: Optional[SE3] = None,
        intrinsics: Optional[Intrinsics] = None,
    ) -> None:
        self.img1 = _gray(img1)
        self.img2 = _gray(img2)
        self.px_ref, self.depth_ref = _reference(px_ref, depth_ref)
        self.T21 = SE3() if T21 is None else T21
        self.intrinsics = Intrinsics() if intrinsics is None else intrinsics
        self.projection = np.zeros((len(self.px_ref), 2))
        self.hessian = np.zeros((6, 6))
        self.bias = np.zeros(6)
        self.cost = 0.0

    def reset(self) -> None:
        """Set the hessian, bias and cost to zero."""
        self.hessian = np.zeros((6, 6))
        self.bias = np.zeros(6)
        self.cost = 0.0

    def accumulate_jacobian(self, start: int, stop: int) -> None:
        """Add the contribution of reference pixels ``start`` to ``stop - 1``."""
        if not 0 <= start <= stop <= len(self.px_ref):
            raise ValueError(f"range [{start}, {stop}) is outside 0..{len(self.px_ref)}")
        k = self.intrinsics
        px = self.px_ref[start:stop]
        depth = self.depth_ref[start:stop]
        rays = np.column_stack(
            [(px[:, 0] - k.cx) / k.fx, (px[:, 1] - k.cy) / k.fy, np.ones(len(px))]
        )
        with np.errstate(all="ignore"):
            point_cur = self.T21.act(depth[:, None] * rays)
            z = point_cur[:, 2]
            u = k.fx * point_cur[:, 0] / z + k.cx
            v = k.fy * point_cur[:, 1] / z + k.cy
            h, w = self.img2.shape
            good = (
                (z >= 0.0)
                & np.isfinite(u) & np.isfinite(v)
                & (u >= HALF_PATCH_SIZE) & (u <= w - HALF_PATCH_SIZE)
                & (v >= HALF_PATCH_SIZE) & (v <= h - HALF_PATCH_SIZE)
            )
        count = int(good.sum())
        if count == 0:
            return

        u, v = u[good], v[good]
        self.projection[np.flatnonzero(good) + start] = np.column_stack([u, v])
        x, y, zg = point_cur[good].T
        z_inv = 1.0 / zg
        z2_inv = z_inv * z_inv

        j_pixel = np.zeros((count, 2, 6))
        j_pixel[:, 0, 0] = k.fx * z_inv
        j_pixel[:, 0, 2] = -k.fx * x * z2_inv
        j_pixel[:, 0, 3] = -k.fx * x * y * z2_inv
        j_pixel[:, 0, 4] = k.fx + k.fx * x * x * z2_inv
        j_pixel[:, 0, 5] = -k.fx * y * z_inv
        j_pixel[:, 1, 1] = k.fy * z_inv
        j_pixel[:, 1, 2] = -k.fy * y * z2_inv
        j_pixel[:, 1, 3] = -k.fy - k.fy * y * y * z2_inv
        j_pixel[:, 1, 4] = k.fy * x * y * z2_inv
        j_pixel[:, 1, 5] = k.fy * x * z_inv

        ref = px[good]
        x1 = ref[:, :1] + _OFFSET_X
        y1 = ref[:, 1:] + _OFFSET_Y
        x2 = u[:, None] + _OFFSET_X
        y2 = v[:, None] + _OFFSET_Y
        error = np.asarray(get_pixel_value(self.img1, x1, y1)) - np.asarray(
            get_pixel_value(self.img2, x2, y2)
        )
        gx = 0.5 * (
            np.asarray(get_pixel_value(self.img2, x2 + 1, y2))
            - np.asarray(get_pixel_value(self.img2, x2 - 1, y2))
        )
        gy = 0.5 * (
            np.asarray(get_pixel_value(self.img2, x2, y2 + 1))
            - np.asarray(get_pixel_value(self.img2, x2, y2 - 1))
        )
        jac = -(gx[..., None] * j_pixel[:, None, 0, :] + gy[..., None] * j_pixel[:, None, 1, :])

        self.hessian += np.einsum("nki,nkj->ij", jac, jac)
        self.bias += -np.einsum("nk,nki->i", error, jac)
        self.cost += float((error * error).sum()) / count


def _solve(hessian: np.ndarray, bias: np.ndarray) -> Optional[np.ndarray]:
    try:
        update = np.linalg.solve(hessian, bias)
    except np.linalg.LinAlgError:
        return None
    return update if np.all(np.isfinite(update)) else None


def direct_pose_estimation_single_layer(
    img1: np.ndarray,
    img2: np.ndarray,
    px_ref,
    depth_ref,
    T21: Optional[SE3] = None,
    intrinsics: Optional[Intrinsics] = None,
) -> SE3:
    """Refine the motion from the first image to the second on one image scale."""
    accumulator = JacobianAccumulator(img1, img2, px_ref, depth_ref, T21, intrinsics)
    n = len(accumulator.px_ref)
    last_cost = 0.0
    for iteration in range(ITERATIONS):
        accumulator.reset()
        accumulator.accumulate_jacobian(0, n)
        update = _solve(accumulator.hessian, accumulator.bias)
        if update is None:
            print("update is nan")
            break
        accumulator.T21 = SE3.exp(update) @ accumulator.T21
        cost = accumulator.cost
        if iteration > 0 and cost > last_cost:
            print(f"cost increased: {cost}, {last_cost}")
            break
        if float(np.linalg.norm(update)) < CONVERGENCE:
            break
        last_cost = cost
        print(f"iteration: {iteration}, cost: {cost}")
    print(f"T21 = \n{accumulator.T21.matrix()}")
    return accumulator.T21


def direct_pose_estimation_multi_layer(
    img1: np.ndarray,
    img2: np.ndarray,
    px_ref,
    depth_ref,
    T21: Optional[SE3] = None,
    intrinsics: Optional[Intrinsics] = None,
) -> SE3:
    """Coarse-to-fine direct estimation over a four-level pyramid."""
    px, depth = _reference(px_ref, depth_ref)
    camera = Intrinsics() if intrinsics is None else intrinsics
    pose = SE3() if T21 is None else T21
    pyr1 = build_pyramid(img1, PYRAMIDS, PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, PYRAMIDS, PYRAMID_SCALE)
    for level in range(PYRAMIDS - 1, -1, -1):
        scale = SCALES[level]
        pose = direct_pose_estimation_single_layer(
            pyr1[level], pyr2[level], px * scale, depth, pose, camera.scaled(scale)
        )
    return pose


def main(argv: list[str] | None = None) -> int:
    """Estimate the motion of frames 1 to 5 relative to a left image with disparity."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) > 1:
        print("usage: direct_method [data_dir]")
        return 1
    folder = Path(args[0]) if args else Path(".")
    try:
        left_img = load_gray(folder / LEFT_FILE)
        disparity_img = load_gray(folder / DISPARITY_FILE)
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    camera = Intrinsics()
    rng = random.Random()
    h, w = left_img.shape
    pixels = [
        (rng.randrange(BORDER, w - BORDER), rng.randrange(BORDER, h - BORDER))
        for _ in range(N_POINTS)
    ]
    px_ref = np.array(pixels, dtype=float)
    disparity = np.array([disparity_img[y, x] for x, y in pixels], dtype=float)
    with np.errstate(divide="ignore"):
        depth_ref = camera.fx * BASELINE / disparity

    pose = SE3()
    for i in range(1, 6):
        try:
            img = load_gray(folder / OTHERS_FORMAT.format(i))
        except OSError as exc:
            print(f"cannot load image: {exc}", file=sys.stderr)
            return 1
        t1 = time.perf_counter()
        pose = direct_pose_estimation_multi_layer(left_img, img, px_ref, depth_ref, pose, camera)
        t2 = time.perf_counter()
        print(f"direct method for image {i}: {t2 - t1}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())