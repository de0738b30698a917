"""Camera pose from 3D-2D correspondences (perspective-n-point) by Gauss-Newton."""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from PIL import Image

from visodom.epipolar import CAMERA_MATRIX, pixel2cam
from visodom.features import DMatch, KeyPoint, filter_matches
from visodom.image import load_gray
from visodom.lie import SE3
from visodom.orb import FAST_THRESHOLD, bf_match, compute_orb, fast_detect

# Depth images store metres scaled by this factor as 16-bit integers.
DEPTH_SCALE = 5000.0
GN_ITERATIONS = 10
GN_CONVERGENCE = 1e-6


def _matrix3(m: np.ndarray) -> np.ndarray:
    matrix = np.asarray(m, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"K must be 3x3, got shape {matrix.shape}")
    return matrix


def _pairs(points_3d, points_2d) -> tuple[np.ndarray, np.ndarray]:
    p3 = np.asarray(points_3d, dtype=float)
    p2 = np.asarray(points_2d, dtype=float)
    if p3.ndim != 2 or p3.shape[1] != 3:
        raise ValueError(f"points_3d must be an (n, 3) array, got shape {p3.shape}")
    if p2.ndim != 2 or p2.shape[1] != 2:
        raise ValueError(f"points_2d must be an (n, 2) array, got shape {p2.shape}")
    if len(p3) != len(p2):
        raise ValueError(f"point sets differ in length: {len(p3)} and {len(p2)}")
    if len(p3) == 0:
        raise ValueError("no correspondences")
    return p3, p2


def _projection_jacobian(pc: np.ndarray, fx: float, fy: float) -> np.ndarray:
    """Jacobian of ``measurement - projection`` by a left twist, one (2, 6) block per point."""
    x, y, z = pc[:, 0], pc[:, 1], pc[:, 2]
    inv_z = 1.0 / z
    inv_z2 = inv_z * inv_z
    jac = np.zeros((len(pc), 2, 6))
    jac[:, 0, 0] = -fx * inv_z
    jac[:, 0, 2] = fx * x * inv_z2
    jac[:, 0, 3] = fx * x * y * inv_z2
    jac[:, 0, 4] = -fx - fx * x * x * inv_z2
    jac[:, 0, 5] = fx * y * inv_z
    jac[:, 1, 1] = -fy * inv_z
    jac[:, 1, 2] = fy * y * inv_z2
    jac[:, 1, 3] = fy + fy * y * y * inv_z2
    jac[:, 1, 4] = -fy * x * y * inv_z2
    jac[:, 1, 5] = -fy * x * inv_z
    return jac


def _solve(hessian: np.ndarray, bias: np.ndarray) -> Optional[np.ndarray]:
    try:
        update = np.linalg.solve(hessian, bias)
    except np.linalg.LinAlgError:
        return None
    return update if np.all(np.isfinite(update)) else None


def build_3d2d_pairs(
    matches: Sequence[DMatch],
    keypoints1: Sequence[KeyPoint],
    keypoints2: Sequence[KeyPoint],
    depth: np.ndarray,
    K: np.ndarray = CAMERA_MATRIX,
) -> tuple[np.ndarray, np.ndarray]:
    """3D points of the first view and their pixels in the second; zero depths are skipped."""
    depth_image = np.asarray(depth)
    if depth_image.ndim != 2:
        raise ValueError(f"depth must be a single-channel image, got shape {depth_image.shape}")
    k = _matrix3(K)
    points_3d: list[np.ndarray] = []
    points_2d: list[tuple[float, float]] = []
    for m in matches:
        kp1 = keypoints1[m.query_idx]
        kp2 = keypoints2[m.train_idx]
        d = int(depth_image[int(kp1.y), int(kp1.x)])
        if d == 0:
            continue
        dd = d / DEPTH_SCALE
        p1 = pixel2cam((kp1.x, kp1.y), k)
        points_3d.append(np.array([p1[0] * dd, p1[1] * dd, dd]))
        points_2d.append((kp2.x, kp2.y))
    if not points_3d:
        return np.zeros((0, 3)), np.zeros((0, 2))
    return np.array(points_3d), np.array(points_2d, dtype=float)


def bundle_adjustment_gauss_newton(
    points_3d,
    points_2d,
    K: np.ndarray = CAMERA_MATRIX,
    pose: Optional[SE3] = None,
) -> SE3:
    """Refine ``pose`` to minimise reprojection error; stops when the cost stops falling."""
    p3, p2 = _pairs(points_3d, points_2d)
    k = _matrix3(K)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]
    pose = SE3() if pose is None else pose
    last_cost = 0.0

    for iteration in range(GN_ITERATIONS):
        pc = pose.act(p3)
        proj = np.column_stack([fx * pc[:, 0] / pc[:, 2] + cx, fy * pc[:, 1] / pc[:, 2] + cy])
        error = p2 - proj
        cost = float((error * error).sum())
        jac = _projection_jacobian(pc, fx, fy)
        hessian = np.einsum("nij,nik->jk", jac, jac)
        bias = -np.einsum("nij,ni->j", jac, error)

        dx = _solve(hessian, bias)
        if dx is None:
            print("result is nan!")
            break
        if iteration > 0 and cost >= last_cost:
            print(f"cost: {cost}, last cost: {last_cost}")
            break

        pose = SE3.exp(dx) @ pose
        last_cost = cost
        print(f"iteration {iteration} cost={cost:.12g}")
        if float(np.linalg.norm(dx)) < GN_CONVERGENCE:
            break

    print(f"pose by g-n: \n{pose.matrix()}")
    return pose


@dataclass(frozen=True, eq=False)
class EdgeProjection:
    """Reprojection residual of one 3D point observed at one pixel."""

    point: np.ndarray
    K: np.ndarray
    measurement: np.ndarray

    def __post_init__(self) -> None:
        point = np.asarray(self.point, dtype=float)
        measurement = np.asarray(self.measurement, dtype=float)
        if point.shape != (3,):
            raise ValueError(f"point must have 3 coordinates, got shape {point.shape}")
        if measurement.shape != (2,):
            raise ValueError(f"measurement must have 2 coordinates, got shape {measurement.shape}")
        object.__setattr__(self, "point", point)
        object.__setattr__(self, "K", _matrix3(self.K))
        object.__setattr__(self, "measurement", measurement)

    def error(self, pose: SE3) -> np.ndarray:
        pos_pixel = self.K @ pose.act(self.point)
        pos_pixel = pos_pixel / pos_pixel[2]
        return self.measurement - pos_pixel[:2]

    def jacobian(self, pose: SE3) -> np.ndarray:
        pos_cam = pose.act(self.point)
        return _projection_jacobian(pos_cam[None, :], self.K[0, 0], self.K[1, 1])[0]


def optimize_pose(
    points_3d,
    points_2d,
    K: np.ndarray = CAMERA_MATRIX,
    iterations: int = 10,
) -> SE3:
    """Graph-style Gauss-Newton over one pose vertex and one edge per correspondence."""
    p3, p2 = _pairs(points_3d, points_2d)
    if iterations < 0:
        raise ValueError("iterations must be non-negative")
    edges = [EdgeProjection(a, K, b) for a, b in zip(p3, p2)]
    pose = SE3()

    for iteration in range(iterations):
        hessian = np.zeros((6, 6))
        bias = np.zeros(6)
        chi2 = 0.0
        for edge in edges:
            e = edge.error(pose)
            jac = edge.jacobian(pose)
            hessian += jac.T @ jac
            bias -= jac.T @ e
            chi2 += float(e @ e)
        print(f"iteration= {iteration}\t chi2= {chi2:.6f}")
        dx = _solve(hessian, bias)
        if dx is None:
            break
        pose = SE3.exp(dx) @ pose

    return pose


def _load_depth(path: str) -> np.ndarray:
    with Image.open(path) as picture:
        return np.asarray(picture)


def _find_feature_matches(img1: np.ndarray, img2: np.ndarray):
    keypoints1 = fast_detect(img1, FAST_THRESHOLD)
    keypoints2 = fast_detect(img2, FAST_THRESHOLD)
    matches = bf_match(compute_orb(img1, keypoints1), compute_orb(img2, keypoints2))
    return keypoints1, keypoints2, filter_matches(matches)


def main(argv: list[str] | None = None) -> int:
    """Estimate the pose of the second image from matches with depth in the first."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 4:
        print("usage: pose_estimation_3d2d img1 img2 depth1 depth2")
        return 1
    try:
        img1 = load_gray(args[0])
        img2 = load_gray(args[1])
        depth1 = _load_depth(args[2])
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    keypoints1, keypoints2, matches = _find_feature_matches(img1, img2)
    print(f"found {len(matches)} matches")

    points_3d, points_2d = build_3d2d_pairs(matches, keypoints1, keypoints2, depth1, CAMERA_MATRIX)
    print(f"3d-2d pairs: {len(points_3d)}")
    if len(points_3d) == 0:
        print("no usable correspondences", file=sys.stderr)
        return 1

    print("calling bundle adjustment by gauss newton")
    t1 = time.perf_counter()
    bundle_adjustment_gauss_newton(points_3d, points_2d, CAMERA_MATRIX, SE3())
    t2 = time.perf_counter()
    print(f"solve pnp by gauss newton cost time: {t2 - t1} seconds.")

    print("calling bundle adjustment by graph optimisation")
    t1 = time.perf_counter()
    pose = optimize_pose(points_3d, points_2d, CAMERA_MATRIX, 10)
    t2 = time.perf_counter()
    print(f"optimization costs time: {t2 - t1} seconds.")
    print(f"pose estimated =\n{pose.matrix()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())