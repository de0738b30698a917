"""Two-view geometry: epipolar matrices, relative pose and triangulation."""

from __future__ import annotations

import math
from typing import Callable, Optional, Sequence

import numpy as np

from visodom.lie import hat

# Intrinsics of the TUM Freiburg2 camera.
CAMERA_MATRIX = np.array([[520.9, 0.0, 325.1], [0.0, 521.0, 249.7], [0.0, 0.0, 1.0]])
FOCAL_LENGTH = 521.0
PRINCIPAL_POINT = (325.1, 249.7)

ESSENTIAL_RANSAC_THRESHOLD = 1.0
HOMOGRAPHY_RANSAC_THRESHOLD = 3.0
RANSAC_CONFIDENCE = 0.999
RANSAC_MAX_ITERATIONS = 1000
CHEIRALITY_DISTANCE = 50.0

DEPTH_LOW = 10.0
DEPTH_HIGH = 50.0

_EPS = 1e-12


def _matrix3(m: np.ndarray, name: str = "matrix") -> np.ndarray:
    matrix = np.asarray(m, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"{name} must be 3x3, got shape {matrix.shape}")
    return matrix


def _vector3(v: Sequence[float], name: str) -> np.ndarray:
    vector = np.asarray(v, dtype=float).reshape(-1)
    if vector.shape != (3,):
        raise ValueError(f"{name} must have 3 entries, got shape {vector.shape}")
    return vector


def _points2(points: Sequence[Sequence[float]], name: str) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f"{name} must be an (n, 2) array, got shape {array.shape}")
    return array


def _pair(points1, points2, minimum: int) -> tuple[np.ndarray, np.ndarray]:
    p1 = _points2(points1, "points1")
    p2 = _points2(points2, "points2")
    if len(p1) != len(p2):
        raise ValueError(f"point sets differ in length: {len(p1)} and {len(p2)}")
    if len(p1) < minimum:
        raise ValueError(f"at least {minimum} point pairs are needed, got {len(p1)}")
    return p1, p2


def _to_camera(points: np.ndarray, K: np.ndarray) -> np.ndarray:
    return np.column_stack(
        [(points[:, 0] - K[0, 2]) / K[0, 0], (points[:, 1] - K[1, 2]) / K[1, 1]]
    )


def pixel2cam(point: Sequence[float], K: np.ndarray = CAMERA_MATRIX) -> np.ndarray:
    """Normalised camera coordinates of a pixel."""
    k = _matrix3(K, "K")
    p = np.asarray(point, dtype=float)
    if p.shape != (2,):
        raise ValueError(f"point must have 2 coordinates, got shape {p.shape}")
    return np.array([(p[0] - k[0, 2]) / k[0, 0], (p[1] - k[1, 2]) / k[1, 1]])


def skew(t: Sequence[float]) -> np.ndarray:
    """Skew-symmetric matrix ``t^`` so that ``skew(t) @ v`` is ``t x v``."""
    return hat(_vector3(t, "t"))


def _normalizing_transform(points: np.ndarray) -> np.ndarray:
    center = points.mean(axis=0)
    mean_distance = float(np.linalg.norm(points - center, axis=1).mean())
    s = math.sqrt(2.0) / mean_distance if mean_distance > _EPS else 1.0
    return np.array([[s, 0.0, -s * center[0]], [0.0, s, -s * center[1]], [0.0, 0.0, 1.0]])


def _homogeneous(points: np.ndarray) -> np.ndarray:
    return np.column_stack([points, np.ones(len(points))])


def _eight_point(p1: np.ndarray, p2: np.ndarray) -> Optional[np.ndarray]:
    """Rank-two matrix F with ``p2^T F p1 = 0`` by the normalised eight-point method."""
    t1 = _normalizing_transform(p1)
    t2 = _normalizing_transform(p2)
    a = _homogeneous(p1) @ t1.T
    b = _homogeneous(p2) @ t2.T
    design = np.column_stack(
        [
            b[:, 0] * a[:, 0], b[:, 0] * a[:, 1], b[:, 0],
            b[:, 1] * a[:, 0], b[:, 1] * a[:, 1], b[:, 1],
            a[:, 0], a[:, 1], np.ones(len(a)),
        ]
    )
    _, _, vt = np.linalg.svd(design)
    f = vt[-1].reshape(3, 3)
    u, s, vt = np.linalg.svd(f)
    f = u @ np.diag([s[0], s[1], 0.0]) @ vt
    f = t2.T @ f @ t1
    return f if np.all(np.isfinite(f)) else None


def _sampson(f: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    h1 = _homogeneous(x1)
    h2 = _homogeneous(x2)
    f_x1 = h1 @ f.T
    ft_x2 = h2 @ f
    numerator = np.einsum("ij,ij->i", h2, f_x1) ** 2
    denominator = f_x1[:, 0] ** 2 + f_x1[:, 1] ** 2 + ft_x2[:, 0] ** 2 + ft_x2[:, 1] ** 2
    return np.divide(
        numerator,
        denominator,
        out=np.full_like(numerator, np.inf),
        where=denominator > 0.0,
    )


def _ransac_iterations(inlier_ratio: float, sample_size: int) -> int:
    good_sample = inlier_ratio**sample_size
    if good_sample <= 0.0:
        return RANSAC_MAX_ITERATIONS
    if good_sample >= 1.0:
        return 1
    needed = math.log(1.0 - RANSAC_CONFIDENCE) / math.log(1.0 - good_sample)
    return min(RANSAC_MAX_ITERATIONS, max(1, math.ceil(needed)))


def _ransac(
    n: int,
    sample_size: int,
    fit: Callable[[np.ndarray], Optional[np.ndarray]],
    errors: Callable[[np.ndarray], np.ndarray],
    threshold_sq: float,
) -> np.ndarray:
    rng = np.random.default_rng(0)
    best_inliers: Optional[np.ndarray] = None
    best_count = 0
    needed = RANSAC_MAX_ITERATIONS
    iteration = 0
    while iteration < needed:
        iteration += 1
        model = fit(rng.choice(n, sample_size, replace=False))
        if model is None:
            continue
        with np.errstate(invalid="ignore", divide="ignore"):
            inliers = errors(model) < threshold_sq
        count = int(inliers.sum())
        if count > best_count:
            best_count, best_inliers = count, inliers
            if count == n:
                break
            needed = min(needed, _ransac_iterations(count / n, sample_size))
    if best_inliers is None or best_count < sample_size:
        raise ValueError("no model is consistent with enough points")
    model = fit(np.flatnonzero(best_inliers))
    if model is None:
        raise ValueError("no model is consistent with enough points")
    return model


def find_fundamental_8point(points1, points2) -> np.ndarray:
    """Fundamental matrix from all pairs, scaled so that ``F[2, 2] == 1`` where possible."""
    p1, p2 = _pair(points1, points2, 8)
    f = _eight_point(p1, p2)
    if f is None:
        raise ValueError("degenerate point configuration")
    if abs(f[2, 2]) > _EPS:
        f = f / f[2, 2]
    return f


def _essential_from(x1: np.ndarray, x2: np.ndarray) -> Optional[np.ndarray]:
    f = _eight_point(x1, x2)
    if f is None:
        return None
    u, _, vt = np.linalg.svd(f)
    return u @ np.diag([1.0, 1.0, 0.0]) @ vt


def find_essential(
    points1,
    points2,
    focal: float = FOCAL_LENGTH,
    principal_point: Sequence[float] = PRINCIPAL_POINT,
) -> np.ndarray:
    """Essential matrix by RANSAC; its singular values are ``(1, 1, 0)``."""
    p1, p2 = _pair(points1, points2, 8)
    if focal <= 0.0:
        raise ValueError("focal length must be positive")
    pp = np.asarray(principal_point, dtype=float)
    x1 = (p1 - pp) / focal
    x2 = (p2 - pp) / focal
    return _ransac(
        len(x1),
        8,
        lambda idx: _essential_from(x1[idx], x2[idx]),
        lambda e: _sampson(e, x1, x2),
        (ESSENTIAL_RANSAC_THRESHOLD / focal) ** 2,
    )


def _dlt_homography(p1: np.ndarray, p2: np.ndarray) -> Optional[np.ndarray]:
    t1 = _normalizing_transform(p1)
    t2 = _normalizing_transform(p2)
    a = _homogeneous(p1) @ t1.T
    b = _homogeneous(p2) @ t2.T
    zeros = np.zeros((len(a), 3))
    rows_u = np.column_stack([-a, zeros, b[:, :1] * a])
    rows_v = np.column_stack([zeros, -a, b[:, 1:2] * a])
    _, _, vt = np.linalg.svd(np.vstack([rows_u, rows_v]))
    h = np.linalg.inv(t2) @ vt[-1].reshape(3, 3) @ t1
    if not np.all(np.isfinite(h)) or abs(h[2, 2]) < _EPS:
        return None
    return h / h[2, 2]


def _apply_homography(h: np.ndarray, points: np.ndarray) -> np.ndarray:
    mapped = _homogeneous(points) @ h.T
    return mapped[:, :2] / mapped[:, 2:]


def find_homography(points1, points2) -> np.ndarray:
    """Homography mapping ``points1`` to ``points2`` by RANSAC with a 3-pixel threshold."""
    p1, p2 = _pair(points1, points2, 4)
    return _ransac(
        len(p1),
        4,
        lambda idx: _dlt_homography(p1[idx], p2[idx]),
        lambda h: ((_apply_homography(h, p1) - p2) ** 2).sum(axis=1),
        HOMOGRAPHY_RANSAC_THRESHOLD**2,
    )


def _triangulate_homogeneous(
    x1: np.ndarray, x2: np.ndarray, proj1: np.ndarray, proj2: np.ndarray
) -> np.ndarray:
    system = np.stack(
        [
            x1[:, :1] * proj1[2] - proj1[0],
            x1[:, 1:2] * proj1[2] - proj1[1],
            x2[:, :1] * proj2[2] - proj2[0],
            x2[:, 1:2] * proj2[2] - proj2[1],
        ],
        axis=1,
    )
    _, _, vt = np.linalg.svd(system)
    return vt[:, -1, :]


def _count_in_front(x1: np.ndarray, x2: np.ndarray, R: np.ndarray, t: np.ndarray) -> int:
    proj1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    proj2 = np.hstack([R, t[:, None]])
    homogeneous = _triangulate_homogeneous(x1, x2, proj1, proj2)
    w = homogeneous[:, 3]
    valid = np.abs(w) > _EPS
    points = homogeneous[:, :3] / np.where(valid, w, 1.0)[:, None]
    z1 = points[:, 2]
    z2 = (points @ R.T + t)[:, 2]
    in_front = (
        valid
        & (z1 > 0.0) & (z1 < CHEIRALITY_DISTANCE)
        & (z2 > 0.0) & (z2 < CHEIRALITY_DISTANCE)
    )
    return int(in_front.sum())


def recover_pose(
    essential: np.ndarray,
    points1,
    points2,
    focal: float = FOCAL_LENGTH,
    principal_point: Sequence[float] = PRINCIPAL_POINT,
) -> tuple[np.ndarray, np.ndarray]:
    """Rotation and unit translation from an essential matrix by the cheirality test."""
    e = _matrix3(essential, "essential")
    p1, p2 = _pair(points1, points2, 1)
    if focal <= 0.0:
        raise ValueError("focal length must be positive")
    pp = np.asarray(principal_point, dtype=float)
    x1 = (p1 - pp) / focal
    x2 = (p2 - pp) / focal

    u, _, vt = np.linalg.svd(e)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    r2 = u @ w.T @ vt
    t = u[:, 2]
    candidates = [(r1, t), (r1, -t), (r2, t), (r2, -t)]
    R, best_t = max(candidates, key=lambda c: _count_in_front(x1, x2, c[0], c[1]))
    return R.copy(), best_t.copy()


def epipolar_constraint(
    point1: Sequence[float],
    point2: Sequence[float],
    R: np.ndarray,
    t: Sequence[float],
    K: np.ndarray = CAMERA_MATRIX,
) -> float:
    """The value ``y2^T t^ R y1`` for a pixel pair; zero for a perfect match."""
    rotation = _matrix3(R, "R")
    y1 = np.append(pixel2cam(point1, K), 1.0)
    y2 = np.append(pixel2cam(point2, K), 1.0)
    return float(y2 @ skew(t) @ rotation @ y1)


def triangulate(
    points1,
    points2,
    R: np.ndarray,
    t: Sequence[float],
    K: np.ndarray = CAMERA_MATRIX,
) -> np.ndarray:
    """3D points in the first camera's frame, one row per pixel pair."""
    p1, p2 = _pair(points1, points2, 1)
    k = _matrix3(K, "K")
    rotation = _matrix3(R, "R")
    translation = _vector3(t, "t")
    proj1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    proj2 = np.hstack([rotation, translation[:, None]])
    homogeneous = _triangulate_homogeneous(_to_camera(p1, k), _to_camera(p2, k), proj1, proj2)
    return homogeneous[:, :3] / homogeneous[:, 3:]


def depth_color(depth: float) -> tuple[float, float, float]:
    """Blue-green-red drawing colour for a depth clamped to ``[10, 50]``."""
    th_range = DEPTH_HIGH - DEPTH_LOW
    d = min(max(float(depth), DEPTH_LOW), DEPTH_HIGH)
    return (255.0 * d / th_range, 0.0, 255.0 * (1.0 - d / th_range))