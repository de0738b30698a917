"""Rigid alignment of matched 3D point sets (ICP with known correspondences)."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from visodom.lie import SE3

_MAX_TRIES = 10
_INITIAL_DAMPING = 1e-5
_STEP_TOLERANCE = 1e-10


def _points3(points: Sequence[Sequence[float]], name: str) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"{name} must be an (n, 3) array, got shape {array.shape}")
    return array


def _pair(pts1, pts2) -> tuple[np.ndarray, np.ndarray]:
    p1 = _points3(pts1, "pts1")
    p2 = _points3(pts2, "pts2")
    if len(p1) != len(p2):
        raise ValueError(f"point sets differ in length: {len(p1)} and {len(p2)}")
    if len(p1) == 0:
        raise ValueError("point sets are empty")
    return p1, p2


def pose_estimation_3d3d(pts1, pts2) -> tuple[np.ndarray, np.ndarray]:
    """Rotation ``R`` and translation ``t`` with ``pts1 ~ R @ pts2 + t``, by SVD."""
    p1, p2 = _pair(pts1, pts2)
    c1 = p1.mean(axis=0)
    c2 = p2.mean(axis=0)
    w = (p1 - c1).T @ (p2 - c2)
    u, _, vt = np.linalg.svd(w)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation = -rotation
    translation = c1 - rotation @ c2
    return rotation, translation


def _hats(q: np.ndarray) -> np.ndarray:
    out = np.zeros((len(q), 3, 3))
    out[:, 0, 1] = -q[:, 2]
    out[:, 0, 2] = q[:, 1]
    out[:, 1, 0] = q[:, 2]
    out[:, 1, 2] = -q[:, 0]
    out[:, 2, 0] = -q[:, 1]
    out[:, 2, 1] = q[:, 0]
    return out


def bundle_adjustment_3d3d(pts1, pts2, iterations: int = 10) -> SE3:
    """Levenberg-Marquardt refinement of ``T`` minimising ``|pts1 - T pts2|^2``.

    Starts from the identity and updates by left multiplication ``exp(dx) T``.
    """
    p1, p2 = _pair(pts1, pts2)
    if iterations < 0:
        raise ValueError("iterations must be non-negative")

    pose = SE3()
    error = p1 - pose.act(p2)
    cost = float((error * error).sum())
    damping: float | None = None
    nu = 2.0

    for _ in range(iterations):
        transformed = pose.act(p2)
        jacobian = np.zeros((len(p2), 3, 6))
        jacobian[:, :, :3] = -np.eye(3)
        jacobian[:, :, 3:] = _hats(transformed)
        hessian = np.einsum("nij,nik->jk", jacobian, jacobian)
        bias = -np.einsum("nij,ni->j", jacobian, error)
        if damping is None:
            damping = _INITIAL_DAMPING * float(np.max(np.diag(hessian)))

        improved = False
        dx = np.zeros(6)
        for _ in range(_MAX_TRIES):
            dx = np.linalg.solve(hessian + damping * np.eye(6), bias)
            candidate = SE3.exp(dx) @ pose
            new_error = p1 - candidate.act(p2)
            new_cost = float((new_error * new_error).sum())
            predicted = float(dx @ (damping * dx + bias))
            rho = (cost - new_cost) / predicted if predicted > 0.0 else -1.0
            if rho > 0.0 and np.isfinite(new_cost):
                pose, error, cost = candidate, new_error, new_cost
                damping *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                improved = True
                break
            damping *= nu
            nu *= 2.0

        if not improved or np.linalg.norm(dx) < _STEP_TOLERANCE:
            break

    return pose