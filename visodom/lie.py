"""Rotations and rigid-body motions on the SO(3) and SE(3) groups."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-10


def _vec(values: Sequence[float], size: int) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.shape != (size,):
        raise ValueError(f"expected a vector of length {size}, got shape {array.shape}")
    return array


def hat(v: Sequence[float]) -> np.ndarray:
    """Skew-symmetric matrix of a 3-vector, so that ``hat(v) @ u == v x u``."""
    x, y, z = _vec(v, 3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def vee(m: np.ndarray) -> np.ndarray:
    """The 3-vector of a skew-symmetric matrix; the inverse of :func:`hat`."""
    matrix = np.asarray(m, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {matrix.shape}")
    return np.array([matrix[2, 1], matrix[0, 2], matrix[1, 0]])


def so3_exp(omega: Sequence[float]) -> np.ndarray:
    """Rotation matrix of a rotation vector (Rodrigues' formula)."""
    w = _vec(omega, 3)
    theta = float(np.linalg.norm(w))
    if theta < _SMALL_ANGLE:
        return np.eye(3) + hat(w)
    k = hat(w / theta)
    return np.eye(3) + math.sin(theta) * k + (1.0 - math.cos(theta)) * (k @ k)


def so3_log(rotation: np.ndarray) -> np.ndarray:
    """Rotation vector of a rotation matrix."""
    matrix = np.asarray(rotation, dtype=float)
    if matrix.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {matrix.shape}")
    return Rotation.from_matrix(matrix).as_rotvec()


@dataclass(frozen=True, eq=False)
class SE3:
    """A rigid-body motion ``p -> R p + t``."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        rotation = np.asarray(self.rotation, dtype=float)
        translation = np.asarray(self.translation, dtype=float)
        if rotation.shape != (3, 3):
            raise ValueError(f"rotation must be 3x3, got shape {rotation.shape}")
        if translation.shape != (3,):
            raise ValueError(f"translation must have 3 entries, got shape {translation.shape}")
        object.__setattr__(self, "rotation", rotation)
        object.__setattr__(self, "translation", translation)

    @classmethod
    def exp(cls, xi: Sequence[float]) -> "SE3":
        """Motion of a twist ``(rho, phi)``: translation part first, rotation second."""
        twist = _vec(xi, 6)
        rho, phi = twist[:3], twist[3:]
        rotation = so3_exp(phi)
        theta = float(np.linalg.norm(phi))
        omega = hat(phi)
        if theta < _SMALL_ANGLE:
            v = np.eye(3) + 0.5 * omega
        else:
            v = (
                np.eye(3)
                + (1.0 - math.cos(theta)) / theta**2 * omega
                + (theta - math.sin(theta)) / theta**3 * (omega @ omega)
            )
        return cls(rotation, v @ rho)

    def act(self, point: Sequence[float] | np.ndarray) -> np.ndarray:
        """Apply the motion to one point or to the rows of an ``(n, 3)`` array."""
        p = np.asarray(point, dtype=float)
        if p.shape[-1] != 3:
            raise ValueError(f"points must have 3 coordinates, got shape {p.shape}")
        return p @ self.rotation.T + self.translation

    def matrix(self) -> np.ndarray:
        """The 4x4 homogeneous transformation matrix."""
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m

    def inverse(self) -> "SE3":
        rotation_t = self.rotation.T
        return SE3(rotation_t, -rotation_t @ self.translation)

    def __matmul__(self, other: object) -> "SE3 | np.ndarray":
        if isinstance(other, SE3):
            return SE3(
                self.rotation @ other.rotation,
                self.rotation @ other.translation + self.translation,
            )
        if isinstance(other, (np.ndarray, list, tuple)):
            return self.act(other)
        return NotImplemented