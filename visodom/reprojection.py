"""Reprojection error for cameras in the bundle-adjustment-in-the-large layout.

A camera is nine numbers: angle-axis rotation (3), translation (3),
focal length, and second and fourth order radial distortion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from visodom.rotation import angle_axis_rotate_point


def cam_projection_with_distortion(camera: Sequence[float], point: Sequence[float]) -> np.ndarray:
    """Project a 3D point with a nine-parameter camera to image coordinates."""
    cam = np.asarray(camera, dtype=float)
    if cam.shape != (9,):
        raise ValueError(f"camera must have 9 parameters, got shape {cam.shape}")
    p = angle_axis_rotate_point(cam[:3], point) + cam[3:6]
    xp = -p[0] / p[2]
    yp = -p[1] / p[2]
    l1, l2, focal = cam[7], cam[8], cam[6]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (l1 + l2 * r2)
    return np.array([focal * distortion * xp, focal * distortion * yp])


@dataclass(frozen=True)
class SnavelyReprojectionError:
    """Residual between a projected point and an observed image point."""

    observed_x: float
    observed_y: float

    def __call__(self, camera: Sequence[float], point: Sequence[float]) -> np.ndarray:
        predictions = cam_projection_with_distortion(camera, point)
        return predictions - np.array([self.observed_x, self.observed_y])