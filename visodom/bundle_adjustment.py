"""Bundle adjustment of BAL problems with a robust Huber loss."""

from __future__ import annotations

import random
import sys
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from visodom.bal import BALProblem
from visodom.lie import so3_exp, so3_log

_EPSILON = sys.float_info.epsilon


@dataclass(eq=False)
class PoseAndIntrinsics:
    """Camera rotation, translation, focal length and radial distortion."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    focal: float = 0.0
    k1: float = 0.0
    k2: float = 0.0

    @classmethod
    def from_array(cls, data: Sequence[float]) -> "PoseAndIntrinsics":
        """Build from the nine BAL camera parameters."""
        values = np.asarray(data, dtype=float)
        if values.shape != (9,):
            raise ValueError(f"camera must have 9 parameters, got shape {values.shape}")
        return cls(
            rotation=so3_exp(values[:3]),
            translation=values[3:6].copy(),
            focal=float(values[6]),
            k1=float(values[7]),
            k2=float(values[8]),
        )

    def to_array(self) -> np.ndarray:
        """The nine BAL camera parameters."""
        return np.concatenate(
            [so3_log(self.rotation), self.translation, [self.focal, self.k1, self.k2]]
        )

    def project(self, point: Sequence[float]) -> np.ndarray:
        """Project a point; the distortion radius includes the unit depth term."""
        pc = self.rotation @ np.asarray(point, dtype=float) + self.translation
        pc = -pc / pc[2]
        r2 = float(pc @ pc)
        distortion = 1.0 + r2 * (self.k1 + self.k2 * r2)
        return np.array([self.focal * distortion * pc[0], self.focal * distortion * pc[1]])


def _project_batch(cameras: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Project each point with the camera in the same row."""
    aa = cameras[:, :3]
    theta2 = np.einsum("ij,ij->i", aa, aa)
    far = theta2 > _EPSILON
    theta = np.sqrt(np.where(far, theta2, 1.0))
    w = aa / theta[:, None]
    cos_t = np.cos(theta)[:, None]
    sin_t = np.sin(theta)[:, None]
    dot = np.einsum("ij,ij->i", w, points)[:, None]
    rodrigues = points * cos_t + np.cross(w, points) * sin_t + w * dot * (1.0 - cos_t)
    taylor = points + np.cross(aa, points)
    p = np.where(far[:, None], rodrigues, taylor) + cameras[:, 3:6]

    xp = -p[:, 0] / p[:, 2]
    yp = -p[:, 1] / p[:, 2]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (cameras[:, 7] + cameras[:, 8] * r2)
    focal = cameras[:, 6]
    return np.column_stack([focal * distortion * xp, focal * distortion * yp])


def _require_angle_axis(problem: BALProblem) -> None:
    if problem.use_quaternions:
        raise ValueError("bundle adjustment needs cameras in angle-axis form")


def reprojection_residuals(problem: BALProblem) -> np.ndarray:
    """Predicted minus observed image position, one row per observation."""
    _require_angle_axis(problem)
    cameras = problem.cameras[problem.camera_index]
    points = problem.points[problem.point_index]
    return _project_batch(cameras, points) - problem.observations


def _jacobian_sparsity(problem: BALProblem) -> lil_matrix:
    n_obs = problem.num_observations
    sparsity = lil_matrix((2 * n_obs, problem.num_parameters), dtype=int)
    point_offset = 9 * problem.num_cameras
    rows = np.arange(n_obs)
    for k in range(9):
        sparsity[2 * rows, 9 * problem.camera_index + k] = 1
        sparsity[2 * rows + 1, 9 * problem.camera_index + k] = 1
    for k in range(3):
        sparsity[2 * rows, point_offset + 3 * problem.point_index + k] = 1
        sparsity[2 * rows + 1, point_offset + 3 * problem.point_index + k] = 1
    return sparsity


def solve_ba(problem: BALProblem, max_iterations: int = 50) -> float:
    """Refine cameras and points in place; return the final robust cost."""
    _require_angle_axis(problem)
    if problem.num_observations == 0:
        raise ValueError("problem has no observations")

    n_cam = problem.num_cameras
    camera_index = problem.camera_index
    point_index = problem.point_index
    observations = problem.observations

    def residuals(x: np.ndarray) -> np.ndarray:
        cameras = x[: 9 * n_cam].reshape(n_cam, 9)
        points = x[9 * n_cam:].reshape(-1, 3)
        predicted = _project_batch(cameras[camera_index], points[point_index])
        return (predicted - observations).ravel()

    result = least_squares(
        residuals,
        problem.parameters.copy(),
        jac_sparsity=_jacobian_sparsity(problem),
        loss="huber",
        f_scale=1.0,
        method="trf",
        x_scale="jac",
        max_nfev=max_iterations,
    )
    problem.parameters[:] = result.x
    return float(result.cost)


def main(argv: list[str] | None = None) -> int:
    """Load a BAL file, perturb it, optimise it and write PLY clouds before and after."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: bundle_adjustment bal_data.txt")
        return 1

    problem = BALProblem.from_file(args[0])
    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5, random.Random())
    problem.write_to_ply_file("initial.ply")

    print("bal problem file loaded...")
    print(
        f"bal problem have {problem.num_cameras} cameras and "
        f"{problem.num_points} points. "
    )
    print(f"Forming {problem.num_observations} observations. ")
    print("Solving BA ... ")
    cost = solve_ba(problem)
    print(f"final cost: {cost}")

    problem.write_to_ply_file("final.ply")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())