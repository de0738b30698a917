"""Bundle-adjustment-in-the-large problems: loading, saving and normalising."""

from __future__ import annotations

import random
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Sequence, TypeVar

import numpy as np

from visodom.noise import rand_normal
from visodom.rotation import (
    angle_axis_rotate_point,
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
)

_T = TypeVar("_T")


def median(values: Sequence[float]) -> float:
    """Return the element at position ``n // 2`` of the sorted values."""
    ordered = sorted(float(v) for v in values)
    if not ordered:
        raise ValueError("median of an empty sequence")
    return ordered[len(ordered) // 2]


def perturb_point3(sigma: float, point: Sequence[float], rng: random.Random) -> np.ndarray:
    """Return ``point`` with Gaussian noise of deviation ``sigma`` added."""
    noise = np.array([rand_normal(rng) * sigma for _ in range(3)])
    return np.asarray(point, dtype=float) + noise


def _take(tokens: Iterator[str], convert: Callable[[str], _T]) -> _T:
    try:
        return convert(next(tokens))
    except (StopIteration, ValueError) as exc:
        raise ValueError("invalid BAL data file") from exc


@dataclass
class BALProblem:
    """Cameras, points and observations of a bundle adjustment problem."""

    num_cameras: int
    num_points: int
    camera_index: np.ndarray
    point_index: np.ndarray
    observations: np.ndarray
    parameters: np.ndarray
    use_quaternions: bool = False

    @property
    def camera_block_size(self) -> int:
        return 10 if self.use_quaternions else 9

    @property
    def point_block_size(self) -> int:
        return 3

    @property
    def num_observations(self) -> int:
        return len(self.camera_index)

    @property
    def num_parameters(self) -> int:
        return len(self.parameters)

    @property
    def cameras(self) -> np.ndarray:
        """Camera parameters, one row per camera (a view into ``parameters``)."""
        size = self.camera_block_size * self.num_cameras
        return self.parameters[:size].reshape(self.num_cameras, self.camera_block_size)

    @property
    def points(self) -> np.ndarray:
        """Point coordinates, one row per point (a view into ``parameters``)."""
        start = self.camera_block_size * self.num_cameras
        return self.parameters[start:].reshape(self.num_points, self.point_block_size)

    @classmethod
    def from_file(cls, path: str | Path, use_quaternions: bool = False) -> "BALProblem":
        """Load a problem from a BAL text file."""
        tokens = iter(Path(path).read_text().split())
        num_cameras = _take(tokens, int)
        num_points = _take(tokens, int)
        num_observations = _take(tokens, int)

        camera_index = np.empty(num_observations, dtype=int)
        point_index = np.empty(num_observations, dtype=int)
        observations = np.empty((num_observations, 2))
        for i in range(num_observations):
            camera_index[i] = _take(tokens, int)
            point_index[i] = _take(tokens, int)
            observations[i] = (_take(tokens, float), _take(tokens, float))

        num_parameters = 9 * num_cameras + 3 * num_points
        parameters = np.array([_take(tokens, float) for _ in range(num_parameters)])

        if use_quaternions:
            cameras = parameters[: 9 * num_cameras].reshape(num_cameras, 9)
            quaternion_cameras = np.array(
                [np.concatenate([angle_axis_to_quaternion(c[:3]), c[3:]]) for c in cameras]
            ).reshape(num_cameras, 10)
            parameters = np.concatenate(
                [quaternion_cameras.ravel(), parameters[9 * num_cameras:]]
            )

        return cls(
            num_cameras=num_cameras,
            num_points=num_points,
            camera_index=camera_index,
            point_index=point_index,
            observations=observations,
            parameters=parameters,
            use_quaternions=use_quaternions,
        )

    def write_to_file(self, path: str | Path) -> None:
        """Save the problem in BAL text layout, rotations as angle-axis."""
        lines = [
            f"{self.num_cameras} {self.num_cameras} {self.num_points} {self.num_observations}"
        ]
        for cam, pt, obs in zip(self.camera_index, self.point_index, self.observations):
            lines.append(f"{cam} {pt}" + "".join(f" {v:g}" for v in obs))
        for camera in self.cameras:
            if self.use_quaternions:
                values = np.concatenate([quaternion_to_angle_axis(camera[:4]), camera[4:10]])
            else:
                values = camera
            lines.extend(f"{v:.16g}" for v in values)
        for point in self.points:
            lines.extend(f"{v:.16g}" for v in point)
        Path(path).write_text("\n".join(lines) + "\n")

    def write_to_ply_file(self, path: str | Path) -> None:
        """Save camera centres (green) and points (white) as an ASCII PLY cloud."""
        lines = [
            "ply",
            "format ascii 1.0",
            f"element vertex {self.num_cameras + self.num_points}",
            "property float x",
            "property float y",
            "property float z",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "end_header",
        ]
        for camera in self.cameras:
            _, center = self.camera_to_angle_axis_and_center(camera)
            lines.append(f"{center[0]:g} {center[1]:g} {center[2]:g} 0 255 0")
        for point in self.points:
            lines.append("".join(f"{v:g} " for v in point) + " 255 255 255")
        Path(path).write_text("\n".join(lines) + "\n")

    def camera_to_angle_axis_and_center(self, camera: Sequence[float]) -> tuple[np.ndarray, np.ndarray]:
        """Return the camera's angle-axis rotation and its centre ``c = -R't``."""
        cam = np.asarray(camera, dtype=float)
        if self.use_quaternions:
            angle_axis = quaternion_to_angle_axis(cam[:4])
        else:
            angle_axis = cam[:3].copy()
        block = self.camera_block_size
        translation = cam[block - 6: block - 3]
        center = -angle_axis_rotate_point(-angle_axis, translation)
        return angle_axis, center

    def angle_axis_and_center_to_camera(
        self, angle_axis: Sequence[float], center: Sequence[float]
    ) -> np.ndarray:
        """Return the rotation and translation ``t = -R c`` in camera layout.

        The result holds the leading ``camera_block_size - 3`` entries of a
        camera; the intrinsics are not part of it.
        """
        aa = np.asarray(angle_axis, dtype=float)
        rotation = angle_axis_to_quaternion(aa) if self.use_quaternions else aa.copy()
        translation = -angle_axis_rotate_point(aa, center)
        return np.concatenate([rotation, translation])

    def normalize(self) -> None:
        """Centre the points on their median and scale them to a median deviation of 100."""
        points = self.points
        center_median = np.array([median(points[:, i]) for i in range(3)])
        deviations = np.abs(points - center_median).sum(axis=1)
        median_absolute_deviation = median(deviations)
        if median_absolute_deviation == 0.0:
            raise ValueError("cannot normalize: median absolute deviation is zero")
        scale = 100.0 / median_absolute_deviation

        points[:] = scale * (points - center_median)

        extrinsic_size = self.camera_block_size - 3
        for camera in self.cameras:
            angle_axis, center = self.camera_to_angle_axis_and_center(camera)
            center = scale * (center - center_median)
            camera[:extrinsic_size] = self.angle_axis_and_center_to_camera(angle_axis, center)

    def perturb(
        self,
        rotation_sigma: float,
        translation_sigma: float,
        point_sigma: float,
        rng: random.Random | None = None,
    ) -> None:
        """Add Gaussian noise to points, camera rotations and translations."""
        if point_sigma < 0.0 or rotation_sigma < 0.0 or translation_sigma < 0.0:
            raise ValueError("noise deviations must be non-negative")
        if rng is None:
            rng = random.Random()

        points = self.points
        if point_sigma > 0:
            for point in points:
                point[:] = perturb_point3(point_sigma, point, rng)

        block = self.camera_block_size
        for camera in self.cameras:
            angle_axis, center = self.camera_to_angle_axis_and_center(camera)
            if rotation_sigma > 0.0:
                angle_axis = perturb_point3(rotation_sigma, angle_axis, rng)
            camera[: block - 3] = self.angle_axis_and_center_to_camera(angle_axis, center)
            if translation_sigma > 0.0:
                camera[block - 6: block - 3] = perturb_point3(
                    translation_sigma, camera[block - 6: block - 3], rng
                )

    def camera_for_observation(self, i: int) -> np.ndarray:
        """Parameters of the camera seen in observation ``i`` (a view)."""
        return self.cameras[self.camera_index[i]]

    def point_for_observation(self, i: int) -> np.ndarray:
        """Coordinates of the point seen in observation ``i`` (a view)."""
        return self.points[self.point_index[i]]