import random

import numpy as np
import pytest

from visodom.bal import BALProblem, median, perturb_point3
from visodom.reprojection import SnavelyReprojectionError

CAMERAS = [
    [0.1, -0.2, 0.05, 0.3, 0.1, -10.0, 500.0, 0.01, 0.001],
    [-0.05, 0.15, 0.1, -0.4, 0.2, -12.0, 480.0, -0.02, 0.0],
]
POINTS = [[1.0, 2.0, 3.0], [-2.0, 0.5, 1.0], [0.5, -1.0, -2.0]]
OBSERVATIONS = [
    (0, 0, -1.5, 2.25),
    (0, 1, 3.0, -0.5),
    (1, 1, 0.75, 1.0),
    (1, 2, -2.0, 0.125),
]


@pytest.fixture
def bal_file(tmp_path):
    lines = [f"{len(CAMERAS)} {len(POINTS)} {len(OBSERVATIONS)}"]
    lines += [f"{c} {p} {x} {y}" for c, p, x, y in OBSERVATIONS]
    lines += [str(v) for cam in CAMERAS for v in cam]
    lines += [str(v) for pt in POINTS for v in pt]
    path = tmp_path / "problem.txt"
    path.write_text("\n".join(lines) + "\n")
    return path


def _residuals(problem):
    return np.array(
        [
            SnavelyReprojectionError(*problem.observations[i])(
                problem.camera_for_observation(i), problem.point_for_observation(i)
            )
            for i in range(problem.num_observations)
        ]
    )


def test_median_odd():
    assert median([3.0, 1.0, 2.0]) == 2.0


def test_median_even_takes_upper_middle():
    assert median([4.0, 1.0, 3.0, 2.0]) == 3.0


def test_median_empty_raises():
    with pytest.raises(ValueError):
        median([])


def test_perturb_point3_zero_sigma_keeps_point():
    assert np.allclose(perturb_point3(0.0, [1.0, 2.0, 3.0], random.Random(0)), [1.0, 2.0, 3.0])


def test_perturb_point3_is_deterministic():
    a = perturb_point3(0.5, [1.0, 2.0, 3.0], random.Random(9))
    b = perturb_point3(0.5, [1.0, 2.0, 3.0], random.Random(9))
    assert np.array_equal(a, b)
    assert not np.allclose(a, [1.0, 2.0, 3.0])


def test_load_counts(bal_file):
    problem = BALProblem.from_file(bal_file)
    assert (problem.num_cameras, problem.num_points, problem.num_observations) == (2, 3, 4)
    assert problem.num_parameters == 9 * 2 + 3 * 3


def test_load_contents(bal_file):
    problem = BALProblem.from_file(bal_file)
    assert np.allclose(problem.observations[1], [3.0, -0.5])
    assert np.allclose(problem.camera_for_observation(2), CAMERAS[1])
    assert np.allclose(problem.point_for_observation(3), POINTS[2])
    assert np.allclose(problem.points, POINTS)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        BALProblem.from_file(tmp_path / "absent.txt")


def test_truncated_file_raises(tmp_path):
    path = tmp_path / "short.txt"
    path.write_text("1 1 1\n0 0 1.0\n")
    with pytest.raises(ValueError):
        BALProblem.from_file(path)


def test_quaternion_layout_matches_angle_axis(bal_file):
    plain = BALProblem.from_file(bal_file)
    quat = BALProblem.from_file(bal_file, use_quaternions=True)
    assert quat.num_parameters == 10 * 2 + 3 * 3
    assert np.allclose(quat.points, plain.points)
    for cam_q, cam_a in zip(quat.cameras, plain.cameras):
        aa_q, center_q = quat.camera_to_angle_axis_and_center(cam_q)
        aa_a, center_a = plain.camera_to_angle_axis_and_center(cam_a)
        assert np.allclose(aa_q, aa_a)
        assert np.allclose(center_q, center_a)
        assert np.allclose(cam_q[4:], cam_a[3:])


def test_center_camera_round_trip(bal_file):
    problem = BALProblem.from_file(bal_file)
    camera = problem.cameras[0]
    aa, center = problem.camera_to_angle_axis_and_center(camera)
    assert np.allclose(problem.angle_axis_and_center_to_camera(aa, center), camera[:6])


def test_write_to_file(bal_file, tmp_path):
    problem = BALProblem.from_file(bal_file)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "2 2 3 4"
    assert lines[1] == "0 0 -1.5 2.25"
    assert len(lines) == 1 + 4 + 18 + 9
    assert np.allclose([float(v) for v in lines[5:23]], np.ravel(CAMERAS))


def test_write_to_file_quaternions_outputs_angle_axis(bal_file, tmp_path):
    problem = BALProblem.from_file(bal_file, use_quaternions=True)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    values = [float(v) for v in out.read_text().splitlines()[5:]]
    assert np.allclose(values, list(np.ravel(CAMERAS)) + list(np.ravel(POINTS)))


def test_write_to_ply_file(bal_file, tmp_path):
    problem = BALProblem.from_file(bal_file)
    out = tmp_path / "cloud.ply"
    problem.write_to_ply_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "ply"
    assert "element vertex 5" in lines
    assert len(lines) == 10 + 5
    assert lines[-3] == "1 2 3  255 255 255"
    assert lines[10].endswith(" 0 255 0")


def test_normalize_centres_and_scales_points(bal_file):
    problem = BALProblem.from_file(bal_file)
    problem.normalize()
    pts = problem.points
    for axis in range(3):
        assert median(pts[:, axis]) == pytest.approx(0.0, abs=1e-9)
    assert median(np.abs(pts).sum(axis=1)) == pytest.approx(100.0)


def test_normalize_preserves_reprojection(bal_file):
    problem = BALProblem.from_file(bal_file)
    before = _residuals(problem)
    problem.normalize()
    assert np.allclose(_residuals(problem), before, atol=1e-8)


def test_perturb_rejects_negative_sigma(bal_file):
    problem = BALProblem.from_file(bal_file)
    with pytest.raises(ValueError):
        problem.perturb(-0.1, 0.5, 0.5)


def test_perturb_zero_sigma_keeps_parameters(bal_file):
    problem = BALProblem.from_file(bal_file)
    original = problem.parameters.copy()
    problem.perturb(0.0, 0.0, 0.0, random.Random(1))
    assert np.allclose(problem.parameters, original)


def test_perturb_is_seeded_and_keeps_intrinsics(bal_file):
    first = BALProblem.from_file(bal_file)
    second = BALProblem.from_file(bal_file)
    first.perturb(0.1, 0.5, 0.5, random.Random(3))
    second.perturb(0.1, 0.5, 0.5, random.Random(3))
    assert np.array_equal(first.parameters, second.parameters)
    assert np.allclose(first.cameras[:, 6:], np.asarray(CAMERAS)[:, 6:])
    assert not np.allclose(first.points, POINTS)