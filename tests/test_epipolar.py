import numpy as np
import pytest

from visodom.epipolar import (
    depth_color,
    epipolar_constraint,
    find_essential,
    find_fundamental_8point,
    find_homography,
    pixel2cam,
    recover_pose,
    skew,
    triangulate,
)
from visodom.lie import so3_exp

K = np.array([[520.9, 0.0, 325.1], [0.0, 521.0, 249.7], [0.0, 0.0, 1.0]])
R_TRUE = so3_exp([0.05, -0.1, 0.02])
T_TRUE = np.array([0.5, 0.1, 0.05])


def _project(points):
    h = points @ K.T
    return h[:, :2] / h[:, 2:]


@pytest.fixture
def scene():
    rng = np.random.default_rng(7)
    n = 40
    pts = np.column_stack(
        [rng.uniform(-1, 1, n), rng.uniform(-1, 1, n), rng.uniform(4, 8, n)]
    )
    pts2 = pts @ R_TRUE.T + T_TRUE
    return pts, _project(pts), _project(pts2)


def _normalized(pixels):
    return np.column_stack(
        [(pixels[:, 0] - 325.1) / 521.0, (pixels[:, 1] - 249.7) / 521.0, np.ones(len(pixels))]
    )


def test_pixel2cam_principal_point_maps_to_origin():
    assert np.allclose(pixel2cam((325.1, 249.7), K), [0.0, 0.0])


def test_pixel2cam_inverts_projection():
    pixel = K @ np.array([0.2, -0.1, 1.0])
    assert np.allclose(pixel2cam(pixel[:2], K), [0.2, -0.1])


def test_pixel2cam_rejects_wrong_shape():
    with pytest.raises(ValueError):
        pixel2cam((1.0, 2.0, 3.0), K)


def test_skew_matches_cross_product_and_is_antisymmetric():
    t = np.array([0.3, -1.2, 2.0])
    v = np.array([1.5, 0.4, -0.7])
    s = skew(t)
    assert np.allclose(s @ v, np.cross(t, v))
    assert np.allclose(s.T, -s)


def test_fundamental_satisfies_epipolar_constraint(scene):
    _, p1, p2 = scene
    f = find_fundamental_8point(p1, p2)
    assert f[2, 2] == pytest.approx(1.0)
    fn = f / np.linalg.norm(f)
    h1 = np.column_stack([p1, np.ones(len(p1))])
    h2 = np.column_stack([p2, np.ones(len(p2))])
    residuals = np.einsum("ij,jk,ik->i", h2, fn, h1)
    assert np.max(np.abs(residuals)) < 1e-6
    assert abs(np.linalg.det(fn)) < 1e-10


def test_fundamental_needs_eight_points(scene):
    _, p1, p2 = scene
    with pytest.raises(ValueError):
        find_fundamental_8point(p1[:7], p2[:7])


def test_essential_satisfies_constraint_and_has_unit_singular_values(scene):
    _, p1, p2 = scene
    e = find_essential(p1, p2, 521.0, (325.1, 249.7))
    y1 = _normalized(p1)
    y2 = _normalized(p2)
    residuals = np.einsum("ij,jk,ik->i", y2, e, y1)
    assert np.max(np.abs(residuals)) < 1e-8
    assert np.allclose(np.linalg.svd(e, compute_uv=False), [1.0, 1.0, 0.0], atol=1e-9)


def test_essential_matches_true_motion_up_to_scale(scene):
    _, p1, p2 = scene
    e = find_essential(p1, p2, 521.0, (325.1, 249.7))
    expected = skew(T_TRUE) @ R_TRUE
    expected /= np.linalg.norm(expected)
    en = e / np.linalg.norm(e)
    assert min(np.linalg.norm(en - expected), np.linalg.norm(en + expected)) < 1e-6


def test_recover_pose_finds_true_rotation_and_direction(scene):
    _, p1, p2 = scene
    e = find_essential(p1, p2, 521.0, (325.1, 249.7))
    R, t = recover_pose(e, p1, p2, 521.0, (325.1, 249.7))
    assert np.allclose(R, R_TRUE, atol=1e-6)
    assert np.allclose(t, T_TRUE / np.linalg.norm(T_TRUE), atol=1e-6)


def test_recover_pose_rejects_mismatched_points(scene):
    _, p1, p2 = scene
    with pytest.raises(ValueError):
        recover_pose(np.eye(3), p1, p2[:-1])


def test_epipolar_constraint_vanishes_for_true_motion(scene):
    _, p1, p2 = scene
    values = [epipolar_constraint(a, b, R_TRUE, T_TRUE, K) for a, b in zip(p1, p2)]
    assert np.max(np.abs(values)) < 1e-10


def test_triangulate_recovers_scene_points(scene):
    pts, p1, p2 = scene
    recovered = triangulate(p1, p2, R_TRUE, T_TRUE, K)
    assert recovered.shape == pts.shape
    assert np.allclose(recovered, pts, atol=1e-6)


def test_homography_maps_plane_points():
    rng = np.random.default_rng(3)
    n = 20
    plane = np.column_stack([rng.uniform(-1, 1, n), rng.uniform(-1, 1, n), np.full(n, 5.0)])
    p1 = _project(plane)
    p2 = _project(plane @ R_TRUE.T + T_TRUE)
    h = find_homography(p1, p2)
    assert h[2, 2] == pytest.approx(1.0)
    mapped = np.column_stack([p1, np.ones(n)]) @ h.T
    assert np.allclose(mapped[:, :2] / mapped[:, 2:], p2, atol=1e-6)


def test_homography_needs_four_points():
    with pytest.raises(ValueError):
        find_homography([[0, 0], [1, 0], [0, 1]], [[0, 0], [1, 0], [0, 1]])


def test_depth_color_clamps_range():
    assert depth_color(1.0) == depth_color(10.0)
    assert depth_color(80.0) == depth_color(50.0)


def test_depth_color_shifts_from_red_to_blue():
    near = depth_color(20.0)
    far = depth_color(40.0)
    assert near[1] == 0.0
    assert far[0] > near[0]
    assert far[2] < near[2]


def test_depth_color_midpoint():
    assert depth_color(20.0) == pytest.approx((127.5, 0.0, 127.5))