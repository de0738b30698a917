import numpy as np
import pytest
from PIL import Image

from visodom.features import DMatch, KeyPoint
from visodom.orb import bf_match, compute_orb, fast_detect, main

FULL = 0xFFFFFFFF


def _noise(size, seed):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=size, dtype=np.uint8)


def test_fast_uniform_image_has_no_corners():
    image = np.full((40, 40), 128, dtype=np.uint8)
    assert fast_detect(image, 40) == []


def test_fast_finds_single_bright_dot():
    image = np.zeros((30, 40), dtype=np.uint8)
    image[15, 20] = 255
    corners = fast_detect(image, 40)
    assert [(kp.x, kp.y) for kp in corners] == [(20.0, 15.0)]


def test_fast_finds_single_dark_dot():
    image = np.full((30, 40), 200, dtype=np.uint8)
    image[12, 25] = 0
    corners = fast_detect(image, 40)
    assert [(kp.x, kp.y) for kp in corners] == [(25.0, 12.0)]


def test_fast_threshold_is_strict():
    image = np.full((30, 30), 100, dtype=np.uint8)
    image[15, 15] = 140
    assert fast_detect(image, 40) == []
    image[15, 15] = 141
    assert len(fast_detect(image, 40)) == 1


def test_fast_rejects_colour_image():
    with pytest.raises(ValueError):
        fast_detect(np.zeros((20, 20, 3), dtype=np.uint8), 40)


def test_fast_keypoints_are_row_major_and_inside_image():
    image = _noise((60, 70), 1)
    corners = fast_detect(image, 40)
    assert corners
    positions = [(kp.y, kp.x) for kp in corners]
    assert positions == sorted(positions)
    assert all(3 <= kp.x < 67 and 3 <= kp.y < 57 for kp in corners)
    assert all(kp.response > 40 for kp in corners)


def test_compute_orb_border_rule():
    image = _noise((50, 60), 2)
    keypoints = [
        KeyPoint(16.0, 16.0),
        KeyPoint(15.0, 20.0),
        KeyPoint(20.0, 15.0),
        KeyPoint(44.0, 20.0),
        KeyPoint(43.0, 20.0),
        KeyPoint(20.0, 34.0),
        KeyPoint(20.0, 33.0),
    ]
    descriptors = compute_orb(image, keypoints)
    assert [d is None for d in descriptors] == [False, True, True, True, False, True, False]


def test_compute_orb_uniform_patch_gives_zero_descriptor():
    image = np.full((40, 40), 90, dtype=np.uint8)
    assert compute_orb(image, [KeyPoint(20.0, 20.0)]) == [(0,) * 8]


def test_compute_orb_descriptor_shape_and_determinism():
    image = _noise((64, 64), 3)
    keypoints = [KeyPoint(30.0, 30.0), KeyPoint(25.0, 35.0)]
    first = compute_orb(image, keypoints)
    second = compute_orb(image.copy(), keypoints)
    assert first == second
    for descriptor in first:
        assert len(descriptor) == 8
        assert all(0 <= word <= FULL for word in descriptor)


def test_bf_match_pairs_equal_descriptors():
    zeros = (0,) * 8
    ones = (FULL,) * 8
    matches = bf_match([zeros, None, ones], [ones, zeros])
    assert matches == [DMatch(0, 1, 0.0), DMatch(2, 0, 0.0)]


def test_bf_match_distance_limit():
    zeros = (0,) * 8
    near = (FULL, 0x7F, 0, 0, 0, 0, 0, 0)
    far = (FULL, 0xFF, 0, 0, 0, 0, 0, 0)
    assert bf_match([zeros], [near]) == [DMatch(0, 0, 39.0)]
    assert bf_match([zeros], [far]) == []


def test_bf_match_prefers_first_on_ties_and_skips_empty():
    zeros = (0,) * 8
    assert bf_match([zeros], [None, zeros, zeros]) == [DMatch(0, 1, 0.0)]
    assert bf_match([zeros], [None]) == []


def test_bf_match_rejects_wrong_length():
    with pytest.raises(ValueError):
        bf_match([(0,) * 7], [(0,) * 8])


def test_self_matching_of_real_descriptors():
    image = _noise((80, 80), 4)
    keypoints = fast_detect(image, 40)
    descriptors = compute_orb(image, keypoints)
    matches = bf_match(descriptors, descriptors)
    valid = [i for i, d in enumerate(descriptors) if d is not None]
    assert [m.query_idx for m in matches] == valid
    for m in matches:
        assert m.distance == 0.0
        assert descriptors[m.train_idx] == descriptors[m.query_idx]


def test_main_writes_matches_picture(tmp_path, monkeypatch, capsys):
    image = _noise((96, 96), 5)
    first = tmp_path / "a.png"
    second = tmp_path / "b.png"
    Image.fromarray(image).save(first)
    Image.fromarray(image).save(second)
    monkeypatch.chdir(tmp_path)

    assert main([str(first), str(second)]) == 0
    with Image.open(tmp_path / "matches.png") as picture:
        assert picture.size == (192, 96)
    lines = capsys.readouterr().out.splitlines()
    count = int(next(line for line in lines if line.startswith("matches: ")).split()[1])
    assert count > 0
    assert lines[-1] == "done."


def test_main_missing_images(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main([]) == 1
    assert not (tmp_path / "matches.png").exists()