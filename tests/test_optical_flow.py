import numpy as np
import pytest

from visodom.features import KeyPoint
from visodom.optical_flow import optical_flow_multi_level, optical_flow_single_level


def _pattern(shift_x=0.0, shift_y=0.0, size=200):
    ys, xs = np.mgrid[0:size, 0:size].astype(float)
    x = xs - shift_x
    y = ys - shift_y
    return 128.0 + 50.0 * np.sin(x / 10.0) + 40.0 * np.cos(y / 12.0) + 30.0 * np.sin((x + y) / 15.0)


KEYPOINTS = [KeyPoint(100.0, 100.0), KeyPoint(80.0, 120.0), KeyPoint(120.0, 90.0)]


@pytest.mark.parametrize("inverse", [False, True])
def test_single_level_recovers_small_shift(inverse):
    shift = (1.5, -1.0)
    img1 = _pattern()
    img2 = _pattern(*shift)
    tracked, success = optical_flow_single_level(img1, img2, KEYPOINTS, inverse=inverse)
    assert len(tracked) == len(KEYPOINTS)
    assert all(success)
    for kp, out in zip(KEYPOINTS, tracked):
        assert out.x == pytest.approx(kp.x + shift[0], abs=0.1)
        assert out.y == pytest.approx(kp.y + shift[1], abs=0.1)


def test_zero_motion_stays_in_place():
    img = _pattern()
    tracked, success = optical_flow_single_level(img, img, KEYPOINTS)
    assert all(success)
    for kp, out in zip(KEYPOINTS, tracked):
        assert out.x == pytest.approx(kp.x, abs=1e-6)
        assert out.y == pytest.approx(kp.y, abs=1e-6)


def test_initial_guess_at_truth_is_kept():
    shift = (3.0, 2.0)
    img1 = _pattern()
    img2 = _pattern(*shift)
    guesses = [KeyPoint(kp.x + shift[0], kp.y + shift[1]) for kp in KEYPOINTS]
    tracked, success = optical_flow_single_level(img1, img2, KEYPOINTS, guesses, has_initial=True)
    assert all(success)
    for guess, out in zip(guesses, tracked):
        assert out.x == pytest.approx(guess.x, abs=0.05)
        assert out.y == pytest.approx(guess.y, abs=0.05)


def test_tracked_keypoints_keep_attributes():
    kp = KeyPoint(100.0, 100.0, size=5.0, angle=30.0, response=2.0)
    img = _pattern()
    (out,), _ = optical_flow_single_level(img, _pattern(1.0, 0.0), [kp])
    assert (out.size, out.angle, out.response) == (kp.size, kp.angle, kp.response)


def test_flat_image_fails_and_keeps_position():
    flat = np.full((60, 60), 100.0)
    kp = KeyPoint(30.0, 30.0)
    (out,), (ok,) = optical_flow_single_level(flat, flat, [kp])
    assert ok is False
    assert (out.x, out.y) == (kp.x, kp.y)


def test_initial_guesses_required():
    img = _pattern()
    with pytest.raises(ValueError):
        optical_flow_single_level(img, img, KEYPOINTS, None, has_initial=True)
    with pytest.raises(ValueError):
        optical_flow_single_level(img, img, KEYPOINTS, KEYPOINTS[:1], has_initial=True)


def test_colour_image_rejected():
    with pytest.raises(ValueError):
        optical_flow_single_level(np.zeros((20, 20, 3)), np.zeros((20, 20, 3)), KEYPOINTS)


@pytest.mark.parametrize("inverse", [False, True])
def test_multi_level_recovers_larger_shift(inverse):
    shift = (6.0, 4.0)
    img1 = _pattern()
    img2 = _pattern(*shift)
    tracked, success = optical_flow_multi_level(img1, img2, KEYPOINTS, inverse)
    assert len(success) == len(KEYPOINTS)
    assert all(success)
    for kp, out in zip(KEYPOINTS, tracked):
        assert out.x == pytest.approx(kp.x + shift[0], abs=0.25)
        assert out.y == pytest.approx(kp.y + shift[1], abs=0.25)


def test_multi_level_with_no_keypoints():
    img = _pattern()
    tracked, success = optical_flow_multi_level(img, img, [])
    assert tracked == []
    assert success == []