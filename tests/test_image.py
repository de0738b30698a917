import numpy as np
import pytest
from PIL import Image

from visodom.image import build_pyramid, get_pixel_value, load_gray


@pytest.fixture
def ramp():
    return np.arange(12, dtype=float).reshape(3, 4)


def test_integer_coordinates_return_pixel(ramp):
    assert get_pixel_value(ramp, 1, 2) == ramp[2, 1]
    assert get_pixel_value(ramp, 3, 0) == ramp[0, 3]


def test_midpoint_is_mean_of_neighbours(ramp):
    expected = ramp[0:2, 1:3].mean()
    assert get_pixel_value(ramp, 1.5, 0.5) == pytest.approx(expected)


def test_negative_coordinates_clamp_to_origin(ramp):
    assert get_pixel_value(ramp, -5.0, -5.0) == ramp[0, 0]


def test_coordinates_past_edge_clamp_to_last_pixel(ramp):
    assert get_pixel_value(ramp, 10.0, 0.0) == ramp[0, 3]
    assert get_pixel_value(ramp, 0.0, 7.0) == ramp[2, 0]


def test_array_coordinates_match_scalar_calls(ramp):
    xs = np.array([0.25, 1.5, 2.75])
    ys = np.array([0.5, 1.25, 1.9])
    values = get_pixel_value(ramp, xs, ys)
    assert values.shape == (3,)
    for x, y, v in zip(xs, ys, values):
        assert v == pytest.approx(get_pixel_value(ramp, x, y))


def test_get_pixel_value_rejects_colour_image():
    with pytest.raises(ValueError):
        get_pixel_value(np.zeros((4, 4, 3)), 1.0, 1.0)


def test_pyramid_shapes_halve():
    image = np.random.default_rng(1).random((48, 64))
    pyramid = build_pyramid(image, 4, 0.5)
    assert [p.shape for p in pyramid] == [(48, 64), (24, 32), (12, 16), (6, 8)]
    assert np.array_equal(pyramid[0], image)


def test_pyramid_of_constant_image_is_constant():
    image = np.full((32, 40), 77, dtype=np.uint8)
    pyramid = build_pyramid(image, 3, 0.5)
    for level in pyramid:
        assert level.dtype == np.uint8
        assert np.all(level == 77)


def test_half_scale_preserves_mean():
    image = np.random.default_rng(2).random((16, 20))
    smaller = build_pyramid(image, 2, 0.5)[1]
    assert smaller.mean() == pytest.approx(image.mean())


def test_pyramid_rejects_bad_arguments():
    image = np.zeros((8, 8))
    with pytest.raises(ValueError):
        build_pyramid(image, 0, 0.5)
    with pytest.raises(ValueError):
        build_pyramid(image, 2, 1.5)
    with pytest.raises(ValueError):
        build_pyramid(np.zeros((2, 2)), 4, 0.5)


def test_load_gray_round_trip(tmp_path):
    data = np.random.default_rng(3).integers(0, 256, (10, 12), dtype=np.uint8)
    path = tmp_path / "gray.png"
    Image.fromarray(data).save(path)
    loaded = load_gray(path)
    assert loaded.dtype == np.uint8
    assert np.array_equal(loaded, data)


def test_load_gray_converts_colour(tmp_path):
    path = tmp_path / "colour.png"
    Image.new("RGB", (5, 4), (10, 20, 30)).save(path)
    loaded = load_gray(path)
    assert loaded.shape == (4, 5)
    assert np.all(loaded == loaded[0, 0])