"""Tests for gradient-magnitude segmentation."""

import numpy as np

from parametric_seg.gradients import (
    clip_image,
    estimate_gradient_params,
    estimate_gradient_sift_params,
    gradient_magnitude,
    gradient_threshold,
    mask_convex_hull,
    rescale_and_smooth,
    segment_by_inverted_gradient,
)


def _bright_square(shape=(80, 80), start=25, size=30, value=100.0):
    image = np.zeros(shape)
    image[start:start + size, start:start + size] = value
    return image


class TestGradientMagnitude:
    def test_ramp(self):
        image = np.tile(np.arange(20, dtype=float), (10, 1))
        magnitude = gradient_magnitude(image)
        np.testing.assert_allclose(magnitude[:, 1:-1], 2.0)

    def test_flat(self):
        assert not gradient_magnitude(np.full((10, 10), 5.0)).any()


class TestGradientThreshold:
    def test_square_edges(self):
        mask = gradient_threshold(_bright_square(), 20)
        assert mask.dtype == bool
        assert mask[24:26, 40].all()
        assert not mask[40, 40]
        assert not mask[0, 0]


class TestRescaleAndSmooth:
    def test_zero_sigma_passthrough(self):
        image = np.arange(16).reshape(4, 4)
        result = rescale_and_smooth(image, 0)
        assert result.dtype == np.float64
        np.testing.assert_array_equal(result, image)

    def test_range(self):
        result = rescale_and_smooth(_bright_square(), 2)
        assert result.shape == (80, 80)
        assert result.min() >= 0
        assert result.max() > 50


class TestClipImage:
    def test_subtracts_fraction_of_range(self):
        image = np.array([[0.0, 5.0], [50.0, 100.0]])
        np.testing.assert_allclose(clip_image(image, 10), [[0.0, 0.0], [40.0, 90.0]])


class TestSegmentByInvertedGradient:
    def test_shape_and_type(self):
        mask = segment_by_inverted_gradient(_bright_square(), 0.1)
        assert mask.shape == (80, 80)
        assert mask.dtype == bool
        assert mask.any()

    def test_flat_image(self):
        assert not segment_by_inverted_gradient(np.full((30, 30), 7.0), 0.1).any()


class TestMaskConvexHull:
    def test_empty(self):
        assert mask_convex_hull(np.zeros((10, 10), dtype=bool)).shape == (0, 2)

    def test_l_shape_closed(self):
        mask = np.zeros((40, 40), dtype=bool)
        mask[10:30, 10:15] = True
        mask[25:30, 10:30] = True
        polygon = mask_convex_hull(mask)

        assert polygon.shape[0] > 3
        np.testing.assert_array_equal(polygon[0], polygon[-1])
        assert polygon[:, 0].min() >= 8 and polygon[:, 0].max() <= 31
        assert polygon[:, 1].min() >= 8 and polygon[:, 1].max() <= 31


class TestEstimators:
    def test_gradient_params(self):
        sigma, threshold, entropy_threshold = estimate_gradient_params(_bright_square())
        assert sigma == 3.0
        assert 0.0 <= threshold <= 100.0
        assert 0.0 <= entropy_threshold <= 1.0

    def test_gradient_params_flat(self):
        assert estimate_gradient_params(np.full((20, 20), 4.0)) == [3.0, 50.0, 0.1]

    def test_gradient_sift_params(self):
        percentage, size, tolerance = estimate_gradient_sift_params(_bright_square())
        assert 0.0 < percentage < 100.0
        assert size > 0
        assert tolerance >= 0

    def test_gradient_sift_params_flat(self):
        assert estimate_gradient_sift_params(np.full((20, 20), 4.0)) == [5.0, 50.0, 100.0]
