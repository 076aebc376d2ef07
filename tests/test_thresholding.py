"""Tests for intensity thresholding and parameter estimation."""

import numpy as np
import pytest

from parametric_seg.denoising import median_filter
from parametric_seg.thresholding import (
    adaptive_threshold_surface,
    estimate_bimodal_threshold,
    estimate_bradley_params,
    hard_threshold,
    percentage_to_intensity,
    threshold_and_binarize,
    threshold_image,
)


def _banded_image(low_rows, high_rows, cols=50, seed=0):
    """Rows of dim (~10) pixels above rows of bright (~200) pixels."""
    rng = np.random.default_rng(seed)
    low = rng.normal(loc=10.0, scale=1.0, size=(low_rows, cols))
    high = rng.normal(loc=200.0, scale=1.0, size=(high_rows, cols))
    return np.vstack([low, high]), low.mean(), high.mean()


def _bimodal_image(seed=0):
    """100x100 dim background (~10) with a bright 30x30 square (~200), about 10:1 pixels."""
    rng = np.random.default_rng(seed)
    image = rng.normal(loc=10.0, scale=1.0, size=(100, 100))
    image[35:65, 35:65] = rng.normal(loc=200.0, scale=1.0, size=(30, 30))
    return image


class TestPercentageToIntensity:
    def test_endpoints(self):
        image = np.array([[10.0, 20.0], [30.0, 110.0]])
        assert percentage_to_intensity(image, 0) == 10.0
        assert percentage_to_intensity(image, 100) == 110.0
        assert percentage_to_intensity(image, 50) == 60.0


class TestEstimateBimodalThreshold:
    def test_constant_image(self):
        """A constant image has no range; the midpoint is returned."""
        estimate = estimate_bimodal_threshold(np.full((20, 20), 7.0))
        assert estimate.threshold == 50.0

    def test_separates_two_populations(self):
        image = _bimodal_image()
        estimate = estimate_bimodal_threshold(image)

        assert 0.0 <= estimate.threshold < 100.0

        mask = threshold_image(image, estimate.threshold)
        # Square interior is foreground; at most the brightest background
        # pixel sits exactly on the threshold
        assert mask[40:60, 40:60].all()
        outside = mask.copy()
        outside[34:66, 34:66] = False
        assert outside.sum() <= 1

    @pytest.mark.parametrize('low_rows, high_rows', [(10, 10), (10, 100), (100, 10)])
    def test_threshold_between_class_means(self, low_rows, high_rows):
        image, mean_low, mean_high = _banded_image(low_rows, high_rows)
        estimate = estimate_bimodal_threshold(image)

        intensity = percentage_to_intensity(median_filter(image, 3), estimate.threshold)
        assert mean_low < intensity < mean_high

    def test_companion_defaults(self):
        estimate = estimate_bimodal_threshold(_bimodal_image())
        vector = estimate.as_vector()
        assert len(vector) == 3
        assert vector[1] == 3.0
        assert vector[2] == 0.5


class TestThresholdImage:
    def test_step_edge(self):
        image = np.zeros((50, 50))
        image[:, 25:] = 100.0
        mask = threshold_image(image, 50)
        assert mask.dtype == bool
        assert mask[:, 30:].all()
        assert not mask[:, :20].any()

    def test_hard_threshold_uses_absolute_intensity(self):
        image = np.zeros((50, 50))
        image[:, 25:] = 100.0
        assert hard_threshold(image, 99.0)[:, 30:].all()
        assert not hard_threshold(image, 100.0).any()


class TestAdaptiveThreshold:
    def test_surface_shape(self):
        image = _bimodal_image()
        surface = adaptive_threshold_surface(image, 3)
        assert surface.shape == image.shape

    def test_shape_mismatch_raises(self):
        image = _bimodal_image()
        with pytest.raises(ValueError):
            threshold_and_binarize(image, np.zeros((10, 10)), 10)

    def test_points_above_floor(self):
        """Every returned pixel passes the global brightness floor."""
        image = _bimodal_image(seed=1)
        surface = adaptive_threshold_surface(image, 3)
        points = threshold_and_binarize(image, surface, 10)

        assert points.ndim == 2 and points.shape[1] == 2
        floor = percentage_to_intensity(image, 10)
        x = points[:, 0].astype(int)
        y = points[:, 1].astype(int)
        assert np.all(image[y, x] > floor)

    def test_combined_mask_within_floor_mask(self):
        """Adding the adaptive surface can only remove pixels from the floor-only result."""
        image = _bimodal_image(seed=2)
        surface = adaptive_threshold_surface(image, 3)
        combined = threshold_and_binarize(image, surface, 10)
        floor_only = threshold_and_binarize(image, np.full(image.shape, -np.inf), 10)

        combined_set = {tuple(p) for p in combined}
        floor_set = {tuple(p) for p in floor_only}
        assert len(floor_set) > 0
        assert combined_set <= floor_set

    def test_full_floor_gives_no_points(self):
        image = _bimodal_image()
        surface = adaptive_threshold_surface(image, 3)
        points = threshold_and_binarize(image, surface, 100)
        assert points.shape == (0, 2)


class TestEstimateBradleyParams:
    def test_vector(self):
        radius, threshold, shrink = estimate_bradley_params(_bimodal_image())
        assert radius >= 0
        assert 0.0 <= threshold <= 100.0
        assert shrink == 0.5

    def test_constant_image(self):
        _, threshold, _ = estimate_bradley_params(np.full((32, 32), 3.0))
        assert threshold == 50.0
