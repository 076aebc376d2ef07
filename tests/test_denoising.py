"""Tests for preprocessing and denoising."""

import numpy as np
import pytest

from parametric_seg.denoising import (
    DENOISERS,
    PreprocessOptions,
    gaussian_smooth,
    median_filter_von_neumann,
    preprocess_image,
)


class TestGaussianSmooth:
    def test_constant_preserved_at_border(self):
        image = np.full((20, 20), 5.0)
        np.testing.assert_allclose(gaussian_smooth(image, 2.0), image)


class TestMedianVonNeumann:
    def test_removes_isolated_spike(self):
        image = np.zeros((9, 9))
        image[4, 4] = 100.0
        assert median_filter_von_neumann(image)[4, 4] == 0.0


class TestPreprocessImage:
    def test_no_options_returns_float(self):
        image = np.arange(16, dtype=np.uint8).reshape(4, 4)
        result = preprocess_image(image)
        assert result.dtype == np.float64
        np.testing.assert_array_equal(result, image)

    def test_rgb_to_grayscale(self):
        rgb = np.zeros((6, 6, 3))
        assert preprocess_image(rgb).shape == (6, 6)

    def test_invert(self):
        image = np.array([[0.0, 1.0], [2.0, 4.0]])
        result = preprocess_image(image, PreprocessOptions(invert=True))
        np.testing.assert_array_equal(result, [[4.0, 3.0], [2.0, 0.0]])

    def test_square_then_log(self):
        image = np.array([[0.0, 1.0], [2.0, 3.0]])
        result = preprocess_image(image, PreprocessOptions(square=True, log_scale=True))
        np.testing.assert_allclose(result, np.log(image ** 2 + 1))

    @pytest.mark.parametrize("method", sorted(DENOISERS))
    def test_denoisers_keep_shape(self, method):
        image = np.random.default_rng(0).normal(size=(30, 24))
        result = preprocess_image(image, PreprocessOptions(denoise=method))
        assert result.shape == image.shape

    def test_unknown_denoiser(self):
        with pytest.raises(ValueError):
            preprocess_image(np.zeros((4, 4)), PreprocessOptions(denoise='wavelet'))
