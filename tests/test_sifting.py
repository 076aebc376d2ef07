"""Tests for connected-component size sifting."""

import numpy as np
import pytest

from parametric_seg.sifting import (
    component_areas,
    estimate_sift_params,
    estimate_tolerance_params,
    filter_by_size,
    filter_by_target_size,
    points_from_mask,
    sift_mask,
)


def _three_squares():
    """Separate squares of area 4, 25 and 100."""
    mask = np.zeros((60, 60), dtype=bool)
    mask[5:7, 5:7] = True
    mask[5:10, 20:25] = True
    mask[30:40, 30:40] = True
    return mask


def _kept_areas(mask):
    _, areas = component_areas(mask)
    return sorted(areas[1:].tolist())


class TestComponentAreas:
    def test_background_first(self):
        labels, areas = component_areas(_three_squares())
        assert labels.shape == (60, 60)
        assert areas[0] == 3600 - 129
        assert sorted(areas[1:].tolist()) == [4, 25, 100]

    def test_diagonal_neighbours_join(self):
        mask = np.zeros((5, 5), dtype=bool)
        mask[1, 1] = True
        mask[2, 2] = True
        _, areas = component_areas(mask)
        assert areas[1:].tolist() == [2]


class TestFilterBySize:
    @pytest.mark.parametrize('min_size, max_size, expected', [
        (70, 100, [25, 100]),
        (0, 30, [4]),
        (0, 100, [4, 25, 100]),
        (100, 0, [4, 25, 100]),
    ])
    def test_rank_window(self, min_size, max_size, expected):
        assert _kept_areas(filter_by_size(_three_squares(), min_size, max_size)) == expected

    def test_empty_mask(self):
        result = filter_by_size(np.zeros((10, 10), dtype=bool), 0, 100)
        assert result.shape == (10, 10)
        assert not result.any()


class TestFilterByTargetSize:
    @pytest.mark.parametrize('target, tolerance, expected', [
        (100, 0, [100]),
        (0, 0, [4]),
        (50, 100, [4, 25, 100]),
    ])
    def test_target_window(self, target, tolerance, expected):
        assert _kept_areas(filter_by_target_size(_three_squares(), target, tolerance)) == expected

    def test_empty_mask(self):
        assert not filter_by_target_size(np.zeros((10, 10), dtype=bool), 50, 10).any()


class TestSiftMask:
    def test_keeps_matching_size(self):
        assert _kept_areas(sift_mask(_three_squares(), 25, 5)) == [25]

    def test_fills_holes(self):
        mask = np.zeros((20, 20), dtype=bool)
        mask[5:12, 5:12] = True
        mask[7:10, 7:10] = False
        result = sift_mask(mask, 40, 0)
        assert result[8, 8]
        assert result.sum() == 49

    def test_lower_bound_at_least_one_pixel(self):
        mask = np.zeros((10, 10), dtype=bool)
        mask[2, 2] = True
        assert sift_mask(mask, 0, 0).sum() == 1


class TestPointsFromMask:
    def test_empty(self):
        assert points_from_mask(np.zeros((10, 10), dtype=bool)).shape == (0, 2)

    def test_square_outline(self):
        mask = np.zeros((30, 30), dtype=bool)
        mask[10:20, 10:20] = True
        polygon = points_from_mask(mask)

        np.testing.assert_array_equal(polygon[0], polygon[-1])
        # Vertices come from the ring of pixels just outside the square
        assert polygon[:, 0].min() >= 9 and polygon[:, 0].max() <= 20
        assert polygon[:, 1].min() >= 9 and polygon[:, 1].max() <= 20


class TestEstimators:
    def _squares_image(self):
        image = np.zeros((60, 60))
        image[5:9, 5:9] = 100.0
        image[5:11, 20:26] = 100.0
        image[30:40, 30:40] = 100.0
        return image

    def test_sift_params(self):
        threshold, min_size, max_size = estimate_sift_params(self._squares_image())
        assert 0.0 <= threshold < 100.0
        assert (min_size, max_size) == (1.0, 99.0)

    def test_sift_params_constant_image(self):
        assert estimate_sift_params(np.full((20, 20), 3.0)) == [50.0, 0.0, 100.0]

    def test_tolerance_params(self):
        threshold, target, tolerance = estimate_tolerance_params(self._squares_image())
        assert 0.0 <= threshold < 100.0
        # Two of the three components are no larger than the mean area
        assert target == pytest.approx(200.0 / 3.0)
        assert 0.0 < tolerance <= 100.0

    def test_tolerance_params_constant_image(self):
        assert estimate_tolerance_params(np.full((20, 20), 3.0)) == [50.0, 50.0, 100.0]
