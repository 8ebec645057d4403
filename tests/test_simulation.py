"""Tests for Poisson process simulation."""

import numpy as np
import pytest

from findspot_ppa.geometry import PixelImage
from findspot_ppa.simulation import rpoispp_image, rpoispp_uniform


class TestUniform:

    def test_count_and_containment(self, half_window):
        pattern = rpoispp_uniform(half_window, 0.5, np.random.default_rng(0))
        # Expected 400 points, sd 20
        assert 320 < pattern.n < 480
        assert np.all(half_window.contains(pattern.x, pattern.y))

    def test_seed_reproducible(self, window):
        a = rpoispp_uniform(window, 0.1, np.random.default_rng(42))
        b = rpoispp_uniform(window, 0.1, np.random.default_rng(42))
        assert np.array_equal(a.coords, b.coords)

    def test_zero_intensity(self, window):
        assert rpoispp_uniform(window, 0.0, np.random.default_rng(0)).n == 0

    def test_negative_intensity_raises(self, window):
        with pytest.raises(ValueError):
            rpoispp_uniform(window, -1.0)


class TestImage:

    def test_points_only_where_intensity_positive(self, window):
        x, _ = window.grid.centres()
        lam = PixelImage(np.where(x > 20, 0.5, 0.0), window)
        pattern = rpoispp_image(lam, np.random.default_rng(3))
        assert pattern.n > 0
        assert np.all(pattern.x >= 20)
        # Expected 400 points, sd 20
        assert 320 < pattern.n < 480

    def test_zero_image_gives_empty_pattern(self, window):
        lam = PixelImage(np.zeros(window.grid.shape), window)
        assert rpoispp_image(lam, np.random.default_rng(0)).n == 0
