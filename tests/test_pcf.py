"""Tests for the pair correlation function estimators."""

import numpy as np
import pytest

from findspot_ppa.geometry import PixelImage, PointPattern
from findspot_ppa.pcf import default_r, pcf, pcf_inhom, stoyan_bandwidth
from findspot_ppa.simulation import rpoispp_uniform


def _clustered(window, seed: int = 3) -> PointPattern:
    """Thomas-like pattern: tight clusters around random parents."""
    rng = np.random.default_rng(seed)
    parents = rng.uniform(5, 35, size=(12, 2))
    children = np.vstack([p + rng.normal(0, 0.5, size=(25, 2)) for p in parents])
    pattern, _ = PointPattern(children, window).restrict()
    return pattern


# ---------------------------------------------------------------------------
# Distances and bandwidth
# ---------------------------------------------------------------------------

class TestDefaults:

    def test_default_r(self, window):
        r = default_r(window, n_points=64)
        assert r.size == 64
        assert r[0] > 0
        assert r[-1] == pytest.approx(10.0)

    def test_explicit_rmax(self, window):
        assert default_r(window, n_points=10, rmax=4.0)[-1] == pytest.approx(4.0)

    def test_invalid_rmax(self, window):
        with pytest.raises(ValueError):
            default_r(window, rmax=0.0)

    def test_stoyan_bandwidth(self, lattice):
        assert stoyan_bandwidth(lattice) == pytest.approx(0.15)


# ---------------------------------------------------------------------------
# Homogeneous PCF
# ---------------------------------------------------------------------------

class TestPcf:

    def test_csr_is_close_to_one(self, window):
        pattern = rpoispp_uniform(window, 0.5, np.random.default_rng(11))
        r = np.linspace(2.0, 10.0, 40)
        g = pcf(pattern, r)
        assert np.mean(g) == pytest.approx(1.0, abs=0.1)

    def test_clustered_pattern_exceeds_one_at_short_range(self, window):
        g = pcf(_clustered(window), np.array([1.0]))
        assert g[0] > 2.0

    def test_needs_two_points(self, window):
        with pytest.raises(ValueError):
            pcf(PointPattern(np.array([[1.0, 1.0]]), window))

    def test_no_close_pairs_gives_zero(self, window):
        pattern = PointPattern(np.array([[1.0, 1.0], [38.0, 38.0]]), window)
        assert np.allclose(pcf(pattern, np.array([1.0, 2.0])), 0.0)


# ---------------------------------------------------------------------------
# Inhomogeneous PCF
# ---------------------------------------------------------------------------

class TestPcfInhom:

    def test_constant_intensity_matches_homogeneous(self, window):
        pattern = rpoispp_uniform(window, 0.3, np.random.default_rng(5))
        n = pattern.n
        lam = PixelImage(np.full(window.grid.shape, pattern.intensity()), window)
        r = default_r(window, n_points=32)
        expected = pcf(pattern, r) * (n - 1) / n
        assert np.allclose(pcf_inhom(pattern, lam, r), expected)

    def test_zero_intensity_at_data_point_raises(self, window, lattice):
        lam = PixelImage(np.zeros(window.grid.shape), window)
        with pytest.raises(ValueError):
            pcf_inhom(lattice, lam)
