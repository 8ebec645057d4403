"""Tests for Monte Carlo envelopes."""

import numpy as np
import pytest

from findspot_ppa.envelope import csr_pcf_envelope, envelope, inhom_pcf_envelope
from findspot_ppa.geometry import PointPattern
from findspot_ppa.pcf import default_r
from findspot_ppa.ppm import fit_ppm
from findspot_ppa.simulation import rpoispp_uniform


R = np.linspace(1.0, 5.0, 5)


def _count_statistic(pattern: PointPattern) -> np.ndarray:
    return np.full(R.size, float(pattern.n))


def _csr(window, lam=0.05):
    return lambda rng: rpoispp_uniform(window, lam, rng)


def _mostly_empty(window, n_usable):
    """Null model whose draws are empty after the first `n_usable`."""
    calls = []

    def simulate(rng):
        calls.append(1)
        lam = 0.05 if len(calls) <= n_usable else 0.0
        return rpoispp_uniform(window, lam, rng)

    return simulate


# ---------------------------------------------------------------------------
# Generic envelope
# ---------------------------------------------------------------------------

class TestEnvelope:

    def test_pointwise_limits_are_extremes(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        env = envelope(observed, _count_statistic, _csr(window), R, nsim=39, seed=1)
        assert env.kind == "pointwise"
        assert env.nsim == 39
        assert env.alpha == pytest.approx(0.05)
        assert np.allclose(env.lo, env.simulations.min(axis=0))
        assert np.allclose(env.hi, env.simulations.max(axis=0))
        assert np.all(env.lo <= env.mean) and np.all(env.mean <= env.hi)

    def test_nrank_narrows_envelope(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        wide = envelope(observed, _count_statistic, _csr(window), R, nsim=39, nrank=1, seed=1)
        narrow = envelope(observed, _count_statistic, _csr(window), R, nsim=39, nrank=2, seed=1)
        assert np.all(narrow.hi <= wide.hi)
        assert np.all(narrow.lo >= wide.lo)
        assert narrow.alpha == pytest.approx(0.1)

    def test_global_envelope_has_constant_width(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        env = envelope(observed, _count_statistic, _csr(window), R, nsim=19,
                       global_envelope=True, seed=1)
        assert env.kind == "global"
        width = env.hi - env.lo
        assert np.allclose(width, width[0])
        assert env.alpha == pytest.approx(0.05)

    def test_outside_and_mad_test(self, window):
        # Far more points than the null model ever produces
        observed = rpoispp_uniform(window, 0.5, np.random.default_rng(0))
        env = envelope(observed, _count_statistic, _csr(window), R, nsim=19, seed=1)
        assert np.array_equal(env.outside(), R)
        assert env.mad_test()["p_value"] == pytest.approx(1 / 20)
        summary = env.summary()
        assert summary["above_envelope"] is True
        assert summary["n_r_outside"] == R.size

    def test_seed_reproducible(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        a = envelope(observed, _count_statistic, _csr(window), R, nsim=9, seed=5)
        b = envelope(observed, _count_statistic, _csr(window), R, nsim=9, seed=5)
        assert np.array_equal(a.simulations, b.simulations)

    def test_nrank_too_large(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        with pytest.raises(ValueError):
            envelope(observed, _count_statistic, _csr(window), R, nsim=9, nrank=6)

    def test_all_simulations_unusable(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        with pytest.raises(ValueError):
            envelope(observed, _count_statistic, _csr(window, lam=0.0), R, nsim=5)

    def test_skipped_simulations_leave_too_few_for_nrank(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        with pytest.raises(ValueError):
            envelope(observed, _count_statistic, _mostly_empty(window, 2), R, nsim=9, nrank=2, seed=1)

    def test_skipped_simulations_keep_ordered_limits(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        env = envelope(observed, _count_statistic, _mostly_empty(window, 3), R, nsim=9, nrank=2, seed=1)
        assert env.nsim == 3
        assert np.all(env.lo <= env.hi)
        assert env.alpha <= 1.0

    def test_global_envelope_after_skipped_simulations(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        env = envelope(observed, _count_statistic, _mostly_empty(window, 2), R, nsim=9, nrank=2,
                       global_envelope=True, seed=1)
        assert env.nsim == 2
        assert np.all(env.lo <= env.hi)

    def test_to_frame(self, window):
        observed = rpoispp_uniform(window, 0.05, np.random.default_rng(0))
        frame = envelope(observed, _count_statistic, _csr(window), R, nsim=5, seed=1).to_frame()
        assert list(frame.columns) == ["r", "observed", "theoretical", "mean", "lo", "hi"]
        assert len(frame) == R.size


# ---------------------------------------------------------------------------
# PCF envelopes
# ---------------------------------------------------------------------------

class TestPcfEnvelopes:

    def test_csr_envelope(self, window):
        pattern = rpoispp_uniform(window, 0.2, np.random.default_rng(2))
        r = default_r(window, n_points=16)
        env = csr_pcf_envelope(pattern, r=r, nsim=9, seed=3)
        assert env.name == "pcf"
        assert env.observed.shape == r.shape
        assert np.allclose(env.theoretical, 1.0)
        assert 0 < env.mad_test()["p_value"] <= 1

    def test_inhom_envelope(self, gradient_pattern, x_covariates):
        model = fit_ppm(gradient_pattern, x_covariates, "~ x")
        r = default_r(gradient_pattern.window, n_points=16)
        env = inhom_pcf_envelope(model, r=r, nsim=5, seed=3)
        assert env.name == "pcf_inhom"
        assert env.simulations.shape == (5, 16)

    def test_inhom_envelope_with_refit(self, gradient_pattern, x_covariates):
        model = fit_ppm(gradient_pattern, x_covariates, "~ x", stride=4)
        r = default_r(gradient_pattern.window, n_points=8)
        env = inhom_pcf_envelope(model, r=r, nsim=3, seed=3, refit=True)
        assert env.simulations.shape == (3, 8)
