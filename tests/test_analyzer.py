"""Tests for the end-to-end analyzer, its report and settings."""

import json

import numpy as np
import pytest
from pydantic import ValidationError

from findspot_ppa.analyzer import RecoveryBiasAnalyzer
from findspot_ppa.config import AnalysisSettings
from findspot_ppa.geometry import PointPattern
from findspot_ppa.loader import Surfaces


def _settings(**overrides) -> AnalysisSettings:
    values = dict(nsim=5, seed=1, dummy_stride=2, pcf_points=32, rhohat_points=32)
    values.update(overrides)
    return AnalysisSettings(**values)


def _with_vegetation_gap(surfaces: Surfaces) -> Surfaces:
    """Copy of the surfaces with vegetation undefined at the first findspot."""
    pattern = surfaces.pattern
    rows, cols, _ = pattern.window.grid.index(pattern.x[:1], pattern.y[:1])
    data = surfaces.vegetation.data.copy()
    data[rows[0], cols[0]] = np.nan
    return Surfaces(
        elevation=surfaces.elevation,
        slope=surfaces.slope,
        aspect=surfaces.aspect,
        pattern=pattern,
        vegetation=surfaces.vegetation.with_data(data),
    )


@pytest.fixture
def analyzer(surfaces):
    return RecoveryBiasAnalyzer(surfaces, settings=_settings())


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("FINDSPOT_NSIM", raising=False)
        settings = AnalysisSettings()
        assert settings.nsim == 39
        assert settings.nrank == 1
        assert settings.global_envelope is False

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FINDSPOT_NSIM", "99")
        monkeypatch.setenv("FINDSPOT_MODEL_FORMULAS", '["~ 1", "~ elevation"]')
        settings = AnalysisSettings()
        assert settings.nsim == 99
        assert settings.model_formulas == ["~ 1", "~ elevation"]

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            AnalysisSettings(nsim=0)
        with pytest.raises(ValidationError):
            AnalysisSettings(confidence=1.5)
        with pytest.raises(ValidationError):
            AnalysisSettings(model_formulas=[])


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

class TestAnalyzer:

    def test_needs_two_findspots(self, surfaces):
        window = surfaces.window
        single = Surfaces(
            elevation=surfaces.elevation,
            slope=surfaces.slope,
            aspect=surfaces.aspect,
            pattern=PointPattern(np.array([[5.0, 5.0]]), window),
        )
        with pytest.raises(ValueError):
            RecoveryBiasAnalyzer(single, settings=_settings())

    def test_covariates_prepared_once(self, analyzer):
        covariates = analyzer.prepare_covariates()
        assert set(covariates.names) == {"elevation", "erosion", "vegetation"}
        assert analyzer.prepare_covariates() is covariates

    def test_default_formulas_include_vegetation(self, analyzer):
        assert analyzer.default_formulas() == [
            "~ 1",
            "~ elevation",
            "~ elevation + erosion",
            "~ elevation + erosion + vegetation",
        ]

    def test_rhohat_reports_original_units(self, analyzer):
        result = analyzer.calculate_rhohat("elevation")
        lo, hi = analyzer.covariates.ranges()["elevation"]
        assert lo <= result["peak_z"] <= hi
        assert result["max_rho"] >= result["min_rho"] >= 0
        assert len(result["curve"]) == 32
        assert "elevation" in analyzer.rhohats

    def test_compare_models_selects_lowest_aic(self, analyzer):
        analyzer.fit_models()
        result = analyzer.compare_models()
        table = result["aic_table"]
        assert result["selected_model"] == table[0]["formula"]
        assert len(result["lrt"]) == len(analyzer.models) - 1
        # Findspots were simulated with intensity decreasing in elevation
        assert analyzer.models["~ elevation"].coefficients["elevation"] < 0

    def test_vegetation_gap_at_findspot_skips_only_vegetation_model(self, surfaces):
        analyzer = RecoveryBiasAnalyzer(_with_vegetation_gap(surfaces), settings=_settings())
        results = analyzer.fit_models()
        assert list(results) == ["~ 1", "~ elevation", "~ elevation + erosion"]
        assert "vegetation" not in analyzer.quadrature.variables

    def test_inhom_envelope_unknown_formula(self, analyzer):
        analyzer.fit_models(["~ 1"])
        with pytest.raises(ValueError):
            analyzer.calculate_inhom_envelope("~ erosion")


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class TestReport:

    def test_full_report_written(self, analyzer, tmp_path):
        output = tmp_path / "report.json"
        summary_df, report = analyzer.generate_report(output_path=output)

        assert output.exists()
        assert output.with_suffix(".csv").exists()
        assert list(summary_df.columns) == ["step", "key_measure", "value"]

        for step in ("rhohat_elevation", "csr_envelope", "models",
                     "model_comparison", "inhom_envelope"):
            assert step in report["computed_steps"]
        assert report["skipped_steps"] == []
        assert report["metadata"]["settings"]["nsim"] == 5

        with open(output) as f:
            saved = json.load(f)
        assert saved["results"]["model_comparison"]["selected_model"] == analyzer.selected_model

    def test_vegetation_gap_keeps_model_steps(self, surfaces):
        analyzer = RecoveryBiasAnalyzer(_with_vegetation_gap(surfaces), settings=_settings())
        _, report = analyzer.generate_report()

        for step in ("rhohat_vegetation", "models", "model_comparison", "inhom_envelope"):
            assert step in report["computed_steps"]
        assert "~ elevation + erosion + vegetation" not in report["results"]["models"]

    def test_failing_step_is_skipped(self, surfaces):
        analyzer = RecoveryBiasAnalyzer(surfaces, settings=_settings(model_formulas=["~ depth"]))
        _, report = analyzer.generate_report()

        skipped = {s["name"] for s in report["skipped_steps"]}
        assert {"models", "model_comparison", "inhom_envelope"} <= skipped
        assert "csr_envelope" in report["computed_steps"]


def test_package_metadata():
    import findspot_ppa
    from findspot_ppa import analyzer

    assert findspot_ppa.__version__ == "0.1.0"
    assert findspot_ppa.__author__ == "findspot-ppa contributors"
    assert "Author: findspot-ppa contributors" in analyzer.__doc__
    assert "formula_variables" in findspot_ppa.__all__
