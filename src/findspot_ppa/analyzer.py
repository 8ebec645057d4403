"""
RecoveryBiasAnalyzer: point-process analysis of artifact findspots.

This module provides the RecoveryBiasAnalyzer class, which runs the full
analysis of a findspot pattern against terrain and vegetation covariates to
assess whether the recovered pattern is driven by the landscape (and so by
survey and detectability bias) rather than by the underlying distribution.

The analysis is organised in four stages:
    - Covariates: elevation, USLE erosion susceptibility, vegetation index
    - Exploration: rho-hat intensity curves, PCF envelope under CSR
    - Modelling: inhomogeneous Poisson models, likelihood-ratio tests, AIC
    - Diagnostics: inhomogeneous PCF envelope under the selected model

Author: findspot-ppa contributors
Date: October 2026
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from tqdm import tqdm

from .config import AnalysisSettings
from .covariates import CovariateSet, prepare_covariates
from .envelope import Envelope, csr_pcf_envelope, inhom_pcf_envelope
from .intensity import RhoHat, rhohat
from .loader import SurfaceLoader, Surfaces
from .pcf import default_r
from .ppm import (
    FittedPPM, QuadratureScheme, anova_lrt, compare_models, fit_ppm, formula_variables
)


# =============================================================================
# CLASS DEFINITION
# =============================================================================


class RecoveryBiasAnalyzer:
    """
    Runs the findspot point-process analysis on loaded surfaces.

    Results of each stage are cached on the instance (`covariates`,
    `rhohats`, `csr_envelope`, `models`, `inhom_envelope`) so later stages and
    the report reuse them.

    Attributes:
        surfaces (Surfaces): Loaded elevation, slope, vegetation and findspots.
        settings (AnalysisSettings): Analysis parameters.

    Example:
        >>> analyzer = RecoveryBiasAnalyzer.from_files(
        ...     elevation_path="dem.tif",
        ...     study_area_path="survey_area.geojson",
        ...     findspots_path="finds.csv",
        ...     vegetation_path="ndvi.tif"
        ... )
        >>> summary_df, report = analyzer.generate_report(output_path="ppa.json")
    """

    def __init__(self, surfaces: Surfaces, settings: Optional[AnalysisSettings] = None):
        """
        Initialize the analyzer.

        Args:
            surfaces: Loaded analysis inputs.
            settings: Analysis parameters. Defaults to `AnalysisSettings()`,
                which reads FINDSPOT_* environment overrides.

        Raises:
            ValueError: If the pattern has fewer than two findspots.
        """
        if surfaces.pattern.n < 2:
            raise ValueError(
                f"Need at least 2 findspots in the study area, found {surfaces.pattern.n}"
            )

        self.surfaces = surfaces
        self.settings = settings if settings is not None else AnalysisSettings()

        self.covariates: Optional[CovariateSet] = None
        self.quadrature: Optional[QuadratureScheme] = None
        self.rhohats: Dict[str, RhoHat] = {}
        self.csr_envelope: Optional[Envelope] = None
        self.models: Dict[str, FittedPPM] = {}
        self.lrt_results: List[Dict[str, Any]] = []
        self.aic_table: Optional[pd.DataFrame] = None
        self.selected_model: Optional[str] = None
        self.inhom_envelope: Optional[Envelope] = None

        window = surfaces.window
        print("=" * 60)
        print("RecoveryBiasAnalyzer Initialized")
        print("=" * 60)
        print(f"  Grid:        {window.grid}")
        print(f"  Window area: {window.area:.2f}")
        print(f"  Findspots:   {surfaces.pattern.n} ({surfaces.n_outside} outside window)")
        print(f"  Vegetation:  {'provided' if surfaces.vegetation is not None else 'Not provided'}")
        print(f"  Simulations: {self.settings.nsim} (nrank={self.settings.nrank})")
        print("=" * 60)

    @classmethod
    def from_files(
        cls,
        elevation_path: str,
        study_area_path: str,
        findspots_path: str,
        vegetation_path: Optional[str] = None,
        red_path: Optional[str] = None,
        nir_path: Optional[str] = None,
        settings: Optional[AnalysisSettings] = None
    ) -> "RecoveryBiasAnalyzer":
        """Load inputs with `SurfaceLoader` and build an analyzer."""
        loader = SurfaceLoader(
            elevation_path=elevation_path,
            study_area_path=study_area_path,
            findspots_path=findspots_path,
            vegetation_path=vegetation_path,
            red_path=red_path,
            nir_path=nir_path,
        )
        return cls(loader.load(), settings=settings)

    @property
    def pattern(self):
        return self.surfaces.pattern

    def _r(self) -> np.ndarray:
        return default_r(self.pattern.window, self.settings.pcf_points, self.settings.rmax)

    # =========================================================================
    # COVARIATES
    # =========================================================================

    def prepare_covariates(self) -> CovariateSet:
        """
        Build the normalised covariate set (cached).

        Returns:
            CovariateSet: elevation, erosion and (if available) vegetation,
            normalised to [0, 1] with originals retained.
        """
        if self.covariates is not None:
            return self.covariates

        print("\n[METRIC] Preparing covariates...")
        self.covariates = prepare_covariates(
            self.surfaces.elevation,
            vegetation=self.surfaces.vegetation,
            slope=self.surfaces.slope,
            slope_length=self.settings.slope_length,
        )
        for name, (lo, hi) in self.covariates.ranges().items():
            print(f"  → {name:12s} range [{lo:.4f}, {hi:.4f}]")
        return self.covariates

    # =========================================================================
    # EXPLORATORY ANALYSIS
    # =========================================================================

    def calculate_rhohat(self, name: str) -> Dict[str, Any]:
        """
        Intensity of findspots as a function of one covariate.

        Args:
            name: Covariate name.

        Returns:
            Dict[str, Any]: Dictionary containing:
                - 'covariate': Covariate name
                - 'bandwidth': Kernel bandwidth (normalised scale)
                - 'average_intensity': n / |W|
                - 'peak_z': Covariate value (original units) of peak intensity
                - 'max_rho' / 'min_rho': Range of the estimated intensity
                - 'curve': Records of z (normalised and original), rho, lo, hi

        Raises:
            KeyError: If the covariate does not exist.
        """
        print(f"\n[METRIC] Calculating rho-hat for '{name}'...")
        covariates = self.prepare_covariates()
        image = covariates[name]
        result = rhohat(
            self.pattern,
            image,
            n_points=self.settings.rhohat_points,
            confidence=self.settings.confidence,
        )
        self.rhohats[name] = result

        lo, hi = covariates.ranges()[name]
        curve = result.to_frame()
        curve.insert(1, 'z_original', lo + curve['z'] * (hi - lo))

        peak_z = lo + result.peak() * (hi - lo)
        results = {
            'covariate': name,
            'bandwidth': result.bandwidth,
            'average_intensity': result.average_intensity,
            'peak_z': float(peak_z),
            'max_rho': float(np.nanmax(result.rho)),
            'min_rho': float(np.nanmin(result.rho)),
            'curve': curve.to_dict(orient='records'),
        }

        print(f"  → Bandwidth: {result.bandwidth:.4f}")
        print(f"  → Peak intensity at {name} = {peak_z:.4f}")
        print(f"  → Intensity range: [{results['min_rho']:.6g}, {results['max_rho']:.6g}] "
              f"(average {result.average_intensity:.6g})")
        return results

    def calculate_csr_envelope(self) -> Dict[str, Any]:
        """
        Monte Carlo envelope of the pair correlation function under CSR.

        Returns:
            Dict[str, Any]: Envelope summary (kind, alpha, distances outside
            the envelope, MAD test) plus the curve records.
        """
        print("\n[METRIC] Calculating PCF envelope under CSR...")
        s = self.settings
        self.csr_envelope = csr_pcf_envelope(
            self.pattern,
            r=self._r(),
            nsim=s.nsim,
            nrank=s.nrank,
            global_envelope=s.global_envelope,
            seed=s.seed,
        )
        return self._envelope_results(self.csr_envelope)

    def _envelope_results(self, env: Envelope) -> Dict[str, Any]:
        results = env.summary()
        results['curve'] = env.to_frame().to_dict(orient='records')

        if results['n_r_outside']:
            print(f"  → Observed curve leaves the {env.kind} envelope at "
                  f"{results['n_r_outside']} distances "
                  f"[{results['r_outside_min']:.3f}, {results['r_outside_max']:.3f}]")
        else:
            print(f"  → Observed curve within the {env.kind} envelope")
        print(f"  → MAD test: T={results['mad_statistic']:.4f}, p={results['mad_p_value']:.4f}")
        return results

    # =========================================================================
    # MODEL FITTING
    # =========================================================================

    def default_formulas(self) -> List[str]:
        """Model ladder: null, elevation, + erosion, + vegetation."""
        covariates = self.prepare_covariates()
        formulas = ["~ 1", "~ elevation", "~ elevation + erosion"]
        if "vegetation" in covariates:
            formulas.append("~ elevation + erosion + vegetation")
        return formulas

    def fit_models(self, formulas: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Fit inhomogeneous Poisson models on a shared quadrature scheme.

        The scheme carries only the covariates the formulas use, so a gap in
        an unused covariate does not block the fits. Formulas using a
        covariate that is undefined at a findspot are skipped with a warning.

        Args:
            formulas: Right-hand side formulas. Defaults to the settings'
                `model_formulas`, else `default_formulas()`.

        Returns:
            Dict[str, Any]: Per formula, the coefficient table records,
            log-likelihood, AIC and number of parameters.

        Raises:
            ValueError: If no formula can be fitted.
        """
        print("\n[METRIC] Fitting inhomogeneous Poisson models...")
        covariates = self.prepare_covariates()
        formulas = formulas or self.settings.model_formulas or self.default_formulas()

        undefined = [
            name for name in covariates
            if not np.all(np.isfinite(covariates[name].lookup(self.pattern.x, self.pattern.y)))
        ]
        usable = []
        for formula in formulas:
            gaps = [name for name in formula_variables(formula, covariates) if name in undefined]
            if gaps:
                print(f"[WARNING] Skipping model '{formula}': {gaps} undefined at one or more findspots")
            else:
                usable.append(formula)
        if not usable:
            raise ValueError(f"No model can be fitted; covariates {undefined} are undefined at findspots")
        formulas = usable

        variables = sorted({name for f in formulas for name in formula_variables(f, covariates)})
        if self.quadrature is None or sorted(self.quadrature.variables) != variables:
            self.quadrature = QuadratureScheme(
                self.pattern, covariates, stride=self.settings.dummy_stride, variables=variables
            )
            print(f"  Quadrature: {self.quadrature}")

        self.models = {}
        results = {}
        for formula in formulas:
            model = fit_ppm(self.pattern, covariates, formula, quadrature=self.quadrature)
            self.models[model.formula] = model
            results[model.formula] = {
                'loglik': model.loglik,
                'aic': model.aic,
                'n_params': model.n_params,
                'coefficients': model.summary(self.settings.confidence)
                                     .reset_index(names='term')
                                     .to_dict(orient='records'),
            }
        return results

    def compare_models(self) -> Dict[str, Any]:
        """
        Likelihood-ratio tests along the model ladder and AIC ranking.

        Each model is tested against the one before it; pairs that are not
        nested are reported and skipped.

        Returns:
            Dict[str, Any]: Dictionary containing:
                - 'lrt': List of test results (reduced, full, deviance, df, p_value)
                - 'aic_table': AIC records, best first
                - 'selected_model': Formula with the lowest AIC
        """
        print("\n[METRIC] Comparing models...")
        if not self.models:
            self.fit_models()

        fitted = list(self.models.values())
        self.lrt_results = []
        for reduced, full in zip(fitted[:-1], fitted[1:]):
            try:
                test = anova_lrt(reduced, full)
            except ValueError as e:
                print(f"[WARNING] Skipping LRT: {e}")
                continue
            self.lrt_results.append(test)
            print(f"  → {test['reduced']}  vs  {test['full']}: "
                  f"deviance={test['deviance']:.3f}, df={test['df']}, p={test['p_value']:.4g}")

        self.aic_table = compare_models(self.models)
        self.selected_model = str(self.aic_table.loc[0, 'formula'])
        print(f"  → Selected model (lowest AIC): {self.selected_model}")

        return {
            'lrt': self.lrt_results,
            'aic_table': self.aic_table.to_dict(orient='records'),
            'selected_model': self.selected_model,
        }

    def calculate_inhom_envelope(self, formula: Optional[str] = None) -> Dict[str, Any]:
        """
        Envelope of the inhomogeneous PCF under a fitted model.

        Args:
            formula: Model to use. Defaults to the lowest-AIC model.

        Returns:
            Dict[str, Any]: Envelope summary and curve records, plus 'model'.

        Raises:
            ValueError: If the requested model has not been fitted.
        """
        if formula is None:
            if self.selected_model is None:
                self.compare_models()
            formula = self.selected_model
        if formula not in self.models:
            raise ValueError(f"Model '{formula}' has not been fitted. Fitted: {list(self.models)}")

        print(f"\n[METRIC] Calculating inhomogeneous PCF envelope under {formula}...")
        s = self.settings
        self.inhom_envelope = inhom_pcf_envelope(
            self.models[formula],
            r=self._r(),
            nsim=s.nsim,
            nrank=s.nrank,
            global_envelope=s.global_envelope,
            seed=s.seed,
            refit=s.refit_envelope,
        )
        results = self._envelope_results(self.inhom_envelope)
        results['model'] = formula
        return results

    # =========================================================================
    # REPORT
    # =========================================================================

    def generate_report(
        self,
        output_path: Optional[str] = None
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run the full analysis and assemble the report.

        Steps that fail are recorded as skipped with the error message, and
        the remaining steps still run.

        Args:
            output_path: Optional path to save the JSON report. A summary CSV
                is written next to it.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]:
                - DataFrame with one key value per step
                - Dictionary with full results (suitable for JSON export)
        """
        print("\n" + "=" * 60)
        print("GENERATING FINDSPOT POINT-PROCESS REPORT")
        print("=" * 60)

        window = self.pattern.window
        report: Dict[str, Any] = {
            'metadata': {
                'n_findspots': self.pattern.n,
                'n_outside_window': self.surfaces.n_outside,
                'window_area': window.area,
                'grid_shape': list(window.grid.shape),
                'cell_size': window.grid.cell_size,
                'settings': self.settings.model_dump(),
            },
            'results': {},
            'computed_steps': [],
            'skipped_steps': [],
        }
        summary_rows = []

        try:
            covariates = self.prepare_covariates()
            report['metadata']['covariate_ranges'] = {
                name: list(bounds) for name, bounds in covariates.ranges().items()
            }
        except Exception as e:
            print(f"[ERROR] covariates: {e}")
            report['skipped_steps'].append({'name': 'covariates', 'reason': str(e)})
            covariates = None

        steps = []
        if covariates is not None:
            for name in covariates:
                steps.append((f'rhohat_{name}', lambda name=name: self.calculate_rhohat(name),
                              'peak_z'))
        steps.append(('csr_envelope', self.calculate_csr_envelope, 'mad_p_value'))
        if covariates is not None:
            steps.extend([
                ('models', self.fit_models, None),
                ('model_comparison', self.compare_models, None),
                ('inhom_envelope', self.calculate_inhom_envelope, 'mad_p_value'),
            ])
        else:
            for name in ('models', 'model_comparison', 'inhom_envelope'):
                print(f"[SKIP] {name}: requires covariates")
                report['skipped_steps'].append({'name': name, 'reason': "Missing: covariates"})

        print(f"\nRunning {len(steps)} analysis steps...\n")

        for name, method, key in tqdm(steps, desc="Running analysis", unit="step"):
            if name == 'inhom_envelope' and not self.models:
                print(f"[SKIP] {name}: no fitted model")
                report['skipped_steps'].append({'name': name, 'reason': "No fitted model"})
                continue
            try:
                result = method()
            except Exception as e:
                print(f"[ERROR] {name}: {e}")
                report['skipped_steps'].append({'name': name, 'reason': str(e)})
                continue

            report['results'][name] = result
            report['computed_steps'].append(name)

            if key is not None:
                summary_rows.append({'step': name, 'key_measure': key, 'value': result[key]})
            elif name == 'model_comparison':
                best = result['aic_table'][0]
                summary_rows.append({'step': name, 'key_measure': 'best_aic', 'value': best['aic']})
                for test in result['lrt']:
                    summary_rows.append({
                        'step': f"lrt: {test['full']}",
                        'key_measure': 'p_value',
                        'value': test['p_value'],
                    })

        summary_df = pd.DataFrame(summary_rows, columns=['step', 'key_measure', 'value'])

        print("\n" + "=" * 60)
        print("REPORT SUMMARY")
        print("=" * 60)
        print(f"Computed: {len(report['computed_steps'])} steps")
        print(f"Skipped: {len(report['skipped_steps'])} steps")
        if self.selected_model is not None:
            print(f"Selected model: {self.selected_model}")
        print("\nKey Results:")
        print("-" * 40)
        for _, row in summary_df.iterrows():
            print(f"  {row['step']:40s} {row['key_measure']:12s} = {row['value']:.4g}")
        print("=" * 60)

        if output_path is not None:
            save_report(report, summary_df, output_path)

        return summary_df, report


# =============================================================================
# SERIALISATION
# =============================================================================


def _convert_numpy(obj):
    if isinstance(obj, np.ndarray):
        return [_convert_numpy(v) for v in obj.tolist()]
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, (np.floating, float)):
        value = float(obj)
        return value if np.isfinite(value) else None
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, dict):
        return {k: _convert_numpy(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_numpy(i) for i in obj]
    return obj


def save_report(report: Dict[str, Any], summary_df: pd.DataFrame, output_path: str) -> Path:
    """
    Write the report as JSON and the summary table as a sibling CSV.

    Non-finite floats are written as null.

    Returns:
        Path: The JSON path.
    """
    output_path = Path(output_path)
    print(f"\nSaving report to: {output_path}")

    with open(output_path, 'w') as f:
        json.dump(_convert_numpy(report), f, indent=2)
    print("Report saved successfully!")

    csv_path = output_path.with_suffix('.csv')
    summary_df.to_csv(csv_path, index=False)
    print(f"Summary CSV saved to: {csv_path}")
    return output_path


# =============================================================================
# MODULE-LEVEL CONVENIENCE FUNCTION
# =============================================================================


def analyze(
    elevation_path: str,
    study_area_path: str,
    findspots_path: str,
    vegetation_path: Optional[str] = None,
    red_path: Optional[str] = None,
    nir_path: Optional[str] = None,
    output_path: Optional[str] = None,
    settings: Optional[AnalysisSettings] = None
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Convenience function to load inputs and run the full analysis.

    Example:
        >>> from findspot_ppa import analyze
        >>> df, report = analyze(
        ...     elevation_path="dem.tif",
        ...     study_area_path="survey_area.geojson",
        ...     findspots_path="finds.geojson",
        ...     output_path="ppa.json"
        ... )
    """
    analyzer = RecoveryBiasAnalyzer.from_files(
        elevation_path=elevation_path,
        study_area_path=study_area_path,
        findspots_path=findspots_path,
        vegetation_path=vegetation_path,
        red_path=red_path,
        nir_path=nir_path,
        settings=settings,
    )
    return analyzer.generate_report(output_path=output_path)
