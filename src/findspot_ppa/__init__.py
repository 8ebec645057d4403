"""
findspot-ppa - Point-process analysis of archaeological findspots.

This package tests whether the spatial pattern of recovered artifacts follows
terrain and vegetation covariates (elevation, erosion susceptibility,
vegetation index), as expected under survey and detectability bias.

Main Classes:
    RecoveryBiasAnalyzer: Runs the full covariate / exploration / modelling
        pipeline and builds the report
    SurfaceLoader: Loads rasters, the study area and findspots onto one grid

Convenience Functions:
    analyze: Load inputs and run the full analysis with report export

Example:
    >>> from findspot_ppa import analyze
    >>>
    >>> summary_df, report = analyze(
    ...     elevation_path="dem.tif",
    ...     study_area_path="survey_area.geojson",
    ...     findspots_path="finds.csv",
    ...     vegetation_path="ndvi.tif",
    ...     output_path="results.json"
    ... )
"""

from .analyzer import RecoveryBiasAnalyzer, analyze, save_report
from .config import AnalysisSettings
from .covariates import CovariateSet, prepare_covariates, slope_aspect, usle_ls_factor, ndvi
from .envelope import Envelope, envelope, csr_pcf_envelope, inhom_pcf_envelope
from .geometry import PixelGrid, PixelImage, PointPattern, Window
from .intensity import RhoHat, rhohat, kernel_intensity
from .loader import SurfaceLoader, Surfaces
from .pcf import pcf, pcf_inhom
from .ppm import FittedPPM, QuadratureScheme, fit_ppm, anova_lrt, compare_models, formula_variables

__version__ = "0.1.0"
__author__ = "findspot-ppa contributors"
__all__ = [
    "RecoveryBiasAnalyzer",
    "analyze",
    "save_report",
    "AnalysisSettings",
    "CovariateSet",
    "prepare_covariates",
    "slope_aspect",
    "usle_ls_factor",
    "ndvi",
    "Envelope",
    "envelope",
    "csr_pcf_envelope",
    "inhom_pcf_envelope",
    "PixelGrid",
    "PixelImage",
    "PointPattern",
    "Window",
    "RhoHat",
    "rhohat",
    "kernel_intensity",
    "SurfaceLoader",
    "Surfaces",
    "pcf",
    "pcf_inhom",
    "FittedPPM",
    "QuadratureScheme",
    "fit_ppm",
    "anova_lrt",
    "compare_models",
    "formula_variables",
]
