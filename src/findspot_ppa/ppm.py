"""
Inhomogeneous Poisson point-process models.

Models have a log-linear intensity λ(u) = exp(β·Z(u)) in the covariates and
are fitted by maximum likelihood using the Berman-Turner device: the
log-likelihood

    ℓ(β) = Σᵢ log λ(xᵢ) − ∫_W λ(u) du

is approximated on a quadrature scheme (data points plus a grid of dummy
points with counting weights), which turns it into a weighted Poisson GLM
with response yⱼ = zⱼ / wⱼ and weights wⱼ. The GLM is fitted with
statsmodels' formula interface, so terms can be written as patsy formulas,
for example ``"~ elevation + I(elevation**2)"``.
"""

import re
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

import statsmodels.api as sm
import statsmodels.formula.api as smf
from patsy import EvalEnvironment, PatsyError
from scipy.stats import chi2

from .covariates import CovariateSet
from .geometry import PixelImage, PointPattern


# Name of the pseudo-response column in the quadrature frame
RESPONSE = "bt_response"


# =============================================================================
# QUADRATURE SCHEME
# =============================================================================


class QuadratureScheme:
    """
    Berman-Turner quadrature scheme with counting weights.

    Pixels are grouped into `stride` x `stride` tiles and each tile that
    touches the window gets one dummy point, at the centre of its first
    window pixel. Every quadrature point in a tile gets weight tile area /
    number of quadrature points in the tile. Only the covariates in
    `variables` are looked up; dummy points where one of them is missing are
    dropped before the weights are computed, a data point where one is
    missing raises.

    Attributes:
        x, y (np.ndarray): Quadrature point coordinates (data first).
        z (np.ndarray): 1 for data points, 0 for dummy points.
        w (np.ndarray): Quadrature weights.
        frame (pd.DataFrame): Covariate values at the quadrature points.
        variables (List[str]): Covariates carried by the scheme (default all).
        n_data (int): Number of data points.
    """

    def __init__(
        self,
        pattern: PointPattern,
        covariates: CovariateSet,
        stride: int = 1,
        variables: Optional[List[str]] = None
    ):
        if stride < 1:
            raise ValueError("stride must be a positive integer")
        if pattern.n == 0:
            raise ValueError("Cannot fit a model to an empty pattern")

        window = pattern.window
        grid = window.grid
        self.pattern = pattern
        self.stride = stride
        if variables is None:
            variables = covariates.names
        unknown = [name for name in variables if name not in covariates]
        if unknown:
            raise ValueError(f"Unknown covariate(s) {unknown}; available: {covariates.names}")
        self.variables = [name for name in covariates.names if name in variables]

        # Dummy points: first window pixel (row-major) of every tile
        tile_shape = (-(-grid.shape[0] // stride), -(-grid.shape[1] // stride))
        wr, wc = np.nonzero(window.mask)
        window_tiles = np.ravel_multi_index((wr // stride, wc // stride), tile_shape)
        _, first = np.unique(window_tiles, return_index=True)
        dummy_rows, dummy_cols = wr[first], wc[first]
        cx, cy = grid.centres()
        dx, dy = cx[dummy_rows, dummy_cols], cy[dummy_rows, dummy_cols]

        data_rows, data_cols, valid = grid.index(pattern.x, pattern.y)
        if not np.all(valid & window.mask[data_rows, data_cols]):
            raise ValueError("All data points must lie inside the window")

        x = np.concatenate([pattern.x, dx])
        y = np.concatenate([pattern.y, dy])
        rows = np.concatenate([data_rows, dummy_rows])
        cols = np.concatenate([data_cols, dummy_cols])
        z = np.concatenate([np.ones(pattern.n), np.zeros(dx.size)])

        values = {name: covariates[name].values[rows, cols] for name in self.variables}
        frame = pd.DataFrame(values, index=np.arange(z.size))

        finite = np.isfinite(frame.to_numpy(dtype=float)).all(axis=1)
        if not np.all(finite[:pattern.n]):
            bad = [name for name in frame.columns if not np.all(np.isfinite(frame[name].to_numpy()[:pattern.n]))]
            raise ValueError(f"Covariate(s) {bad} undefined at one or more data points")
        n_dropped = int(np.sum(~finite))
        if n_dropped:
            print(f"[INFO] Dropping {n_dropped} dummy points with missing covariate values")

        x, y, z, rows, cols = x[finite], y[finite], z[finite], rows[finite], cols[finite]
        frame = frame[finite].reset_index(drop=True)

        # Counting weights per tile
        tile_rows, tile_cols = rows // stride, cols // stride
        tile_id = np.ravel_multi_index((tile_rows, tile_cols), tile_shape)

        tile_area = np.zeros(tile_shape)
        np.add.at(tile_area, (wr // stride, wc // stride), grid.cell_area)
        tile_count = np.bincount(tile_id, minlength=tile_area.size)

        self.x, self.y, self.z = x, y, z
        self.w = tile_area.ravel()[tile_id] / tile_count[tile_id]
        self.frame = frame
        self.n_data = pattern.n

    def __len__(self) -> int:
        return self.z.size

    def __repr__(self) -> str:
        return f"QuadratureScheme(data={self.n_data}, dummy={len(self) - self.n_data})"

    def glm_frame(self) -> pd.DataFrame:
        frame = self.frame.copy()
        frame[RESPONSE] = self.z / self.w
        return frame


# =============================================================================
# FITTED MODEL
# =============================================================================


class FittedPPM:
    """
    A fitted inhomogeneous Poisson model.

    Attributes:
        formula (str): Right-hand side formula, e.g. ``"~ elevation"``.
        result: statsmodels GLM results object.
        quadrature (QuadratureScheme): Scheme the model was fitted on.
        covariates (CovariateSet): Covariates used for prediction.
    """

    def __init__(self, formula: str, result, quadrature: QuadratureScheme,
                 covariates: CovariateSet):
        self.formula = formula
        self.result = result
        self.quadrature = quadrature
        self.covariates = covariates

    def __repr__(self) -> str:
        return f"FittedPPM(formula={self.formula!r}, loglik={self.loglik:.3f})"

    @property
    def pattern(self) -> PointPattern:
        return self.quadrature.pattern

    @property
    def coefficients(self) -> pd.Series:
        return self.result.params

    @property
    def standard_errors(self) -> pd.Series:
        return self.result.bse

    @property
    def terms(self) -> List[str]:
        return list(self.result.params.index)

    @property
    def n_params(self) -> int:
        return len(self.result.params)

    @property
    def loglik(self) -> float:
        """Point-process log-likelihood Σ log λ(xᵢ) − Σ wⱼ λ(uⱼ)."""
        q = self.quadrature
        mu = np.asarray(self.result.fittedvalues)
        data = q.z == 1
        return float(np.sum(np.log(mu[data])) - np.sum(q.w * mu))

    @property
    def aic(self) -> float:
        return -2 * self.loglik + 2 * self.n_params

    def summary(self, confidence: float = 0.95) -> pd.DataFrame:
        """Coefficient table: estimate, SE, confidence interval, z and p."""
        ci = self.result.conf_int(alpha=1 - confidence)
        pct = int(round(confidence * 100))
        return pd.DataFrame({
            'estimate': self.result.params,
            'std_error': self.result.bse,
            f'ci{pct}_lo': ci[0],
            f'ci{pct}_hi': ci[1],
            'z': self.result.tvalues,
            'p_value': self.result.pvalues,
        })

    @property
    def variables(self) -> List[str]:
        """Covariates referenced by the formula."""
        return formula_variables(self.formula, self.covariates)

    def _predict_frame(self, frame: pd.DataFrame, inside: np.ndarray) -> np.ndarray:
        out = np.full(len(frame), np.nan)
        frame = frame[self.variables]
        usable = inside & np.isfinite(frame.to_numpy(dtype=float)).all(axis=1)
        if not np.any(usable):
            return out
        if frame.shape[1] == 0:
            # Intercept-only: patsy cannot size a design from an empty frame
            out[usable] = np.exp(self.result.params.sum())
        else:
            out[usable] = np.asarray(self.result.predict(frame[usable]))
        return out

    def intensity_at(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Fitted intensity at arbitrary locations (NaN off the window)."""
        x, y = np.atleast_1d(x).astype(float), np.atleast_1d(y).astype(float)
        frame = pd.DataFrame(self.covariates.values_at(x, y), index=np.arange(x.size))
        return self._predict_frame(frame, self.pattern.window.contains(x, y))

    def predict(self) -> PixelImage:
        """Fitted intensity surface over the window."""
        window = self.pattern.window
        mask = window.mask
        n = int(mask.sum())
        frame = pd.DataFrame(
            {name: values[mask] for name, values in self.covariates.pixel_values().items()},
            index=np.arange(n)
        )
        lam = np.full(window.grid.shape, np.nan)
        lam[mask] = self._predict_frame(frame, np.ones(n, dtype=bool))
        return PixelImage(lam, window, name="fitted_intensity")


# =============================================================================
# FITTING & COMPARISON
# =============================================================================


def _normalise_formula(formula: str) -> str:
    formula = formula.strip()
    if "~" not in formula:
        formula = "~ " + formula
    lhs, rhs = formula.split("~", 1)
    if lhs.strip():
        raise ValueError(f"Formula must not have a response: '{formula}'")
    rhs = rhs.strip() or "1"
    return f"~ {rhs}"


def formula_variables(formula: str, covariates: CovariateSet) -> List[str]:
    """Covariate names referenced by a formula, in covariate-set order."""
    return [
        name for name in covariates.names
        if re.search(rf"\b{re.escape(name)}\b", formula)
    ]


def fit_ppm(
    pattern: PointPattern,
    covariates: CovariateSet,
    formula: str = "~ 1",
    quadrature: Optional[QuadratureScheme] = None,
    stride: int = 1
) -> FittedPPM:
    """
    Fit an inhomogeneous Poisson model with log-linear intensity.

    Args:
        pattern: Findspot pattern.
        covariates: Covariate set (normalised surfaces).
        formula: Right-hand side patsy formula over covariate names.
        quadrature: Scheme to fit on. Built from the pattern and the
            covariates the formula references if None; pass the same scheme
            to models that will be compared.
        stride: Dummy point spacing in pixels when building the scheme.

    Returns:
        FittedPPM: The fitted model.

    Raises:
        ValueError: If the formula references an unknown covariate or the
            covariates it uses are undefined at a data point.
    """
    formula = _normalise_formula(formula)
    variables = formula_variables(formula, covariates)
    if quadrature is None:
        quadrature = QuadratureScheme(pattern, covariates, stride=stride, variables=variables)
    elif quadrature.pattern is not pattern:
        raise ValueError("Quadrature scheme was built for a different pattern")
    else:
        missing = [name for name in variables if name not in quadrature.variables]
        if missing:
            raise ValueError(f"Quadrature scheme does not carry covariate(s) {missing}")

    # Only covariate columns and numpy are visible to the formula
    env = EvalEnvironment([{"np": np}])
    try:
        model = smf.glm(
            f"{RESPONSE} {formula}",
            data=quadrature.glm_frame(),
            family=sm.families.Poisson(),
            var_weights=quadrature.w,
            eval_env=env,
        )
    except PatsyError as e:
        raise ValueError(
            f"Cannot build model '{formula}' from covariates {covariates.names}: {e}"
        ) from e

    result = model.fit()
    fitted = FittedPPM(formula, result, quadrature, covariates)

    print(f"  → Fitted {formula}: loglik={fitted.loglik:.3f}, AIC={fitted.aic:.3f}")
    return fitted


def anova_lrt(reduced: FittedPPM, full: FittedPPM) -> Dict[str, float]:
    """
    Likelihood-ratio test between nested models.

    Args:
        reduced: The simpler model.
        full: The model whose terms include all of the reduced model's.

    Returns:
        Dict[str, float]: Dictionary containing:
            - 'reduced': Formula of the reduced model
            - 'full': Formula of the full model
            - 'deviance': 2 (ℓ_full − ℓ_reduced)
            - 'df': Difference in number of parameters
            - 'p_value': Upper chi-squared tail probability

    Raises:
        ValueError: If the models are not nested or were fitted on different
            data or quadrature.
    """
    if reduced.pattern is not full.pattern and not np.array_equal(
        reduced.pattern.coords, full.pattern.coords
    ):
        raise ValueError("Models were fitted to different point patterns")
    if len(reduced.quadrature) != len(full.quadrature) or not np.allclose(
        reduced.quadrature.w, full.quadrature.w
    ):
        raise ValueError("Models were fitted on different quadrature schemes")

    missing = set(reduced.terms) - set(full.terms)
    if missing:
        raise ValueError(
            f"Model '{reduced.formula}' is not nested in '{full.formula}' "
            f"(terms not in full model: {sorted(missing)})"
        )
    df = full.n_params - reduced.n_params
    if df <= 0:
        raise ValueError(f"Model '{full.formula}' has no extra terms over '{reduced.formula}'")

    deviance = max(2 * (full.loglik - reduced.loglik), 0.0)
    return {
        'reduced': reduced.formula,
        'full': full.formula,
        'deviance': float(deviance),
        'df': int(df),
        'p_value': float(chi2.sf(deviance, df)),
    }


def compare_models(models: Dict[str, FittedPPM]) -> pd.DataFrame:
    """AIC table of fitted models, best first, with ΔAIC."""
    rows = [
        {
            'model': name,
            'formula': m.formula,
            'n_params': m.n_params,
            'loglik': m.loglik,
            'aic': m.aic,
        }
        for name, m in models.items()
    ]
    table = pd.DataFrame(rows, columns=['model', 'formula', 'n_params', 'loglik', 'aic'])
    table = table.sort_values('aic').reset_index(drop=True)
    table['delta_aic'] = table['aic'] - table['aic'].min()
    return table
