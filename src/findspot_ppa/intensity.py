"""
Non-parametric intensity estimation.

`rhohat` estimates the intensity of findspots as a function of a covariate
(the ratio kernel estimator), the exploratory counterpart of the fitted
log-linear models. `kernel_intensity` gives the kernel-smoothed intensity
surface.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from scipy import ndimage
from scipy.stats import norm

from .geometry import PixelImage, PointPattern


# Number of bins used to discretise the covariate distribution over the window
_DENOMINATOR_BINS = 1024


@dataclass
class RhoHat:
    """
    Intensity as a function of a covariate.

    Attributes:
        covariate: Covariate name.
        z: Covariate values at which rho is evaluated.
        rho: Estimated intensity at each z.
        lo, hi: Pointwise confidence band.
        average_intensity: Reference intensity n / |W| (constant rho under CSR).
        bandwidth: Kernel bandwidth on the covariate scale.
        confidence: Confidence level of the band.
    """
    covariate: str
    z: np.ndarray
    rho: np.ndarray
    lo: np.ndarray
    hi: np.ndarray
    average_intensity: float
    bandwidth: float
    confidence: float

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'z': self.z,
            'rho': self.rho,
            'lo': self.lo,
            'hi': self.hi,
            'average_intensity': self.average_intensity,
        })

    def peak(self) -> float:
        """Covariate value with the highest estimated intensity."""
        return float(self.z[np.nanargmax(self.rho)])


def bandwidth_nrd0(values: np.ndarray) -> float:
    """
    Silverman's rule of thumb (R's ``bw.nrd0``).

    0.9 * min(sd, IQR / 1.34) * n ** -0.2, falling back to sd, then |x|, then
    1 when the spread is zero.
    """
    values = np.asarray(values, dtype=float)
    if values.size < 2:
        raise ValueError("Need at least 2 values to select a bandwidth")
    sd = np.std(values, ddof=1)
    q75, q25 = np.percentile(values, [75, 25])
    lo = min(sd, (q75 - q25) / 1.34)
    if lo <= 0:
        lo = sd or abs(values[0]) or 1.0
    return float(0.9 * lo * values.size ** -0.2)


def _gauss(u: np.ndarray, h: float) -> np.ndarray:
    return np.exp(-0.5 * (u / h) ** 2) / (h * np.sqrt(2 * np.pi))


def _smooth(z: np.ndarray, centres: np.ndarray, weights: np.ndarray, h: float,
            reflect: Optional[tuple], power: int = 1) -> np.ndarray:
    """Weighted kernel sum at z, optionally reflected at the range ends."""
    k = _gauss(z[:, None] - centres[None, :], h)
    if reflect is not None:
        a, b = reflect
        k = k + _gauss(z[:, None] - (2 * a - centres[None, :]), h)
        k = k + _gauss(z[:, None] - (2 * b - centres[None, :]), h)
    return (k ** power) @ weights


def rhohat(
    pattern: PointPattern,
    covariate: PixelImage,
    bandwidth: Optional[float] = None,
    n_points: int = 128,
    confidence: float = 0.95,
    reflect: bool = True
) -> RhoHat:
    """
    Ratio kernel estimate of intensity as a function of a covariate.

    Formula:
        ρ̂(z) = Σᵢ k_h(z − Z(xᵢ)) / ∫_W k_h(z − Z(u)) du

    The denominator integral runs over the window pixels; the covariate
    distribution is binned first so the cost does not grow with raster size.
    The pointwise band uses the Poisson variance of the numerator,
    sqrt(Σᵢ k_h²) / denominator.

    Args:
        pattern: Findspot pattern.
        covariate: Covariate surface on the pattern's grid.
        bandwidth: Kernel bandwidth on the covariate scale. Defaults to
            Silverman's rule on the covariate values at the data points.
        n_points: Number of z values spanning the covariate range.
        confidence: Confidence level of the pointwise band.
        reflect: Apply reflection edge correction at the covariate range ends.

    Returns:
        RhoHat: The estimated curve.

    Raises:
        ValueError: If fewer than two findspots have a covariate value, or
            the covariate is constant over the window.
    """
    if not 0 < confidence < 1:
        raise ValueError("confidence must lie in (0, 1)")
    if covariate.grid != pattern.window.grid:
        raise ValueError(f"Covariate '{covariate.name}' is not on the pattern's grid")

    z_data = covariate.lookup(pattern.x, pattern.y)
    n_missing = int(np.sum(~np.isfinite(z_data)))
    if n_missing:
        print(f"[WARNING] {n_missing} findspot(s) have no '{covariate.name}' value and are ignored")
    z_data = z_data[np.isfinite(z_data)]
    if z_data.size < 2:
        raise ValueError(f"Need at least 2 findspots with a '{covariate.name}' value")

    z_pixels = covariate.values_in_window()
    a, b = float(z_pixels.min()), float(z_pixels.max())
    if b <= a:
        raise ValueError(f"Covariate '{covariate.name}' is constant over the window")

    h = bandwidth if bandwidth is not None else bandwidth_nrd0(z_data)
    if h <= 0:
        raise ValueError("bandwidth must be positive")

    z = np.linspace(a, b, n_points)
    edges = (a, b) if reflect else None

    counts, bin_edges = np.histogram(z_pixels, bins=_DENOMINATOR_BINS, range=(a, b))
    centres = 0.5 * (bin_edges[:-1] + bin_edges[1:])
    area_weights = counts * covariate.grid.cell_area

    numerator = _smooth(z, z_data, np.ones_like(z_data), h, edges)
    numerator_sq = _smooth(z, z_data, np.ones_like(z_data), h, edges, power=2)
    denominator = _smooth(z, centres, area_weights, h, edges)

    with np.errstate(divide='ignore', invalid='ignore'):
        rho = numerator / denominator
        sd = np.sqrt(numerator_sq) / denominator

    q = norm.ppf(1 - (1 - confidence) / 2)

    return RhoHat(
        covariate=covariate.name,
        z=z,
        rho=rho,
        lo=np.clip(rho - q * sd, 0, None),
        hi=rho + q * sd,
        average_intensity=pattern.intensity(),
        bandwidth=float(h),
        confidence=confidence,
    )


def kernel_intensity(pattern: PointPattern, sigma: Optional[float] = None) -> PixelImage:
    """
    Gaussian kernel-smoothed intensity surface with uniform edge correction.

    The smoothed count image is divided by the smoothed window mask (Diggle's
    correction) so that intensity is not underestimated near the boundary.

    Args:
        pattern: Findspot pattern.
        sigma: Kernel standard deviation in map units. Defaults to one eighth
            of the shortest side of the window's bounding box.

    Returns:
        PixelImage: Intensity (points per unit area), NaN outside the window.
    """
    window = pattern.window
    grid = window.grid
    if sigma is None:
        sigma = window.shortest_side() / 8
    if sigma <= 0:
        raise ValueError("sigma must be positive")

    counts = np.zeros(grid.shape)
    rows, cols, valid = grid.index(pattern.x, pattern.y)
    np.add.at(counts, (rows[valid], cols[valid]), 1.0)

    sigma_px = (sigma / grid.cell_height, sigma / grid.cell_width)
    mask = window.mask.astype(float)
    smoothed = ndimage.gaussian_filter(counts * mask, sigma_px, mode='constant')
    edge = ndimage.gaussian_filter(mask, sigma_px, mode='constant')

    with np.errstate(divide='ignore', invalid='ignore'):
        lam = smoothed / edge / grid.cell_area
    lam = np.where(window.mask & (edge > 0), lam, np.nan)
    return PixelImage(lam, window, name="kernel_intensity")
