"""
Covariate derivation: terrain derivatives, erosion susceptibility, NDVI.

Erosion susceptibility follows the L and S factors of the Universal Soil Loss
Equation:

    L = (λ / 22.13) ** m
    m = 0.5 (slope >= 5 %), 0.4 (3-5 %), 0.3 (1-3 %), 0.2 (< 1 %)
    S = 10.8 sin θ + 0.03   (slope < 9 %)
    S = 16.8 sin θ - 0.50   (slope >= 9 %)

where λ is the slope length in metres and θ the slope angle (McCool et al.
1987). Model-ready covariates are min-max normalised to [0, 1] over the study
area; the originals are kept for display and reporting.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .geometry import PixelImage


# USLE unit plot length (m)
UNIT_PLOT_LENGTH = 22.13


@dataclass
class LSFactor:
    """USLE slope length (L), steepness (S) and combined (LS) factors."""
    l: PixelImage
    s: PixelImage
    ls: PixelImage


def slope_aspect(elevation: PixelImage) -> Tuple[PixelImage, PixelImage]:
    """
    Slope and aspect from an elevation surface.

    Central differences (`numpy.gradient`) scaled by the cell size. Aspect is
    the downslope bearing in degrees clockwise from north; flat pixels get
    NaN aspect.

    Args:
        elevation: Elevation surface in the grid's map units.

    Returns:
        Tuple[PixelImage, PixelImage]: Slope (degrees) and aspect (degrees).
    """
    grid = elevation.grid
    dz_drow, dz_dcol = np.gradient(elevation.data, grid.cell_height, grid.cell_width)

    # Rows run in the direction of the transform's e term (southwards for a
    # north-up raster), so flip the sign to get the northward derivative.
    dz_dx = dz_dcol
    dz_dy = -dz_drow if grid.transform.e < 0 else dz_drow

    gradient = np.hypot(dz_dx, dz_dy)
    slope = np.degrees(np.arctan(gradient))

    aspect = np.degrees(np.arctan2(-dz_dx, -dz_dy)) % 360.0
    aspect = np.where(gradient > 0, aspect, np.nan)

    return (
        elevation.with_data(slope, name="slope"),
        elevation.with_data(aspect, name="aspect"),
    )


def ndvi(red: PixelImage, nir: PixelImage) -> PixelImage:
    """Normalised difference vegetation index from red and near-infrared bands."""
    if red.grid != nir.grid:
        raise ValueError("Red and NIR bands must share the same grid")
    total = nir.data + red.data
    with np.errstate(divide='ignore', invalid='ignore'):
        index = np.where(total != 0, (nir.data - red.data) / total, np.nan)
    return red.with_data(index, name="vegetation")


def _ls_exponent(slope_percent: np.ndarray) -> np.ndarray:
    m = np.full(slope_percent.shape, 0.5)
    m[slope_percent < 5] = 0.4
    m[slope_percent < 3] = 0.3
    m[slope_percent < 1] = 0.2
    return m


def usle_ls_factor(
    slope: PixelImage,
    slope_length: Optional[float] = None
) -> LSFactor:
    """
    USLE L and S factors from a slope surface in degrees.

    Args:
        slope: Slope in degrees.
        slope_length: Slope length λ in metres. Defaults to the cell size.

    Returns:
        LSFactor: The L, S and LS surfaces (NaN where slope is NaN).

    Raises:
        ValueError: If slope_length is not positive.
    """
    if slope_length is None:
        slope_length = slope.grid.cell_size
    if slope_length <= 0:
        raise ValueError("slope_length must be positive")

    theta = np.radians(slope.data)
    nan = ~np.isfinite(theta)
    theta_safe = np.where(nan, 0.0, theta)
    slope_percent = np.tan(theta_safe) * 100.0

    m = _ls_exponent(slope_percent)
    l_factor = (slope_length / UNIT_PLOT_LENGTH) ** m

    sin_t = np.sin(theta_safe)
    s_factor = np.where(slope_percent < 9, 10.8 * sin_t + 0.03, 16.8 * sin_t - 0.50)

    l_factor = np.where(nan, np.nan, l_factor)
    s_factor = np.where(nan, np.nan, s_factor)

    return LSFactor(
        l=slope.with_data(l_factor, name="usle_l"),
        s=slope.with_data(s_factor, name="usle_s"),
        ls=slope.with_data(l_factor * s_factor, name="erosion"),
    )


# =============================================================================
# COVARIATE SET
# =============================================================================


class CovariateSet:
    """
    Named covariate surfaces sharing one grid.

    Indexing returns the normalised (model) surface; `display(name)` returns
    the original.
    """

    def __init__(self, images: Optional[Dict[str, PixelImage]] = None):
        self._images: Dict[str, PixelImage] = {}
        for name, image in (images or {}).items():
            self.add(name, image)

    def add(self, name: str, image: PixelImage, normalise: bool = True) -> None:
        if self._images:
            first = next(iter(self._images.values()))
            if image.grid != first.grid:
                raise ValueError(f"Covariate '{name}' is not on the same grid as the others")
        if normalise:
            model_image = image.normalised()
            model_image.name = name
        else:
            model_image = PixelImage(image.data, image.window, name=name, original=image.original)
        self._images[name] = model_image

    def __getitem__(self, name: str) -> PixelImage:
        if name not in self._images:
            raise KeyError(f"Unknown covariate '{name}'. Available: {self.names}")
        return self._images[name]

    def __contains__(self, name: str) -> bool:
        return name in self._images

    def __iter__(self) -> Iterator[str]:
        return iter(self._images)

    def __len__(self) -> int:
        return len(self._images)

    @property
    def names(self) -> List[str]:
        return list(self._images)

    def display(self, name: str) -> PixelImage:
        image = self[name]
        return image.original if image.original is not None else image

    def values_at(self, x: np.ndarray, y: np.ndarray) -> Dict[str, np.ndarray]:
        return {name: image.lookup(x, y) for name, image in self._images.items()}

    def pixel_values(self) -> Dict[str, np.ndarray]:
        return {name: image.values for name, image in self._images.items()}

    def ranges(self) -> Dict[str, Tuple[float, float]]:
        """Original (display) range of each covariate inside the window."""
        return {name: (self.display(name).min(), self.display(name).max()) for name in self}


def prepare_covariates(
    elevation: PixelImage,
    vegetation: Optional[PixelImage] = None,
    slope: Optional[PixelImage] = None,
    slope_length: Optional[float] = None
) -> CovariateSet:
    """
    Build the standard covariate set: elevation, erosion and vegetation.

    Args:
        elevation: Elevation surface.
        vegetation: Vegetation index surface (optional).
        slope: Precomputed slope in degrees. Derived from elevation if None.
        slope_length: USLE slope length in metres (default: cell size).

    Returns:
        CovariateSet: Normalised covariates with originals retained.
    """
    if slope is None:
        slope, _ = slope_aspect(elevation)

    covariates = CovariateSet()
    covariates.add("elevation", elevation)
    covariates.add("erosion", usle_ls_factor(slope, slope_length).ls)
    if vegetation is not None:
        covariates.add("vegetation", vegetation)
    return covariates
