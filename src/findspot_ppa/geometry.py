"""
Raster geometry, study-area windows and point patterns.

Everything in the pipeline lives on a single pixel grid: covariate surfaces
are `PixelImage` objects, the study area is a `Window` (a polygon together
with its rasterised mask), and the findspots are a `PointPattern` confined to
that window.

Window membership is decided by the pixel mask: a location belongs to the
window when the centre of the pixel it falls in lies inside the study-area
polygon. Areas are therefore pixel areas, which keeps window area, quadrature
weights and edge corrections consistent with one another.
"""

from typing import Optional, Tuple

import numpy as np

from scipy.interpolate import RegularGridInterpolator
from scipy.signal import fftconvolve
from scipy.spatial import KDTree

from shapely.geometry.base import BaseGeometry

from rasterio import Affine
from rasterio.features import rasterize


# =============================================================================
# PIXEL GRID
# =============================================================================


class PixelGrid:
    """
    Geometry of a north-up raster: shape plus affine transform.

    Attributes:
        shape (Tuple[int, int]): Number of rows and columns.
        transform (Affine): Affine transform mapping (col, row) to (x, y).
        cell_width (float): Pixel width in map units.
        cell_height (float): Pixel height in map units (positive).
    """

    def __init__(self, shape: Tuple[int, int], transform: Affine):
        if len(shape) != 2 or shape[0] < 1 or shape[1] < 1:
            raise ValueError(f"Invalid grid shape: {shape}")
        if transform.b != 0 or transform.d != 0:
            raise ValueError("Rotated rasters are not supported")
        if transform.a <= 0 or transform.e == 0:
            raise ValueError(f"Invalid pixel size in transform: {transform}")

        self.shape = (int(shape[0]), int(shape[1]))
        self.transform = transform
        self.cell_width = float(abs(transform.a))
        self.cell_height = float(abs(transform.e))

    def __eq__(self, other) -> bool:
        if not isinstance(other, PixelGrid):
            return NotImplemented
        return self.shape == other.shape and self.transform.almost_equals(other.transform)

    def __repr__(self) -> str:
        return f"PixelGrid(shape={self.shape}, cell={self.cell_width:g}x{self.cell_height:g})"

    @property
    def cell_area(self) -> float:
        return self.cell_width * self.cell_height

    @property
    def cell_size(self) -> float:
        """Mean pixel side length."""
        return (self.cell_width + self.cell_height) / 2

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Grid extent as (xmin, ymin, xmax, ymax)."""
        nrow, ncol = self.shape
        t = self.transform
        x0, y0 = t.c, t.f
        x1, y1 = t.c + ncol * t.a, t.f + nrow * t.e
        return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)

    def centres(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Pixel centre coordinates.

        Returns:
            Tuple[np.ndarray, np.ndarray]: Arrays of x and y, each of the
            grid's shape.
        """
        nrow, ncol = self.shape
        cols, rows = np.meshgrid(np.arange(ncol) + 0.5, np.arange(nrow) + 0.5)
        t = self.transform
        return t.c + cols * t.a, t.f + rows * t.e

    def index(
        self, x: np.ndarray, y: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Map coordinates to pixel indices.

        Args:
            x: X coordinates.
            y: Y coordinates.

        Returns:
            Tuple of (rows, cols, valid). Rows and cols are clipped into the
            grid; `valid` flags coordinates that actually fall on it.
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        t = self.transform
        cols = np.floor((x - t.c) / t.a).astype(int)
        rows = np.floor((y - t.f) / t.e).astype(int)
        nrow, ncol = self.shape
        valid = (rows >= 0) & (rows < nrow) & (cols >= 0) & (cols < ncol)
        return np.clip(rows, 0, nrow - 1), np.clip(cols, 0, ncol - 1), valid


# =============================================================================
# WINDOW
# =============================================================================


class Window:
    """
    Study-area window: a polygon and its rasterised mask on a pixel grid.

    Attributes:
        geometry (BaseGeometry): Study-area polygon (may be a MultiPolygon).
        grid (PixelGrid): Grid the mask is defined on.
        mask (np.ndarray): Boolean mask, True for pixels inside the window.
    """

    def __init__(
        self,
        geometry: Optional[BaseGeometry],
        grid: PixelGrid,
        mask: Optional[np.ndarray] = None
    ):
        self.grid = grid
        self.geometry = geometry

        if mask is None:
            if geometry is None:
                raise ValueError("Window needs a geometry or a mask")
            mask = rasterize(
                [(geometry, 1)],
                out_shape=grid.shape,
                transform=grid.transform,
                fill=0,
                dtype='uint8'
            ).astype(bool)
        else:
            mask = np.asarray(mask, dtype=bool)
            if mask.shape != grid.shape:
                raise ValueError(
                    f"Mask shape {mask.shape} does not match grid shape {grid.shape}"
                )

        if not np.any(mask):
            raise ValueError("Study area does not cover any pixel of the grid")

        self.mask = mask
        self._setcov: Optional[RegularGridInterpolator] = None

    @classmethod
    def from_mask(cls, mask: np.ndarray, grid: PixelGrid) -> "Window":
        return cls(None, grid, mask=mask)

    def __repr__(self) -> str:
        return f"Window(pixels={self.n_pixels}, area={self.area:g})"

    @property
    def n_pixels(self) -> int:
        return int(self.mask.sum())

    @property
    def area(self) -> float:
        return self.n_pixels * self.grid.cell_area

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Extent of the window's pixels as (xmin, ymin, xmax, ymax)."""
        rows, cols = np.nonzero(self.mask)
        t = self.grid.transform
        xs = t.c + np.array([cols.min(), cols.max() + 1]) * t.a
        ys = t.f + np.array([rows.min(), rows.max() + 1]) * t.e
        return float(xs.min()), float(ys.min()), float(xs.max()), float(ys.max())

    def shortest_side(self) -> float:
        xmin, ymin, xmax, ymax = self.bounds
        return min(xmax - xmin, ymax - ymin)

    def contains(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        rows, cols, valid = self.grid.index(x, y)
        return valid & self.mask[rows, cols]

    def set_covariance(self, dx: np.ndarray, dy: np.ndarray) -> np.ndarray:
        """
        Area of the intersection of the window with its translate by (dx, dy).

        The full set covariance is computed once as the FFT autocorrelation
        of the mask and then linearly interpolated at the requested shifts.

        Args:
            dx: Shifts along x in map units.
            dy: Shifts along y in map units.

        Returns:
            np.ndarray: |W ∩ (W + v)| for every shift v = (dx, dy).
        """
        if self._setcov is None:
            m = self.mask.astype(float)
            cov = fftconvolve(m, m[::-1, ::-1], mode='full')
            cov = np.clip(cov, 0, None) * self.grid.cell_area
            nrow, ncol = self.mask.shape
            row_shifts = np.arange(-(nrow - 1), nrow, dtype=float)
            col_shifts = np.arange(-(ncol - 1), ncol, dtype=float)
            self._setcov = RegularGridInterpolator(
                (row_shifts, col_shifts), cov,
                bounds_error=False, fill_value=0.0
            )

        t = self.grid.transform
        drow = np.asarray(dy, dtype=float) / t.e
        dcol = np.asarray(dx, dtype=float) / t.a
        pts = np.stack([np.ravel(drow), np.ravel(dcol)], axis=-1)
        return self._setcov(pts).reshape(np.shape(drow))


# =============================================================================
# PIXEL IMAGE
# =============================================================================


class PixelImage:
    """
    A raster surface on a pixel grid, viewed through a study-area window.

    The full-grid array is kept in `data` (derivatives such as slope need the
    pixels just outside the window); `values` is the same array with NaN
    outside the window.

    Attributes:
        data (np.ndarray): Float array covering the whole grid.
        window (Window): Study-area window.
        name (str): Surface name, used as the covariate name in models.
        original (Optional[PixelImage]): Un-normalised source surface, set by
            `normalised()`.
    """

    def __init__(
        self,
        data: np.ndarray,
        window: Window,
        name: str = "image",
        original: Optional["PixelImage"] = None
    ):
        data = np.asarray(data, dtype=float)
        if data.shape != window.grid.shape:
            raise ValueError(
                f"Image '{name}' shape {data.shape} does not match grid shape "
                f"{window.grid.shape}"
            )
        self.data = data
        self.window = window
        self.name = name
        self.original = original

    def __repr__(self) -> str:
        return f"PixelImage(name={self.name!r}, shape={self.data.shape})"

    @property
    def grid(self) -> PixelGrid:
        return self.window.grid

    @property
    def values(self) -> np.ndarray:
        return np.where(self.window.mask, self.data, np.nan)

    def values_in_window(self) -> np.ndarray:
        """Finite pixel values inside the window, as a flat array."""
        v = self.data[self.window.mask]
        return v[np.isfinite(v)]

    def min(self) -> float:
        return float(np.nanmin(self.values))

    def max(self) -> float:
        return float(np.nanmax(self.values))

    def mean(self) -> float:
        return float(np.nanmean(self.values))

    def integral(self) -> float:
        return float(np.nansum(self.values) * self.grid.cell_area)

    def lookup(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Value of the pixel containing each location (NaN off the window)."""
        rows, cols, valid = self.grid.index(x, y)
        out = self.values[rows, cols]
        out[~valid] = np.nan
        return out

    def with_data(self, data: np.ndarray, name: Optional[str] = None) -> "PixelImage":
        """New image on the same window."""
        return PixelImage(data, self.window, name=name or self.name)

    def normalised(self) -> "PixelImage":
        """
        Min-max rescale to [0, 1] over the window, keeping the original.

        Raises:
            ValueError: If the image has no finite values or is constant
                inside the window.
        """
        v = self.values_in_window()
        if v.size == 0:
            raise ValueError(f"Image '{self.name}' has no finite values in the window")
        lo, hi = float(v.min()), float(v.max())
        if hi - lo <= 0:
            raise ValueError(f"Image '{self.name}' is constant in the window; cannot normalise")
        scaled = (self.data - lo) / (hi - lo)
        return PixelImage(scaled, self.window, name=self.name, original=self)


# =============================================================================
# POINT PATTERN
# =============================================================================


class PointPattern:
    """
    Planar point pattern observed in a window.

    Attributes:
        coords (np.ndarray): (n, 2) array of x, y coordinates.
        window (Window): Observation window.
    """

    def __init__(self, coords: np.ndarray, window: Window):
        coords = np.asarray(coords, dtype=float).reshape(-1, 2)
        self.coords = coords
        self.window = window

    def __len__(self) -> int:
        return self.coords.shape[0]

    def __repr__(self) -> str:
        return f"PointPattern(n={self.n}, area={self.window.area:g})"

    @property
    def n(self) -> int:
        return len(self)

    @property
    def x(self) -> np.ndarray:
        return self.coords[:, 0]

    @property
    def y(self) -> np.ndarray:
        return self.coords[:, 1]

    def intensity(self) -> float:
        """Homogeneous intensity estimate n / |W|."""
        return self.n / self.window.area

    def restrict(self) -> Tuple["PointPattern", int]:
        """
        Drop points lying outside the window.

        Returns:
            Tuple of the restricted pattern and the number of dropped points.
        """
        inside = self.window.contains(self.x, self.y)
        return PointPattern(self.coords[inside], self.window), int(np.sum(~inside))

    def close_pairs(
        self, rmax: float
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Unordered pairs of distinct points no further apart than `rmax`.

        Returns:
            Tuple of (i, j, d, dx, dy): pair indices, distances, and the
            displacement x_j - x_i.
        """
        if self.n < 2:
            empty = np.array([], dtype=float)
            return np.array([], dtype=int), np.array([], dtype=int), empty, empty, empty

        tree = KDTree(self.coords)
        pairs = tree.query_pairs(rmax, output_type='ndarray')
        if pairs.size == 0:
            empty = np.array([], dtype=float)
            return np.array([], dtype=int), np.array([], dtype=int), empty, empty, empty

        i, j = pairs[:, 0], pairs[:, 1]
        delta = self.coords[j] - self.coords[i]
        d = np.hypot(delta[:, 0], delta[:, 1])
        return i, j, d, delta[:, 0], delta[:, 1]
