"""Shared fixtures: synthetic grids, windows, surfaces and patterns."""

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from findspot_ppa.covariates import CovariateSet, slope_aspect
from findspot_ppa.geometry import PixelGrid, PixelImage, PointPattern, Window
from findspot_ppa.loader import Surfaces
from findspot_ppa.simulation import rpoispp_image


SIZE = 40


@pytest.fixture
def grid():
    """SIZE x SIZE grid of unit cells with origin (0, 0) at the lower left."""
    return PixelGrid((SIZE, SIZE), from_origin(0, SIZE, 1, 1))


@pytest.fixture
def window(grid):
    return Window.from_mask(np.ones(grid.shape, dtype=bool), grid)


@pytest.fixture
def half_window(grid):
    """Western half of the grid, as a polygon."""
    return Window(box(0, 0, SIZE / 2, SIZE), grid)


@pytest.fixture
def x_image(window):
    x, _ = window.grid.centres()
    return PixelImage(x, window, name="x")


@pytest.fixture
def lattice(window):
    """One point at every pixel centre."""
    x, y = window.grid.centres()
    return PointPattern(np.column_stack([x.ravel(), y.ravel()]), window)


@pytest.fixture
def x_covariates(x_image):
    return CovariateSet({"x": x_image})


@pytest.fixture
def gradient_pattern(x_covariates):
    """Inhomogeneous Poisson pattern with log-intensity log(0.1) + 2 * x (x in [0, 1])."""
    xn = x_covariates["x"]
    lam = xn.with_data(0.1 * np.exp(2 * xn.data), name="lambda")
    return rpoispp_image(lam, np.random.default_rng(1))


@pytest.fixture
def surfaces(window):
    x, y = window.grid.centres()
    elevation = PixelImage(0.02 * x ** 2 + 0.5 * y, window, name="elevation")
    vegetation = PixelImage(np.sin(x / 6) * np.cos(y / 9), window, name="vegetation")
    slope, aspect = slope_aspect(elevation)

    # Findspots concentrated at low elevation
    z = elevation.normalised()
    lam = z.with_data(0.4 * np.exp(-2 * z.data), name="lambda")
    pattern = rpoispp_image(lam, np.random.default_rng(7))

    return Surfaces(
        elevation=elevation,
        slope=slope,
        aspect=aspect,
        pattern=pattern,
        vegetation=vegetation,
    )
