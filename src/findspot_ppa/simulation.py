"""Poisson point process simulation inside a study-area window."""

from typing import Optional

import numpy as np

from .geometry import PixelImage, PointPattern, Window


def _uniform_in_bounds(window: Window, count: int, rng: np.random.Generator) -> np.ndarray:
    xmin, ymin, xmax, ymax = window.bounds
    return np.column_stack([
        rng.uniform(xmin, xmax, count),
        rng.uniform(ymin, ymax, count),
    ])


def _bounds_area(window: Window) -> float:
    xmin, ymin, xmax, ymax = window.bounds
    return (xmax - xmin) * (ymax - ymin)


def rpoispp_uniform(
    window: Window,
    intensity: float,
    rng: Optional[np.random.Generator] = None
) -> PointPattern:
    """
    Homogeneous Poisson process (CSR) in a window.

    A Poisson number of uniform points is drawn over the window's bounding
    box and those outside the window are rejected.
    """
    if intensity < 0:
        raise ValueError("intensity must be non-negative")
    rng = rng if rng is not None else np.random.default_rng()

    count = rng.poisson(intensity * _bounds_area(window))
    coords = _uniform_in_bounds(window, count, rng)
    inside = window.contains(coords[:, 0], coords[:, 1])
    return PointPattern(coords[inside], window)


def rpoispp_image(
    intensity: PixelImage,
    rng: Optional[np.random.Generator] = None
) -> PointPattern:
    """
    Inhomogeneous Poisson process with a pixel-image intensity.

    Lewis-Shedler thinning: simulate CSR at the image maximum and retain
    each point with probability λ(u) / λ_max.
    """
    rng = rng if rng is not None else np.random.default_rng()
    window = intensity.window

    lam_max = np.nanmax(intensity.values)
    if not np.isfinite(lam_max) or lam_max < 0:
        raise ValueError("Intensity image must have a finite non-negative maximum")

    candidates = rpoispp_uniform(window, lam_max, rng)
    if candidates.n == 0 or lam_max == 0:
        return PointPattern(np.empty((0, 2)), window)

    lam = np.nan_to_num(intensity.lookup(candidates.x, candidates.y), nan=0.0)
    keep = rng.uniform(0, 1, candidates.n) < lam / lam_max
    return PointPattern(candidates.coords[keep], window)
