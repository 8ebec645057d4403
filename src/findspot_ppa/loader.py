"""
Loading of study-area polygons, rasters and findspot coordinates.

All surfaces are brought onto the elevation raster's grid. Rasters must
already share that grid; no resampling or reprojection is done here.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from shapely.geometry import MultiPoint, Point, Polygon, MultiPolygon, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

import rasterio

from .covariates import ndvi, slope_aspect
from .geometry import PixelGrid, PixelImage, PointPattern, Window


PathLike = Union[str, Path]


# =============================================================================
# FILE READERS
# =============================================================================


def _read_features(path: Path) -> list:
    with open(path, 'r') as f:
        data = json.load(f)
    if data.get('type') == 'FeatureCollection':
        return data.get('features', [])
    if data.get('type') == 'Feature':
        return [data]
    return [{'type': 'Feature', 'geometry': data, 'properties': {}}]


def load_study_area(path: PathLike) -> BaseGeometry:
    """
    Load the study-area polygon(s) from GeoJSON and union them.

    Args:
        path: Path to a GeoJSON file with Polygon / MultiPolygon features.

    Returns:
        BaseGeometry: Union of all valid polygons.

    Raises:
        ValueError: If the file contains no valid polygon.
    """
    path = Path(path)
    print(f"[INFO] Loading study area from {path}...")

    polygons: List[BaseGeometry] = []
    for feature in _read_features(path):
        geom = feature.get('geometry')
        if geom is None:
            continue
        try:
            poly = shape(geom)
        except Exception as e:
            print(f"[WARNING] Skipping invalid geometry: {e}")
            continue
        if isinstance(poly, (Polygon, MultiPolygon)) and poly.is_valid and not poly.is_empty:
            polygons.append(poly)
        else:
            print(f"[WARNING] Skipping non-polygon or invalid geometry: {poly.geom_type}")

    if not polygons:
        raise ValueError(f"No valid study-area polygon in {path}")

    area = unary_union(polygons)
    print(f"[INFO] Study area: {len(polygons)} polygon(s), area={area.area:.2f}")
    return area


def load_raster(path: PathLike) -> Tuple[np.ndarray, PixelGrid]:
    """
    Read the first band of a raster, nodata set to NaN.

    Returns:
        Tuple of the float array and its grid.
    """
    path = Path(path)
    print(f"[INFO] Loading raster {path.name}...")
    with rasterio.open(path) as src:
        data = src.read(1).astype(np.float64)
        nodata = src.nodata
        grid = PixelGrid(data.shape, src.transform)
        crs = src.crs

    if nodata is not None:
        data[data == nodata] = np.nan

    if crs is not None and not crs.is_projected:
        print(f"[WARNING] {path.name} has a geographic CRS; distances and areas are in degrees")

    print(f"[INFO] Raster loaded: shape={data.shape}, cell={grid.cell_width:g}x{grid.cell_height:g}")
    return data, grid


def load_findspots(path: PathLike) -> np.ndarray:
    """
    Load findspot coordinates from GeoJSON points or a CSV with x/y columns.

    Args:
        path: `.geojson`/`.json` file with Point or MultiPoint features, or a
            `.csv` file with `x` and `y` columns (case-insensitive).

    Returns:
        np.ndarray: (n, 2) coordinate array.

    Raises:
        ValueError: If the CSV lacks x/y columns.
    """
    path = Path(path)
    print(f"[INFO] Loading findspots from {path}...")

    if path.suffix.lower() == '.csv':
        df = pd.read_csv(path)
        columns = {c.lower(): c for c in df.columns}
        if 'x' not in columns or 'y' not in columns:
            raise ValueError(f"CSV {path} must have 'x' and 'y' columns, found {list(df.columns)}")
        xy = df[[columns['x'], columns['y']]]
        n_missing = int(xy.isna().any(axis=1).sum())
        if n_missing:
            print(f"[WARNING] Skipping {n_missing} row(s) with missing coordinates in {path}")
        coords = xy.dropna().to_numpy(dtype=float)
    else:
        points = []
        for feature in _read_features(path):
            geom = feature.get('geometry')
            if geom is None:
                continue
            try:
                pt = shape(geom)
            except Exception as e:
                print(f"[WARNING] Skipping invalid geometry: {e}")
                continue
            if isinstance(pt, Point):
                points.append((pt.x, pt.y))
            elif isinstance(pt, MultiPoint):
                points.extend((p.x, p.y) for p in pt.geoms)
            else:
                print(f"[WARNING] Skipping non-point geometry: {pt.geom_type}")
        coords = np.array(points, dtype=float).reshape(-1, 2)

    print(f"[INFO] Loaded {len(coords)} findspots")
    return coords


# =============================================================================
# SURFACE LOADER
# =============================================================================


@dataclass
class Surfaces:
    """Loaded analysis inputs on one grid."""
    elevation: PixelImage
    slope: PixelImage
    aspect: PixelImage
    pattern: PointPattern
    vegetation: Optional[PixelImage] = None
    n_outside: int = 0

    @property
    def window(self) -> Window:
        return self.pattern.window


class SurfaceLoader:
    """
    Load elevation, vegetation and findspots confined to a study area.

    The vegetation covariate is either a precomputed index raster
    (`vegetation_path`) or derived as NDVI from `red_path` and `nir_path`.

    Attributes:
        elevation_path (Path): Elevation raster.
        study_area_path (Path): Study-area GeoJSON.
        findspots_path (Path): Findspot GeoJSON or CSV.
        vegetation_path (Optional[Path]): Vegetation index raster.
        red_path, nir_path (Optional[Path]): Red and NIR band rasters.
    """

    def __init__(
        self,
        elevation_path: PathLike,
        study_area_path: PathLike,
        findspots_path: PathLike,
        vegetation_path: Optional[PathLike] = None,
        red_path: Optional[PathLike] = None,
        nir_path: Optional[PathLike] = None
    ):
        self.elevation_path = Path(elevation_path)
        self.study_area_path = Path(study_area_path)
        self.findspots_path = Path(findspots_path)
        self.vegetation_path = Path(vegetation_path) if vegetation_path else None
        self.red_path = Path(red_path) if red_path else None
        self.nir_path = Path(nir_path) if nir_path else None

        if (self.red_path is None) != (self.nir_path is None):
            raise ValueError("red_path and nir_path must be given together")
        if self.vegetation_path is not None and self.red_path is not None:
            raise ValueError("Give either vegetation_path or red_path/nir_path, not both")

        for path, name in [
            (self.elevation_path, "elevation"),
            (self.study_area_path, "study area"),
            (self.findspots_path, "findspots"),
            (self.vegetation_path, "vegetation"),
            (self.red_path, "red band"),
            (self.nir_path, "NIR band"),
        ]:
            if path is not None and not path.exists():
                raise FileNotFoundError(f"{name} file not found: {path}")

    def _load_on_grid(self, path: Path, window: Window, name: str) -> PixelImage:
        data, grid = load_raster(path)
        if grid != window.grid:
            raise ValueError(
                f"{name} raster {grid} does not match the elevation grid {window.grid}"
            )
        return PixelImage(data, window, name=name)

    def load(self) -> Surfaces:
        """
        Load all inputs.

        Returns:
            Surfaces: Elevation, slope, aspect, optional vegetation and the
            findspot pattern restricted to the study area.

        Raises:
            ValueError: If rasters are on different grids.
        """
        elevation_data, grid = load_raster(self.elevation_path)
        window = Window(load_study_area(self.study_area_path), grid)
        elevation = PixelImage(elevation_data, window, name="elevation")
        slope, aspect = slope_aspect(elevation)

        vegetation = None
        if self.vegetation_path is not None:
            vegetation = self._load_on_grid(self.vegetation_path, window, "vegetation")
        elif self.red_path is not None:
            red = self._load_on_grid(self.red_path, window, "red")
            nir = self._load_on_grid(self.nir_path, window, "nir")
            vegetation = ndvi(red, nir)

        coords = load_findspots(self.findspots_path)
        pattern, n_outside = PointPattern(coords, window).restrict()
        if n_outside:
            print(f"[WARNING] {n_outside} findspot(s) outside the study area were dropped")

        print(f"[INFO] Study window: {window.n_pixels} pixels, area={window.area:.2f}")
        print(f"[INFO] Findspots in window: {pattern.n}")

        return Surfaces(
            elevation=elevation,
            slope=slope,
            aspect=aspect,
            pattern=pattern,
            vegetation=vegetation,
            n_outside=n_outside,
        )
