"""Tests for grids, windows, images and point patterns."""

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from findspot_ppa.geometry import PixelGrid, PixelImage, PointPattern, Window

SIZE = 40


# ---------------------------------------------------------------------------
# PixelGrid
# ---------------------------------------------------------------------------

class TestPixelGrid:

    def test_centres(self, grid):
        x, y = grid.centres()
        assert x.shape == grid.shape
        assert x[0, 0] == pytest.approx(0.5)
        assert y[0, 0] == pytest.approx(SIZE - 0.5)
        assert y[-1, 0] == pytest.approx(0.5)

    def test_index_flags_points_off_grid(self, grid):
        rows, cols, valid = grid.index(np.array([0.5, -1.0, 10.2]), np.array([SIZE - 0.5, 3.0, 0.1]))
        assert rows[0] == 0 and cols[0] == 0
        assert valid.tolist() == [True, False, True]
        assert rows[2] == SIZE - 1 and cols[2] == 10

    @pytest.mark.filterwarnings("error")
    def test_bounds(self, grid):
        assert grid.bounds == pytest.approx((0, 0, SIZE, SIZE))
        rect = PixelGrid((10, 20), from_origin(100, 50, 2, 5))
        assert rect.bounds == pytest.approx((100, 0, 140, 50))

    def test_equality(self, grid):
        assert grid == PixelGrid((SIZE, SIZE), from_origin(0, SIZE, 1, 1))
        assert grid != PixelGrid((SIZE, SIZE), from_origin(0, SIZE, 2, 2))

    def test_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            PixelGrid((0, 5), from_origin(0, 5, 1, 1))


# ---------------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------------

class TestWindow:

    def test_polygon_mask_uses_pixel_centres(self, half_window):
        assert half_window.n_pixels == SIZE * SIZE // 2
        assert half_window.area == pytest.approx(SIZE * SIZE / 2)
        assert half_window.bounds == pytest.approx((0, 0, SIZE / 2, SIZE))

    def test_contains(self, half_window):
        inside = half_window.contains(np.array([1.0, 30.0, -2.0]), np.array([1.0, 1.0, 1.0]))
        assert inside.tolist() == [True, False, False]

    def test_empty_window_raises(self, grid):
        with pytest.raises(ValueError):
            Window(box(100, 100, 110, 110), grid)

    def test_set_covariance_of_square(self, window):
        assert window.set_covariance(0.0, 0.0) == pytest.approx(SIZE * SIZE, abs=1e-6)
        assert window.set_covariance(10.0, 0.0) == pytest.approx((SIZE - 10) * SIZE, abs=1e-6)
        assert window.set_covariance(3.0, -4.0) == pytest.approx((SIZE - 3) * (SIZE - 4), abs=1e-6)

    def test_set_covariance_vectorised_and_zero_beyond_window(self, window):
        out = window.set_covariance(np.array([0.0, 2 * SIZE]), np.array([0.0, 0.0]))
        assert out.shape == (2,)
        assert out[1] == pytest.approx(0.0)


# ---------------------------------------------------------------------------
# PixelImage
# ---------------------------------------------------------------------------

class TestPixelImage:

    def test_values_masked_outside_window(self, half_window):
        image = PixelImage(np.ones(half_window.grid.shape), half_window)
        assert np.isnan(image.values[0, -1])
        assert image.integral() == pytest.approx(half_window.area)

    def test_lookup(self, x_image):
        vals = x_image.lookup(np.array([3.2, 100.0]), np.array([5.0, 5.0]))
        assert vals[0] == pytest.approx(3.5)
        assert np.isnan(vals[1])

    def test_normalised_keeps_original(self, x_image):
        z = x_image.normalised()
        assert z.min() == pytest.approx(0.0)
        assert z.max() == pytest.approx(1.0)
        assert z.original is x_image

    def test_normalising_constant_image_raises(self, window):
        with pytest.raises(ValueError):
            PixelImage(np.full(window.grid.shape, 3.0), window).normalised()

    def test_shape_mismatch_raises(self, window):
        with pytest.raises(ValueError):
            PixelImage(np.zeros((3, 3)), window)


# ---------------------------------------------------------------------------
# PointPattern
# ---------------------------------------------------------------------------

class TestPointPattern:

    def test_restrict_drops_outside_points(self, half_window):
        pattern = PointPattern(np.array([[1, 1], [5, 30], [30, 5], [-4, 2]]), half_window)
        kept, dropped = pattern.restrict()
        assert kept.n == 2
        assert dropped == 2

    def test_intensity(self, lattice):
        assert lattice.intensity() == pytest.approx(1.0)

    def test_close_pairs(self, window):
        pattern = PointPattern(np.array([[0.5, 0.5], [3.5, 4.5], [20.5, 20.5]]), window)
        i, j, d, dx, dy = pattern.close_pairs(6.0)
        assert d.tolist() == pytest.approx([5.0])
        assert (dx[0], dy[0]) == pytest.approx((3.0, 4.0))

    def test_close_pairs_single_point(self, window):
        i, j, d, dx, dy = PointPattern(np.array([[1.0, 1.0]]), window).close_pairs(5.0)
        assert d.size == 0
