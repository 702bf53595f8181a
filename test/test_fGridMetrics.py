"""
Tests for fGridMetrics module
"""

import pytest
import numpy as np
import rasterio
from tlsforstructure.fGridMetrics import (fGridCover, fCHM, surface_area, rumple_index,
                                          write_raster, plot_chm)


def test_fGridCover_counts_full_cells():
    gx, gy = np.meshgrid(0.05 + 0.1 * np.arange(10), 0.05 + 0.1 * np.arange(10))
    X = np.append(gx.ravel(), 2.05)
    Y = np.append(gy.ravel(), 2.05)
    Z = np.append(np.ones(100), 0)  # the last cell has no height

    cover = fGridCover(X, Y, Z, res=0.1, plot_size=20)
    assert cover == pytest.approx(100 / 40401 * 100)


def test_fGridCover_duplicates_in_a_cell():
    cover = fGridCover([0.01, 0.02, 0.03], [0.01, 0.01, 0.01], [1, 2, 3], res=0.1, plot_size=1,
                       start=(0, 0))
    assert cover == pytest.approx(1 / 121 * 100)


def test_fGridCover_no_points():
    with pytest.warns(UserWarning, match="NULL"):
        assert fGridCover([], [], []) == -1


def test_fCHM_highest_point_per_cell():
    X = [0.1, 0.2, 0.7]
    Y = [0.1, 0.2, 0.1]
    Z = [2.0, 5.0, 3.0]
    chm, transform = fCHM(X, Y, Z, res=0.5)

    assert chm.shape == (1, 2)
    assert np.array_equal(chm, [[5.0, 3.0]])
    assert transform.c == 0
    assert transform.f == 0.5
    assert transform.a == 0.5
    assert transform.e == -0.5


def test_fCHM_empty_cells_are_nan():
    chm, _ = fCHM([0.1, 1.1], [0.1, 1.1], [1.0, 2.0], res=0.5)

    assert chm.shape == (3, 3)
    assert chm[0, 2] == 2.0
    assert chm[2, 0] == 1.0
    assert np.isnan(chm).sum() == 7


def test_fCHM_no_points():
    with pytest.raises(ValueError):
        fCHM([], [], [])


def test_rumple_index_flat():
    assert rumple_index(np.ones((5, 5)), 0.5) == pytest.approx(1)


def test_surface_area_of_a_plane():
    res = 0.5
    chm = np.tile(np.arange(6) * res, (6, 1))
    area = surface_area(chm, res)

    # Inner cells see the full 45 degree slope
    assert np.allclose(area[1:-1, 1:-1], np.sqrt(2) * res * res)
    # Border cells have missing neighbours that add no relief
    assert np.all(area[:, 0] < np.sqrt(2) * res * res)


def test_rumple_index_tilted():
    res = 0.5
    chm = np.tile(np.arange(50) * res, (50, 1))
    rumple = rumple_index(chm, res)

    assert 1 < rumple < np.sqrt(2)
    assert rumple == pytest.approx(np.sqrt(2), rel=0.02)


def test_rumple_index_ignores_empty_cells():
    chm = np.ones((4, 4))
    chm[0, 0] = np.nan
    assert rumple_index(chm, 1) == pytest.approx(1)


def test_rumple_index_gaps_between_flat_patches():
    # Two flat patches of different heights separated by empty cells
    chm = np.full((3, 16), np.nan)
    chm[:, :3] = 0.0
    chm[:, 13:] = 2.0

    assert rumple_index(chm, 0.1) == pytest.approx(1)


def test_rumple_index_single_row():
    rumple = rumple_index(np.array([[1.0, 2.0, 3.0]]), 0.5)
    assert rumple > 1


def test_rumple_index_empty():
    with pytest.warns(UserWarning):
        assert np.isnan(rumple_index(np.full((2, 2), np.nan), 0.5))


def test_write_raster(tmp_path):
    chm, transform = fCHM([0.1, 1.1], [0.1, 1.1], [1.0, 2.0], res=0.5)
    path = tmp_path / "chm.tif"

    write_raster(chm, transform, str(path), crs="EPSG:2154")

    with rasterio.open(path) as src:
        data = src.read(1)
        assert src.transform == transform
        assert src.crs.to_epsg() == 2154
    assert data[0, 2] == 2.0
    assert np.isnan(data[1, 1])


def test_plot_chm(tmp_path):
    chm, transform = fCHM([0.1, 1.1], [0.1, 1.1], [1.0, 2.0], res=0.5)
    path = tmp_path / "chm.png"

    plot_chm(chm, transform, path=str(path), title="CHM")
    assert path.exists()


if __name__ == "__main__":
    pytest.main([__file__])
