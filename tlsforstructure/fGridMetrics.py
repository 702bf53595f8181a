"""
Raster metrics of a normalised TLS plot

Canopy cover from a fine occupancy grid, canopy height model (point-to-raster)
and rumple index of a canopy height model.
"""

import numpy as np
import pandas as pd
import warnings
import rasterio
from rasterio.transform import from_origin


def fGridCover(X, Y, Z, res=0.1, plot_size=20, start=None):
    """
    Cover (%) of a stratum.

    The points are summed per cell of a grid of resolution res starting at
    `start`. Cells with a sum of heights above 0 are full. Cover is the number of
    full cells divided by the number of cells of the plot, (plot_size / res + 1)².

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of the stratum points (Z normalised)
    res : numeric, default 0.1
        Grid resolution in m
    plot_size : numeric, default 20
        Side of the square plot in m
    start : tuple of float, default None
        Origin of the grid. Default is the rounded minimum X and Y

    Returns
    -------
    float
        Cover in %, or -1 if the stratum is empty
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    Z = np.asarray(Z, dtype=np.float64)
    if len(Z) == 0:
        warnings.warn("NULL (-1) return: no points to compute cover")
        return -1

    if start is None:
        start = (np.round(X.min(), 0), np.round(Y.min(), 0))

    cells = pd.DataFrame({
        'col': np.floor((X - start[0]) / res).astype(np.int64),
        'row': np.floor((Y - start[1]) / res).astype(np.int64),
        'Z': Z,
    })
    sum_z = cells.groupby(['row', 'col'])['Z'].sum()
    fcell = int(np.sum(sum_z.values > 0))
    tcells = ((plot_size / res) + 1) ** 2
    return (fcell / tcells) * 100


def fCHM(X, Y, Z, res=0.5):
    """
    Canopy height model with the point-to-raster method (highest point per cell).

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of the points (Z normalised)
    res : numeric, default 0.5
        Resolution in m. The grid is aligned on multiples of res

    Returns
    -------
    tuple
        A tuple of two elements:
        1) A 2D numpy array (rows from north to south), NaN for empty cells
        2) The affine transform of the raster (rasterio)
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    Z = np.asarray(Z, dtype=np.float64)
    if len(Z) == 0:
        raise ValueError("No points to compute a canopy height model")

    xmin = np.floor(X.min() / res) * res
    ymax = np.ceil(Y.max() / res) * res
    cols = np.floor((X - xmin) / res).astype(np.int64)
    rows = np.floor((ymax - Y) / res).astype(np.int64)
    rows = np.clip(rows, 0, None)

    chm = np.full((rows.max() + 1, cols.max() + 1), -np.inf)
    np.maximum.at(chm, (rows, cols), Z)
    chm[np.isinf(chm)] = np.nan

    transform = from_origin(xmin, ymax, res, res)
    return chm, transform


# Neighbours of a cell in ring order (row offset, column offset)
_RING = [(-1, -1), (-1, 0), (-1, 1), (0, 1), (1, 1), (1, 0), (1, -1), (0, -1)]


def _heron(a, b, c):
    s = (a + b + c) / 2
    return np.sqrt(np.clip(s * (s - a) * (s - b) * (s - c), 0, None))


def surface_area(chm, res):
    """
    Surface area of each cell of a height model (Jenness, 2004).

    The cell centre is joined to its 8 neighbours, giving 8 triangles. Each
    triangle is cut at half the length of its edges, and the cell's 3D area is
    the sum of these 8 inner triangles. Empty or missing neighbours take the height
    of the cell, so they add no relief.

    Returns
    -------
    numpy.ndarray
        3D area of every cell in m², NaN for empty cells
    """
    chm = np.asarray(chm, dtype=np.float64)
    n_rows, n_cols = chm.shape
    padded = np.pad(chm, 1, mode='constant', constant_values=np.nan)

    centre = chm
    neighbours = []
    for dr, dc in _RING:
        z = padded[1 + dr:1 + dr + n_rows, 1 + dc:1 + dc + n_cols]
        neighbours.append(np.where(np.isnan(z), centre, z))

    area = np.zeros_like(chm)
    for i, (dr, dc) in enumerate(_RING):
        j = (i + 1) % len(_RING)
        dr2, dc2 = _RING[j]
        # Horizontal lengths: centre to each neighbour, then neighbour to neighbour
        h1 = res * np.hypot(dr, dc)
        h2 = res * np.hypot(dr2, dc2)
        h12 = res * np.hypot(dr - dr2, dc - dc2)
        a = np.hypot(h1, neighbours[i] - centre) / 2
        b = np.hypot(h2, neighbours[j] - centre) / 2
        c = np.hypot(h12, neighbours[i] - neighbours[j]) / 2
        area += _heron(a, b, c)

    area[np.isnan(chm)] = np.nan
    return area


def rumple_index(chm, res):
    """
    Rumple index of a canopy height model.

    Ratio between the 3D surface area of the non-empty cells (see surface_area)
    and their 2D area, n_cells * res². 1 for a flat canopy and higher for a more
    heterogeneous one.

    Returns
    -------
    float
        Rumple index, NaN if the height model has no non-empty cell
    """
    chm = np.asarray(chm, dtype=np.float64)
    n_cells = int(np.sum(~np.isnan(chm)))
    if n_cells == 0:
        warnings.warn("No cell in the canopy height model: rumple index is NaN")
        return np.nan

    area3d = np.nansum(surface_area(chm, res))
    return float(area3d / (n_cells * res * res))


def write_raster(array, transform, path, crs=None):
    """Write a single band float32 GeoTIFF (NaN as nodata)."""
    array = np.asarray(array, dtype=np.float32)
    with rasterio.open(path, 'w', driver='GTiff', height=array.shape[0],
                       width=array.shape[1], count=1, dtype='float32',
                       crs=crs, transform=transform, nodata=np.nan) as dst:
        dst.write(array, 1)


def plot_chm(chm, transform, path=None, title=None):
    """
    Plot a canopy height model.

    Parameters
    ----------
    chm : numpy.ndarray
        Output of fCHM
    transform : affine.Affine
        Transform of the raster
    path : str, optional
        Save the figure to this file instead of displaying it
    title : str, optional
        Title of the figure
    """
    import matplotlib.pyplot as plt

    left = transform.c
    top = transform.f
    right = left + chm.shape[1] * transform.a
    bottom = top + chm.shape[0] * transform.e

    fig, ax = plt.subplots(figsize=(6, 6))
    image = ax.imshow(chm, extent=(left, right, bottom, top), cmap='viridis')
    fig.colorbar(image, ax=ax, label="Height (m)")
    if title is not None:
        ax.set_title(title)

    if path is not None:
        fig.savefig(path, dpi=150, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()
    return fig
