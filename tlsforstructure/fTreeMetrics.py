"""
Tree metrics from a normalised TLS plot

This module provides functions to map the trees of a plot with a circle Hough
transform, attribute points to trees, classify stem points, fit stem circles at
breast height and summarise the resulting inventory (basal area, stem density and
canopy height).
"""

import numpy as np
import pandas as pd
import warnings
from scipy.spatial import cKDTree
from skimage.transform import hough_circle, hough_circle_peaks
from sklearn.cluster import DBSCAN


def _rasterize(X, Y, pixel_size, pad):
    """Count points per pixel on a grid padded by `pad` pixels on every side."""
    x0 = np.floor(X.min() / pixel_size) * pixel_size - pad * pixel_size
    y0 = np.floor(Y.min() / pixel_size) * pixel_size - pad * pixel_size
    cols = np.floor((X - x0) / pixel_size).astype(np.int64)
    rows = np.floor((Y - y0) / pixel_size).astype(np.int64)
    counts = np.zeros((rows.max() + pad + 1, cols.max() + pad + 1), dtype=np.int64)
    np.add.at(counts, (rows, cols), 1)
    return counts, x0, y0


def _empty_circles():
    return pd.DataFrame({
        'X': pd.Series(dtype=np.float64),
        'Y': pd.Series(dtype=np.float64),
        'Radius': pd.Series(dtype=np.float64),
        'Votes': pd.Series(dtype=np.int64),
    })


def hough_circles(X, Y, pixel_size=0.025, max_d=0.5, min_density=0.1, min_votes=3):
    """
    Find circles in a horizontal layer of points with a circle Hough transform.

    Parameters
    ----------
    X, Y : array-like
        Coordinates of the points of the layer
    pixel_size : numeric, default 0.025
        Pixel size in m of the raster the transform is computed on
    max_d : numeric, default 0.5
        Largest circle diameter searched in m. Also the minimum distance between
        two returned circles
    min_density : numeric, default 0.1
        Pixels holding less than min_density times the densest pixel count are
        not used
    min_votes : int, default 3
        Minimum number of votes of a circle

    Returns
    -------
    pandas.DataFrame
        Columns X, Y, Radius and Votes, sorted by decreasing votes
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    if len(X) < min_votes:
        return _empty_circles()

    rmax = max(1, int(round(max_d / 2 / pixel_size)))
    counts, x0, y0 = _rasterize(X, Y, pixel_size, rmax)
    edges = (counts > 0) & (counts >= min_density * counts.max())

    radii = np.arange(1, rmax + 1)
    hspaces = hough_circle(edges.astype(np.uint8), radii, normalize=False)
    min_distance = max(1, int(round(max_d / pixel_size)))
    votes, cols, rows, radius = hough_circle_peaks(hspaces, radii,
                                                   min_xdistance=min_distance,
                                                   min_ydistance=min_distance,
                                                   threshold=min_votes - 0.5)
    if len(votes) == 0:
        return _empty_circles()

    circles = pd.DataFrame({
        'X': x0 + (cols + 0.5) * pixel_size,
        'Y': y0 + (rows + 0.5) * pixel_size,
        'Radius': radius * pixel_size,
        'Votes': np.rint(votes).astype(np.int64),
    })
    return circles.sort_values('Votes', ascending=False, kind='stable').reset_index(drop=True)


def _aggregate_circles(circles, labels):
    """Vote weighted position and radius of each group of circles."""
    trees = []
    for label in np.unique(labels):
        group = circles[labels == label]
        weights = group['Votes'].values.astype(np.float64)
        trees.append({
            'X': np.average(group['X'], weights=weights),
            'Y': np.average(group['Y'], weights=weights),
            'Radius': np.average(group['Radius'], weights=weights),
            'Votes': int(weights.sum()),
            'Layers': int(group['Layers'].max()) if 'Layers' in group else group['Layer'].nunique(),
        })
    return pd.DataFrame(trees)


def _empty_tree_map():
    return pd.DataFrame({
        'TreeID': pd.Series(dtype=np.uint32),
        'X': pd.Series(dtype=np.float64),
        'Y': pd.Series(dtype=np.float64),
        'Radius': pd.Series(dtype=np.float64),
        'Votes': pd.Series(dtype=np.int64),
        'Layers': pd.Series(dtype=np.int64),
    })


def fTreeMap(X, Y, Z, min_h=1, max_h=3, h_step=0.5, pixel_size=0.025, max_d=0.5,
             min_density=0.1, min_votes=3, min_layers=2, merge=0.2):
    """
    Map the tree positions of a plot.

    Circles are searched with a Hough transform in every layer of depth h_step
    between min_h and max_h. Circles found at the same place in several layers
    are grouped into one tree.

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of a normalised (and usually thinned) point cloud
    min_h, max_h : numeric, default 1 and 3
        Height range in m in which stems are searched. Should be free of
        understorey and crowns
    h_step : numeric, default 0.5
        Depth of the layers in m
    pixel_size, max_d, min_density, min_votes :
        Parameters of the Hough transform, see hough_circles
    min_layers : int, default 2
        Minimum number of layers a tree must be detected in
    merge : numeric, default 0.2
        Trees closer than this distance in m are merged. 0 means no merge

    Returns
    -------
    pandas.DataFrame
        Tree map with columns TreeID, X, Y, Radius, Votes and Layers
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    Z = np.asarray(Z, dtype=np.float64)
    if max_h <= min_h:
        raise ValueError("max_h must be greater than min_h")

    layers = np.arange(min_h, max_h, h_step)
    candidates = []
    for i, h in enumerate(layers):
        in_layer = (Z >= h) & (Z < min(h + h_step, max_h))
        if np.sum(in_layer) < min_votes:
            continue
        circles = hough_circles(X[in_layer], Y[in_layer], pixel_size=pixel_size, max_d=max_d,
                                min_density=min_density, min_votes=min_votes)
        circles['Layer'] = i
        candidates.append(circles)

    candidates = [c for c in candidates if len(c) > 0]
    if len(candidates) == 0:
        warnings.warn(f"No tree found between {min_h} and {max_h} m")
        return _empty_tree_map()

    candidates = pd.concat(candidates, ignore_index=True)
    labels = DBSCAN(eps=max_d / 2, min_samples=1).fit_predict(candidates[['X', 'Y']].values)
    tree_map = _aggregate_circles(candidates, labels)
    tree_map = tree_map[tree_map['Layers'] >= min(min_layers, len(layers))]

    if len(tree_map) == 0:
        warnings.warn("No circle found in enough layers to be a tree")
        return _empty_tree_map()

    if merge > 0 and len(tree_map) > 1:
        labels = DBSCAN(eps=merge, min_samples=1).fit_predict(tree_map[['X', 'Y']].values)
        tree_map = _aggregate_circles(tree_map.reset_index(drop=True), labels)

    tree_map = tree_map.sort_values(['X', 'Y']).reset_index(drop=True)
    tree_map.insert(0, 'TreeID', np.arange(1, len(tree_map) + 1, dtype=np.uint32))
    return tree_map


def fTreePoints(frame, tree_map, l=0.75):
    """
    Attribute points to the trees of a tree map.

    A point gets the TreeID of the closest mapped tree within a horizontal
    distance l, and 0 otherwise.

    Returns
    -------
    pandas.DataFrame
        Copy of frame with a TreeID column
    """
    tls = frame.copy()
    tree_id = np.zeros(len(tls), dtype=np.uint32)

    if len(tree_map) > 0 and len(tls) > 0:
        tree = cKDTree(tree_map[['X', 'Y']].values)
        dist, idx = tree.query(tls[['X', 'Y']].values, k=1, distance_upper_bound=l)
        found = np.isfinite(dist)
        tree_id[found] = tree_map['TreeID'].values[idx[found]]

    tls['TreeID'] = tree_id
    return tls


def fStemPoints(frame, h_step=0.5, max_d=0.5, pixel_size=0.025, min_density=0.1,
                min_votes=3):
    """
    Classify the stem points of every tree.

    The points of a tree are cut into segments of depth h_step. In each segment
    the best Hough circle is searched; points inside the circle (plus two pixels
    of tolerance) are stem points. Circles drifting more than max_d from the tree
    position are ignored.

    Parameters
    ----------
    frame : pandas.DataFrame
        Normalised points with a TreeID column (see fTreePoints)

    Returns
    -------
    pandas.DataFrame
        Copy of frame with the columns Stem (bool) and Segment (segment index of
        tree points, -1 for other points)
    """
    if 'TreeID' not in frame.columns:
        raise ValueError("TreeID column missing: run fTreePoints first")

    tls = frame.copy()
    X = tls['X'].values
    Y = tls['Y'].values
    Z = tls['Z'].values
    tree_ids = tls['TreeID'].values

    stem = np.zeros(len(tls), dtype=bool)
    segment = np.full(len(tls), -1, dtype=np.int32)

    for tree_id in np.unique(tree_ids[tree_ids > 0]):
        idx_tree = np.where(tree_ids == tree_id)[0]
        ref_x = np.median(X[idx_tree])
        ref_y = np.median(Y[idx_tree])

        tree_segment = np.floor(np.clip(Z[idx_tree], 0, None) / h_step).astype(np.int32)
        segment[idx_tree] = tree_segment

        for s in np.unique(tree_segment):
            idx = idx_tree[tree_segment == s]
            circles = hough_circles(X[idx], Y[idx], pixel_size=pixel_size, max_d=max_d,
                                    min_density=min_density, min_votes=min_votes)
            if len(circles) == 0:
                continue
            best = circles.iloc[0]
            if np.hypot(best.X - ref_x, best.Y - ref_y) > max_d:
                continue
            d = np.hypot(X[idx] - best.X, Y[idx] - best.Y)
            stem[idx[d <= best.Radius + 2 * pixel_size]] = True

    tls['Stem'] = stem
    tls['Segment'] = segment
    return tls


def circle_fit(X, Y):
    """
    Algebraic least squares circle fit.

    Returns
    -------
    tuple
        (x, y, radius, rmse) of the circle
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    if len(X) < 3:
        raise ValueError("At least 3 points are needed to fit a circle")

    A = np.column_stack([X, Y, np.ones_like(X)])
    b = X ** 2 + Y ** 2
    sol, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
    cx = sol[0] / 2
    cy = sol[1] / 2
    r2 = sol[2] + cx ** 2 + cy ** 2
    r = np.sqrt(r2) if r2 > 0 else np.nan
    resid = np.hypot(X - cx, Y - cy) - r
    rmse = np.sqrt(np.mean(resid ** 2))
    return cx, cy, r, rmse


def ransac_circle(X, Y, n=15, inliers=0.9, conf=0.95, max_iter=500, seed=None):
    """
    RANSAC circle fit.

    Each iteration fits a circle on n random points. A fit is scored with the mean
    squared residual of the `inliers` proportion of all points closest to it, and
    the best scoring fit is returned.

    Parameters
    ----------
    X, Y : array-like
        Coordinates of the points
    n : int, default 15
        Number of points sampled per iteration
    inliers : numeric, default 0.9
        Expected proportion of inliers
    conf : numeric, default 0.95
        Confidence level used to derive the number of iterations
    max_iter : int, default 500
        Upper bound of the number of iterations
    seed : int, optional
        Seed of the random sampling

    Returns
    -------
    tuple
        (x, y, radius, error) with error the RMSE of the inliers
    """
    X = np.asarray(X, dtype=np.float64)
    Y = np.asarray(Y, dtype=np.float64)
    n_points = len(X)
    if n_points < 3:
        raise ValueError("At least 3 points are needed to fit a circle")
    if n >= n_points:
        return circle_fit(X, Y)

    n = max(n, 3)
    if inliers >= 1:
        n_iter = 1
    else:
        n_iter = int(np.ceil(np.log(1 - conf) / np.log(1 - inliers ** n)))
    n_iter = int(min(max(n_iter, 1), max_iter))
    n_keep = max(3, int(np.ceil(inliers * n_points)))

    rng = np.random.default_rng(seed)
    best = None
    best_score = np.inf
    for _ in range(n_iter):
        sample = rng.choice(n_points, size=n, replace=False)
        cx, cy, r, _ = circle_fit(X[sample], Y[sample])
        if not np.isfinite(r):
            continue
        resid = np.abs(np.hypot(X - cx, Y - cy) - r)
        score = np.mean(np.sort(resid)[:n_keep] ** 2)
        if score < best_score:
            best_score = score
            best = (cx, cy, r)

    if best is None:
        return circle_fit(X, Y)
    return best[0], best[1], best[2], np.sqrt(best_score)


def fTLSinventory(frame, dh=1.3, dw=0.5, method="ransac", n=15, inliers=0.9,
                  conf=0.95, max_iter=500, seed=None):
    """
    Make the inventory of the trees of a plot.

    Parameters
    ----------
    frame : pandas.DataFrame
        Normalised points with TreeID (and optionally Stem) columns
    dh : numeric, default 1.3
        Height in m at which the stem diameter is measured
    dw : numeric, default 0.5
        Depth in m of the stem slice around dh used in the fit
    method : str, default "ransac"
        "ransac" for ransac_circle or "qr" for a plain least squares circle fit
    n, inliers, conf, max_iter, seed :
        Parameters of ransac_circle

    Returns
    -------
    pandas.DataFrame
        One row per tree: TreeID, X, Y, Radius (m), Error (RMSE of the fit, m)
        and H (tree height, m)
    """
    if method not in ("ransac", "qr"):
        raise ValueError(f"Unknown circle fit method: {method}")
    if 'TreeID' not in frame.columns:
        raise ValueError("TreeID column missing: run fTreePoints first")

    X = frame['X'].values
    Y = frame['Y'].values
    Z = frame['Z'].values
    tree_ids = frame['TreeID'].values
    in_slice = np.abs(Z - dh) <= dw / 2
    if 'Stem' in frame.columns:
        in_slice = in_slice & frame['Stem'].values.astype(bool)

    inventory = []
    for tree_id in np.unique(tree_ids[tree_ids > 0]):
        tree_mask = tree_ids == tree_id
        band = tree_mask & in_slice
        if np.sum(band) < 3:
            warnings.warn(f"Tree {tree_id}: not enough stem points at {dh} m, tree skipped")
            continue

        if method == "ransac":
            cx, cy, r, error = ransac_circle(X[band], Y[band], n=n, inliers=inliers,
                                             conf=conf, max_iter=max_iter, seed=seed)
        else:
            cx, cy, r, error = circle_fit(X[band], Y[band])

        inventory.append({
            'TreeID': int(tree_id),
            'X': cx,
            'Y': cy,
            'Radius': r,
            'Error': error,
            'H': np.max(Z[tree_mask])
        })

    if len(inventory) == 0:
        return pd.DataFrame(columns=['TreeID', 'X', 'Y', 'Radius', 'Error', 'H'])
    return pd.DataFrame(inventory)


def fStandMetrics(inventory, plot_size=20, min_dbh=0.1):
    """
    Compute stand metrics from a tree inventory.

    Parameters
    ----------
    inventory : pandas.DataFrame
        Output of fTLSinventory (needs Radius and H columns)
    plot_size : numeric, default 20
        Side of the square plot in m
    min_dbh : numeric, default 0.1
        Stems with a smaller diameter in m are removed

    Returns
    -------
    tuple
        A tuple of two elements:
        1) A dict with BasalArea (m²/ha), StemDensity (stems/ha), Height (m,
           highest tree) and N_stems. With no stem left the three metrics are -1
           and N_stems is 0
        2) The filtered inventory with the additional columns dbh (m) and BA (m²)
    """
    plotsize = (plot_size * plot_size) / (100 * 100)

    inv = inventory.copy()
    inv['dbh'] = inv['Radius'].astype(np.float64) * 2
    inv = inv[inv['dbh'] >= min_dbh].reset_index(drop=True)
    inv['BA'] = np.pi * (inv['Radius'].astype(np.float64) ** 2)

    if len(inv) == 0:
        warnings.warn(f"NULL (-1) return: no stem with dbh >= {min_dbh} m")
        return _create_null_return_stand(), inv

    Stand_metrics = {
        'BasalArea': inv['BA'].sum() / plotsize,
        'StemDensity': len(inv) / plotsize,
        'Height': float(inv['H'].max()),
        'N_stems': len(inv)
    }
    return Stand_metrics, inv


def _create_null_return_stand():
    """Create a null return: -1 for the stand metrics, 0 stems."""
    return {
        'BasalArea': -1,
        'StemDensity': -1,
        'Height': -1,
        'N_stems': 0
    }
