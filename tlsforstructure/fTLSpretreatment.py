"""
Point cloud pre-treatment of a terrestrial laser scan (TLS) plot

This module provides functions for reading a TLS scan, clipping it around the plot
centre, normalising heights above ground and thinning it before tree detection.
"""

import copy
import numpy as np
import pandas as pd
from pathlib import Path
import warnings
import argparse
import sys
import laspy
from scipy.interpolate import griddata
from scipy.spatial import QhullError


EXTRA_DIMENSIONS = {
    'Zref': np.float64,
    'TreeID': np.uint32,
    'Stem': np.uint8,
    'Segment': np.int32,
}


def read_tls(path):
    """
    Read a LAS/LAZ file with proper error handling for LAZ files.

    Parameters
    ----------
    path : str or pathlib.Path
        Path to a LAS/LAZ file

    Returns
    -------
    laspy.LasData
    """
    try:
        return laspy.read(str(path))
    except laspy.errors.LaspyException as e:
        error_msg = str(e)
        if "LazBackend" in error_msg or "cannot decompress" in error_msg:
            raise ImportError(
                f"LAZ decompression error: {error_msg}\n\n"
                "LAZ files require a decompression backend. Please install one of the following:\n"
                "  - lazrs (recommended, fastest): pip install lazrs\n"
                "  - laszip (alternative): pip install laszip\n"
                "Or install laspy with a backend: pip install 'laspy[lazrs]'"
            ) from e
        raise


def las_to_frame(las):
    """
    Convert a LasData into a DataFrame with X, Y, Z, Classification and the
    extra dimensions written by this package (Zref, TreeID, Stem, Segment).
    """
    frame = pd.DataFrame({
        'X': np.asarray(las.x, dtype=np.float64),
        'Y': np.asarray(las.y, dtype=np.float64),
        'Z': np.asarray(las.z, dtype=np.float64),
        'Classification': np.asarray(las.classification, dtype=np.uint8),
    })
    dimension_names = set(las.point_format.dimension_names)
    for name in EXTRA_DIMENSIONS:
        if name in dimension_names:
            frame[name] = np.asarray(las[name])
    if 'Stem' in frame.columns:
        frame['Stem'] = frame['Stem'].astype(bool)
    return frame


def frame_to_las(frame, header=None):
    """
    Convert a point DataFrame back into a LasData.

    Parameters
    ----------
    frame : pandas.DataFrame
        Must contain X, Y and Z. Classification, Zref, TreeID, Stem and Segment
        are written when present.
    header : laspy.LasHeader, optional
        Header to copy scales and offsets from. A 1.4 / point format 6 header
        is created if not given.

    Returns
    -------
    laspy.LasData
    """
    if header is None:
        new_header = laspy.LasHeader(point_format=6, version="1.4")
        new_header.scales = np.array([0.001, 0.001, 0.001])
        if len(frame) > 0:
            new_header.offsets = np.floor(frame[['X', 'Y', 'Z']].min().values)
    else:
        new_header = laspy.LasHeader(point_format=header.point_format.id,
                                     version=header.version)
        new_header.scales = header.scales
        new_header.offsets = header.offsets

    for name, dtype in EXTRA_DIMENSIONS.items():
        if name in frame.columns:
            new_header.add_extra_dim(laspy.ExtraBytesParams(name=name, type=dtype))

    las = laspy.LasData(new_header)
    las.x = frame['X'].values
    las.y = frame['Y'].values
    las.z = frame['Z'].values
    if 'Classification' in frame.columns:
        las.classification = frame['Classification'].values.astype(np.uint8)
    for name, dtype in EXTRA_DIMENSIONS.items():
        if name in frame.columns:
            las[name] = frame[name].values.astype(dtype)
    return las


def plot_center(X, Y):
    """Middle of the plot as the median of the coordinates."""
    return float(np.median(X)), float(np.median(Y))


def clip_rectangle(points, xmin, ymin, xmax, ymax):
    """
    Keep points inside a rectangle (bounds included).

    Parameters
    ----------
    points : laspy.LasData or pandas.DataFrame
        Point cloud to clip. DataFrames need X and Y columns.
    xmin, ymin, xmax, ymax : numeric
        Rectangle bounds

    Returns
    -------
    laspy.LasData or pandas.DataFrame
        A new object of the same type holding the points inside the rectangle
    """
    if isinstance(points, pd.DataFrame):
        keep_mask = ((points['X'] >= xmin) & (points['X'] <= xmax) &
                     (points['Y'] >= ymin) & (points['Y'] <= ymax))
        return points[keep_mask].reset_index(drop=True)

    x = np.asarray(points.x)
    y = np.asarray(points.y)
    keep_mask = (x >= xmin) & (x <= xmax) & (y >= ymin) & (y <= ymax)
    clipped = laspy.LasData(copy.deepcopy(points.header))
    clipped.points = points.points[keep_mask]
    return clipped


def classify_ground(X, Y, Z, res=0.5, threshold=0.15):
    """
    Flag ground points as the points lying within `threshold` metres of the lowest
    point of their `res` x `res` grid cell.

    Returns
    -------
    numpy.ndarray of bool
    """
    if res <= 0:
        raise ValueError("res must be positive")
    X = np.asarray(X)
    Y = np.asarray(Y)
    Z = np.asarray(Z)
    if len(Z) == 0:
        return np.zeros(0, dtype=bool)

    cells = pd.DataFrame({
        'col': np.floor((X - X.min()) / res).astype(np.int64),
        'row': np.floor((Y - Y.min()) / res).astype(np.int64),
        'Z': Z,
    })
    cell_min = cells.groupby(['row', 'col'])['Z'].transform('min').values
    return Z <= cell_min + threshold


def normalize_height(X, Y, Z, ground_mask):
    """
    Subtract a terrain model from Z.

    The terrain is a linear TIN interpolation of the ground points. Points outside
    the convex hull of the ground get the elevation of the nearest ground point.
    """
    X = np.asarray(X)
    Y = np.asarray(Y)
    Z = np.asarray(Z)
    ground_mask = np.asarray(ground_mask, dtype=bool)
    if np.sum(ground_mask) == 0:
        raise ValueError("No ground points found for terrain normalisation")

    ground_xy = np.column_stack([X[ground_mask], Y[ground_mask]])
    ground_z = Z[ground_mask]
    xy = np.column_stack([X, Y])

    if len(ground_z) >= 3:
        try:
            terrain = griddata(ground_xy, ground_z, xy, method='linear')
        except QhullError:
            # Collinear ground, nearest fill below
            terrain = np.full(len(Z), np.nan)
    else:
        terrain = np.full(len(Z), np.nan)

    outside = np.isnan(terrain)
    if np.any(outside):
        terrain[outside] = griddata(ground_xy, ground_z, xy[outside], method='nearest')

    return Z - terrain


def voxel_sample(X, Y, Z, res=0.005, seed=None):
    """
    Thin a point cloud by keeping one random point per occupied voxel.

    Returns
    -------
    numpy.ndarray of bool
        Mask of the points to keep
    """
    if res <= 0:
        raise ValueError("res must be positive")
    X = np.asarray(X)
    Y = np.asarray(Y)
    Z = np.asarray(Z)
    n = len(Z)
    keep_mask = np.zeros(n, dtype=bool)
    if n == 0:
        return keep_mask

    rng = np.random.default_rng(seed)
    order = rng.permutation(n)
    keys = np.column_stack([
        np.floor(X[order] / res),
        np.floor(Y[order] / res),
        np.floor(Z[order] / res),
    ]).astype(np.int64)
    _, first = np.unique(keys, axis=0, return_index=True)
    keep_mask[order[first]] = True
    return keep_mask


def fTLSpretreatment(chunk, center=None, clip_size=40, plot_size=20,
                     keep_ground=True, classify=False, ground_res=0.5,
                     ground_threshold=0.15):
    """
    Clip and normalise a TLS scan to the plot of interest.

    Parameters
    ----------
    chunk : str or laspy.LasData
        Path to a LAS/LAZ file or a laspy.LasData object
    center : tuple of float, default None
        Plot centre (x, y). Default is the median of the raw scan coordinates
    clip_size : numeric, default 40
        Side of the initial square clip in m. Larger than the plot to reduce edge
        artefacts of the terrain model
    plot_size : numeric, default 20
        Side of the final square plot in m
    keep_ground : bool, default True
        Keep ground points in the normalised point cloud
    classify : bool, default False
        Make a ground classification. Automatically done if the clip has no
        ground (class 2) points
    ground_res : numeric, default 0.5
        Grid resolution in m of the ground classification
    ground_threshold : numeric, default 0.15
        Height in m above the lowest point of a cell under which points are ground

    Returns
    -------
    laspy.LasData or None
        Normalised point cloud of the plot with the raw elevation stored in
        the Zref extra dimension
    """
    if plot_size > clip_size:
        raise ValueError("plot_size must not be larger than clip_size")

    if isinstance(chunk, (str, Path)):
        las = read_tls(chunk)
    else:
        las = chunk

    if len(las.points) == 0:
        warnings.warn("No points in the point cloud. NULL returned")
        return None

    if center is None:
        center = plot_center(las.x, las.y)
    x, y = center

    # Initial clip to reduce processing time
    half = clip_size / 2
    las = clip_rectangle(las, x - half, y - half, x + half, y + half)

    if len(las.points) == 0:
        warnings.warn("No points in the clipped point cloud. NULL returned")
        print("No points in the point cloud")
        return None

    X = np.asarray(las.x, dtype=np.float64)
    Y = np.asarray(las.y, dtype=np.float64)
    Z = np.asarray(las.z, dtype=np.float64)

    # Ground classification
    ground_mask = np.asarray(las.classification) == 2
    if classify or np.sum(ground_mask) == 0:
        if not classify:
            warnings.warn("No ground points in the point cloud: ground classification computed")
        ground_mask = classify_ground(X, Y, Z, res=ground_res, threshold=ground_threshold)
        classification = np.asarray(las.classification).copy()
        classification[ground_mask] = 2
        classification[~ground_mask & (classification == 2)] = 1
        las.classification = classification

    # Store raw Z and normalise
    if 'Zref' not in las.point_format.dimension_names:
        las.add_extra_dim(laspy.ExtraBytesParams(name="Zref", type=np.float64))
    las.Zref = Z.copy()
    las.z = normalize_height(X, Y, Z, ground_mask)

    if not keep_ground:
        las.points = las.points[~ground_mask]

    # Crop to area of interest
    half = plot_size / 2
    tls = clip_rectangle(las, x - half, y - half, x + half, y + half)

    if len(tls.points) == 0:
        warnings.warn("No points left in the plot. NULL returned")
        return None

    return tls


def main():
    """
    Main function for command-line interface.
    """
    parser = argparse.ArgumentParser(
        description='Clip and normalise a TLS scan to a plot',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 20 x 20 m plot around the median of the scan
  tls-pretreatment -i scan.las -o plot.laz

  # Explicit centre and plot size, without ground points
  tls-pretreatment -i scan.las -o plot.laz --center 512.3 1204.8 --plot-size 30 --drop-ground

  # Thin the normalised plot to 1 cm voxels
  tls-pretreatment -i scan.las -o plot.laz --thin 0.01
        """
    )

    parser.add_argument('-i', '--input', type=str, required=True,
                        help='Path to input LAS/LAZ file')
    parser.add_argument('-o', '--output', type=str, required=True,
                        help='Path to output LAS/LAZ file')
    parser.add_argument('--center', type=float, nargs=2, default=None,
                        help='Plot centre X Y. Default: median of the scan')
    parser.add_argument('--clip-size', type=float, default=40,
                        help='Side of the initial clip in m. Default: 40')
    parser.add_argument('--plot-size', type=float, default=20,
                        help='Side of the plot in m. Default: 20')
    parser.add_argument('--drop-ground', action='store_true',
                        help='Remove ground points from the output')
    parser.add_argument('--classify', action='store_true',
                        help='Make a ground classification (default: False)')
    parser.add_argument('--ground-res', type=float, default=0.5,
                        help='Grid resolution of the ground classification. Default: 0.5')
    parser.add_argument('--ground-threshold', type=float, default=0.15,
                        help='Height above cell minimum of ground points. Default: 0.15')
    parser.add_argument('--thin', type=float, default=None,
                        help='Voxel size of an optional thinning. Default: None (no thinning)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed used by the thinning')

    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file '{args.input}' does not exist.", file=sys.stderr)
        sys.exit(1)

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    print(f"Processing: {args.input}")
    print(f"Output: {args.output}")

    try:
        las = fTLSpretreatment(
            chunk=str(input_path),
            center=tuple(args.center) if args.center is not None else None,
            clip_size=args.clip_size,
            plot_size=args.plot_size,
            keep_ground=not args.drop_ground,
            classify=args.classify,
            ground_res=args.ground_res,
            ground_threshold=args.ground_threshold
        )

        if las is None:
            print("Warning: Processing returned None. No output file created.", file=sys.stderr)
            sys.exit(1)

        if args.thin is not None:
            keep_mask = voxel_sample(las.x, las.y, las.z, res=args.thin, seed=args.seed)
            las.points = las.points[keep_mask]

        las.write(str(output_path))
        print(f"Successfully processed and saved to: {args.output}")

    except Exception as e:
        print(f"Error during processing: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
