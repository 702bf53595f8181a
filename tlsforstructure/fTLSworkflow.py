"""
Vegetation structure metrics of a TLS plot

This module chains the pre-treatment, tree, voxel and stratum functions of the
package to derive the vegetation structure metrics of one terrestrial laser scan:
basal area, stem density, canopy height, canopy and understorey cover, rumple
index, density and gap volume, and foliage height diversity.
"""

import pandas as pd
from pathlib import Path
import warnings
import argparse
import sys
from .fTLSpretreatment import (fTLSpretreatment, read_tls, las_to_frame, frame_to_las,
                               plot_center, voxel_sample)
from .fTreeMetrics import fTreeMap, fTreePoints, fStemPoints, fTLSinventory, fStandMetrics
from .fVoxelMetrics import fDensityProfile, fStrataHeights, fFHD, plot_density_profile
from .fStrataMetrics import fCanopyMetrics, fUnderstoreyMetrics
from .fGridMetrics import write_raster, plot_chm


DEFAULT_CANOPY_BASE_HEIGHT = 11
DEFAULT_UNDERSTOREY_HEIGHT = 4
INVENTORY_COLUMNS = ['TreeID', 'X', 'Y', 'Radius', 'Error', 'H', 'dbh', 'BA']


def _resolve_height(value, suggested, default, name):
    """Resolve a stratum height given as a number or "auto"."""
    if isinstance(value, str):
        if value != "auto":
            raise ValueError(f"{name} must be numeric or 'auto', got {value!r}")
        if suggested is None:
            warnings.warn(f"{name} could not be derived from the density profile: "
                          f"{default} m used")
            return default
        return suggested
    return float(value)


def fTLSworkflow(chunk, center=None, clip_size=40, plot_size=20, understorey_size=10,
                 thin_res=0.005, map_min_h=4, map_max_h=6, map_min_density=0.0125,
                 map_merge=0, crop_l=0.75, min_dbh=0.1,
                 canopy_base_height=DEFAULT_CANOPY_BASE_HEIGHT,
                 understorey_height=DEFAULT_UNDERSTOREY_HEIGHT,
                 fit_method="ransac", fit_n=20, seed=None):
    """
    Compute the vegetation structure metrics of a TLS plot.

    Parameters
    ----------
    chunk : str or laspy.LasData
        Path to a LAS/LAZ file or a laspy.LasData object of the raw scan
    center : tuple of float, default None
        Plot centre (x, y). Default is the median of the scan coordinates
    clip_size : numeric, default 40
        Side in m of the clip used for height normalisation
    plot_size : numeric, default 20
        Side in m of the square plot
    understorey_size : numeric, default 10
        Side in m of the square plot used for the understorey metrics
    thin_res : numeric, default 0.005
        Voxel size in m of the thinning made before tree mapping
    map_min_h, map_max_h : numeric, default 4 and 6
        Height range in m used to map the trees. Default values are adjusted to a
        vegetation with a tall understorey (1 and 3 is common otherwise)
    map_min_density : numeric, default 0.0125
        Minimum relative pixel density of the Hough transform used to map trees
    map_merge : numeric, default 0
        Merge distance of the tree map. 0 means no merge
    crop_l : numeric, default 0.75
        Radius in m around a tree position within which points belong to the tree
    min_dbh : numeric, default 0.1
        Stems with a smaller diameter in m are not counted
    canopy_base_height : numeric or "auto", default 11
        Height in m above which points are canopy. "auto" derives it from the
        vegetation density profile
    understorey_height : numeric or "auto", default 4
        Top of the understorey in m. "auto" derives it from the vegetation
        density profile
    fit_method : str, default "ransac"
        Stem circle fit of the inventory, "ransac" or "qr"
    fit_n : int, default 20
        Number of points drawn by each RANSAC iteration of the stem fits
    seed : int, optional
        Seed of the random thinning and of the RANSAC fits

    Returns
    -------
    tuple
        A tuple of four elements:
        1) A dict with all metrics
        2) A pandas DataFrame with the stem inventory (TreeID, X, Y, Radius,
           Error, H, dbh, BA)
        3) A pandas DataFrame with the normalised and segmented points (X, Y, Z,
           Classification, Zref, TreeID, Stem, Segment), None if the plot is empty
        4) A dict with intermediate products: center, tree_map, profile,
           chm_canopy, transform_canopy, chm_understorey, transform_understorey.
           All but center are None if the plot is empty
    """
    if isinstance(chunk, (str, Path)):
        las = read_tls(chunk)
    else:
        las = chunk

    if center is None:
        center = plot_center(las.x, las.y)

    tls_las = fTLSpretreatment(las, center=center, clip_size=clip_size,
                               plot_size=plot_size, keep_ground=True)
    if tls_las is None:
        warnings.warn("NULL (-1) return: no points in the plot")
        products = {
            'center': center,
            'tree_map': None,
            'profile': None,
            'chm_canopy': None,
            'transform_canopy': None,
            'chm_understorey': None,
            'transform_understorey': None
        }
        return _create_null_return(), pd.DataFrame(columns=INVENTORY_COLUMNS), None, products

    tls = las_to_frame(tls_las)
    X = tls['X'].values
    Y = tls['Y'].values
    Z = tls['Z'].values

    # Detect and delineate trees on a thinned cloud
    thin = tls[voxel_sample(X, Y, Z, res=thin_res, seed=seed)]
    tree_map = fTreeMap(thin['X'].values, thin['Y'].values, thin['Z'].values,
                        min_h=map_min_h, max_h=map_max_h, min_density=map_min_density,
                        merge=map_merge)
    tls = fTreePoints(tls, tree_map, l=crop_l)
    tls = fStemPoints(tls)

    # Plot inventory
    inventory = fTLSinventory(tls, method=fit_method, n=fit_n, seed=seed)
    Stand_metrics, inventory = fStandMetrics(inventory, plot_size=plot_size, min_dbh=min_dbh)

    # Density profile to choose understorey and canopy base heights
    profile = fDensityProfile(X, Y, Z, res=0.1)
    uht_auto, cbht_auto = (None, None)
    if isinstance(canopy_base_height, str) or isinstance(understorey_height, str):
        uht_auto, cbht_auto = fStrataHeights(profile)
    cbht = _resolve_height(canopy_base_height, cbht_auto, DEFAULT_CANOPY_BASE_HEIGHT,
                           "canopy_base_height")
    uht = _resolve_height(understorey_height, uht_auto, DEFAULT_UNDERSTOREY_HEIGHT,
                          "understorey_height")

    # Strata metrics
    Canopy_metrics, chm_canopy, transform_canopy = fCanopyMetrics(
        tls, canopy_base_height=cbht, plot_size=plot_size)
    Understorey_metrics, chm_understorey, transform_understorey = fUnderstoreyMetrics(
        tls, center, understorey_height=uht, plot_size=understorey_size)

    # Foliage height diversity of all strata
    fhd = fFHD(X, Y, Z, res=0.2, plot_size=plot_size)

    Canopy_metrics['CanopyRumple'] = round(Canopy_metrics['CanopyRumple'], 3)
    Understorey_metrics['UnderstoreyRumple'] = round(Understorey_metrics['UnderstoreyRumple'], 3)

    TLS_metrics = {
        **Stand_metrics,
        'UnderstoreyHeight': uht,
        'CanopyBaseHeight': cbht,
        **Canopy_metrics,
        **Understorey_metrics,
        'FHD': fhd
    }

    products = {
        'center': center,
        'tree_map': tree_map,
        'profile': profile,
        'chm_canopy': chm_canopy,
        'transform_canopy': transform_canopy,
        'chm_understorey': chm_understorey,
        'transform_understorey': transform_understorey
    }

    return TLS_metrics, inventory, tls, products


def _create_null_return():
    """Create a null return with -1 values for all metrics."""
    return {
        'BasalArea': -1,
        'StemDensity': -1,
        'Height': -1,
        'N_stems': 0,
        'UnderstoreyHeight': -1,
        'CanopyBaseHeight': -1,
        'CanopyCover': -1,
        'CanopyRumple': -1,
        'CanopyDensity': -1,
        'CanopyGapVolume': -1,
        'UnderstoreyRumple': -1,
        'UnderstoreyCover': -1,
        'UnderstoreyDensity': -1,
        'UnderstoreyGapVolume': -1,
        'FHD': -1
    }


def _height_argument(value):
    """Parse a stratum height argument: a number or 'auto'."""
    if value == "auto":
        return value
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number or 'auto', got {value!r}")


def main():
    """
    Main function for command-line interface.
    """
    parser = argparse.ArgumentParser(
        description='Compute vegetation structure metrics from a TLS plot',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Basic usage with default parameters (20 x 20 m plot around the scan median)
  tls-structure -i scan.las -o results

  # Derive the canopy base and understorey heights from the density profile
  tls-structure -i scan.las -o results --canopy-base-height auto --understorey-height auto

  # Write the segmented point cloud, the height models and the figures
  tls-structure -i scan.las -o results --write-las --write-chm --plots
        """
    )

    parser.add_argument('-i', '--input', type=str, required=True,
                        help='Path to input LAS/LAZ file')
    parser.add_argument('-o', '--output', type=str, required=True,
                        help='Output directory')
    parser.add_argument('--center', type=float, nargs=2, default=None,
                        help='Plot centre X Y. Default: median of the scan')
    parser.add_argument('--clip-size', type=float, default=40,
                        help='Side of the normalisation clip in m. Default: 40')
    parser.add_argument('--plot-size', type=float, default=20,
                        help='Side of the plot in m. Default: 20')
    parser.add_argument('--understorey-size', type=float, default=10,
                        help='Side of the understorey plot in m. Default: 10')
    parser.add_argument('--thin-res', type=float, default=0.005,
                        help='Voxel size of the thinning before tree mapping. Default: 0.005')
    parser.add_argument('--map-min-h', type=float, default=4,
                        help='Lower height of the tree mapping slice. Default: 4')
    parser.add_argument('--map-max-h', type=float, default=6,
                        help='Upper height of the tree mapping slice. Default: 6')
    parser.add_argument('--map-min-density', type=float, default=0.0125,
                        help='Minimum pixel density of the tree mapping. Default: 0.0125')
    parser.add_argument('--map-merge', type=float, default=0,
                        help='Merge distance of the tree map. Default: 0 (no merge)')
    parser.add_argument('--crop-l', type=float, default=0.75,
                        help='Radius of the tree point crop. Default: 0.75')
    parser.add_argument('--min-dbh', type=float, default=0.1,
                        help='Minimum stem diameter in m. Default: 0.1')
    parser.add_argument('--canopy-base-height', type=_height_argument, default=11,
                        help="Canopy base height in m or 'auto'. Default: 11")
    parser.add_argument('--understorey-height', type=_height_argument, default=4,
                        help="Understorey height in m or 'auto'. Default: 4")
    parser.add_argument('--fit-method', type=str, choices=['ransac', 'qr'], default='ransac',
                        help='Stem circle fit method. Default: ransac')
    parser.add_argument('--fit-n', type=int, default=20,
                        help='Points drawn by each RANSAC iteration of the stem fits. Default: 20')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed of the thinning and RANSAC fits')
    parser.add_argument('--write-las', action='store_true',
                        help='Write the normalised and segmented plot (plot.las)')
    parser.add_argument('--write-chm', action='store_true',
                        help='Write the canopy and understorey height models as GeoTIFF')
    parser.add_argument('--crs', type=str, default=None,
                        help='CRS of the GeoTIFF outputs (e.g. EPSG:28355)')
    parser.add_argument('--plots', action='store_true',
                        help='Save the density profile and height model figures')

    args = parser.parse_args()

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file '{args.input}' does not exist.", file=sys.stderr)
        sys.exit(1)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"Processing: {args.input}")
    print(f"Output: {args.output}")

    try:
        metrics, inventory, tls, products = fTLSworkflow(
            chunk=str(input_path),
            center=tuple(args.center) if args.center is not None else None,
            clip_size=args.clip_size,
            plot_size=args.plot_size,
            understorey_size=args.understorey_size,
            thin_res=args.thin_res,
            map_min_h=args.map_min_h,
            map_max_h=args.map_max_h,
            map_min_density=args.map_min_density,
            map_merge=args.map_merge,
            crop_l=args.crop_l,
            min_dbh=args.min_dbh,
            canopy_base_height=args.canopy_base_height,
            understorey_height=args.understorey_height,
            fit_method=args.fit_method,
            fit_n=args.fit_n,
            seed=args.seed
        )

        pd.DataFrame([metrics]).to_csv(output_dir / "metrics.csv", index=False)
        inventory.to_csv(output_dir / "inventory.csv", index=False)
        print(f"Metrics saved to: {output_dir / 'metrics.csv'}")

        if tls is None:
            print("Warning: No points in the plot. Only metrics were written.", file=sys.stderr)
            sys.exit(1)

        if args.write_las:
            frame_to_las(tls).write(str(output_dir / "plot.las"))

        for name in ('canopy', 'understorey'):
            chm = products[f'chm_{name}']
            transform = products[f'transform_{name}']
            if chm is None:
                continue
            if args.write_chm:
                write_raster(chm, transform, output_dir / f"chm_{name}.tif", crs=args.crs)
            if args.plots:
                rumple = metrics['CanopyRumple'] if name == 'canopy' else metrics['UnderstoreyRumple']
                plot_chm(chm, transform, path=output_dir / f"chm_{name}.png",
                         title=f"{name.capitalize()} height model\nRumple index: {rumple}")

        if args.plots and products['profile'] is not None:
            plot_density_profile(products['profile'], path=output_dir / "density_profile.png",
                                 understorey_height=metrics['UnderstoreyHeight'],
                                 canopy_base_height=metrics['CanopyBaseHeight'])

        for key, value in metrics.items():
            print(f"  {key}: {value}")
        print(f"Successfully processed: {args.input}")

    except Exception as e:
        print(f"Error during processing: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
