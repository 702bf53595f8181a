"""
Voxel metrics of a normalised TLS plot

This module provides functions to voxelise a point cloud and derive the vertical
structure of the vegetation from it: density and gap volume of a stratum, foliage
height diversity and the vegetation density profile used to choose the understorey
and canopy base heights.
"""

import numpy as np
import pandas as pd
import warnings
from scipy.stats import gaussian_kde
from scipy.signal import find_peaks, peak_widths


def voxelize_points(X, Y, Z, res):
    """
    Reduce a point cloud to the centres of its occupied voxels.

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of the points
    res : numeric
        Voxel size in m

    Returns
    -------
    pandas.DataFrame
        One row per occupied voxel with columns X, Y, Z (voxel centres)
    """
    if res <= 0:
        raise ValueError("res must be positive")
    keys = np.column_stack([
        np.floor(np.asarray(X, dtype=np.float64) / res),
        np.floor(np.asarray(Y, dtype=np.float64) / res),
        np.floor(np.asarray(Z, dtype=np.float64) / res),
    ])
    if len(keys) == 0:
        return pd.DataFrame({'X': [], 'Y': [], 'Z': []}, dtype=np.float64)

    keys = np.unique(keys, axis=0)
    centres = keys * res + res / 2
    # Round to remove floating point noise so voxel layers group exactly
    centres = np.round(centres, 6)
    return pd.DataFrame(centres, columns=['X', 'Y', 'Z'])


def fVoxelLayers(voxels):
    """Number of occupied voxels per horizontal layer (columns Z, vox)."""
    layers = voxels.groupby('Z').size().reset_index(name='vox')
    return layers.sort_values('Z').reset_index(drop=True)


def _n_cells(plot_size, res):
    # Number of grid nodes of a square plot, edges included
    return (plot_size / res + 1) ** 2


def fVoxelDensity(X, Y, Z, res=0.2, plot_size=20):
    """
    Density and gap volume of a vegetation stratum from its voxels.

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of the stratum points (Z normalised)
    res : numeric, default 0.2
        Voxel size in m
    plot_size : numeric, default 20
        Side of the square plot in m

    Returns
    -------
    dict
        density : occupied voxels / voxels available between the lowest and
                  highest layer
        gap_volume : empty volume of the stratum in m³
        z_min, z_max : heights of the lowest and highest voxel layers
        n_voxels : number of occupied voxels
    """
    voxels = voxelize_points(X, Y, Z, res)
    if len(voxels) == 0:
        warnings.warn("NULL (-1) return: no points in the stratum")
        return _create_null_density()

    layers = fVoxelLayers(voxels)
    z_min = layers['Z'].min()
    z_max = layers['Z'].max()
    zrange = (z_max - z_min) / res

    if zrange <= 0:
        warnings.warn("NULL (-1) return: the stratum holds a single voxel layer")
        return _create_null_density()

    n_voxels = int(layers['vox'].sum())
    density = n_voxels / (_n_cells(plot_size, res) * zrange)
    gap_volume = (1 - density) * (plot_size * plot_size * (z_max - z_min))

    return {
        'density': density,
        'gap_volume': gap_volume,
        'z_min': z_min,
        'z_max': z_max,
        'n_voxels': n_voxels
    }


def _create_null_density():
    """Create a null return with -1 values for all density metrics."""
    return {
        'density': -1,
        'gap_volume': -1,
        'z_min': -1,
        'z_max': -1,
        'n_voxels': 0
    }


def fFHD(X, Y, Z, res=0.2, plot_size=20):
    """
    Foliage height diversity of the whole plot.

    Shannon index of the voxel density of each layer, -sum(d * ln(d)), where d is
    the number of occupied voxels in the layer divided by the number of voxels of
    a layer.
    """
    voxels = voxelize_points(X, Y, Z, res)
    if len(voxels) == 0:
        warnings.warn("NULL (-1) return: no points to compute FHD")
        return -1

    layers = fVoxelLayers(voxels)
    dens = layers['vox'].values / _n_cells(plot_size, res)
    return float(-np.sum(dens * np.log(dens)))


def bw_nrd0(x):
    """
    Rule-of-thumb bandwidth of a Gaussian kernel density (Silverman, 1986).

    0.9 * min(sd, IQR / 1.34) * n^-0.2, falling back to the standard deviation,
    then to |x[0]|, then to 1 when the spread is null.
    """
    x = np.asarray(x, dtype=np.float64)
    if len(x) < 2:
        raise ValueError("At least two values are needed to compute a bandwidth")

    sd = np.std(x, ddof=1)
    q75, q25 = np.percentile(x, [75, 25])
    lo = min(sd, (q75 - q25) / 1.34)
    if lo == 0:
        lo = sd or abs(x[0]) or 1
    return 0.9 * lo * len(x) ** -0.2


def fDensityProfile(X, Y, Z, res=0.1, ground_height=0.1, n=512):
    """
    Vegetation density profile of the plot.

    Gaussian kernel density of the height of the voxels above ground and litter,
    with the bw_nrd0 bandwidth, evaluated between the lowest and the highest voxel.

    Parameters
    ----------
    X, Y, Z : array-like
        Coordinates of the points (Z normalised)
    res : numeric, default 0.1
        Voxel size in m
    ground_height : numeric, default 0.1
        Voxels at or below this height are ground and litter and are removed
    n : int, default 512
        Number of heights at which the density is evaluated

    Returns
    -------
    pandas.DataFrame or None
        Columns Z and density. None if less than two voxel layers are available
    """
    voxels = voxelize_points(X, Y, Z, res)
    heights = voxels['Z'].values
    heights = heights[heights > ground_height]

    if len(np.unique(heights)) < 2:
        warnings.warn("Not enough vegetation voxels to compute a density profile")
        return None

    # gaussian_kde scales a scalar bandwidth by the standard deviation
    kde = gaussian_kde(heights, bw_method=bw_nrd0(heights) / np.std(heights, ddof=1))
    z = np.linspace(heights.min(), heights.max(), n)
    return pd.DataFrame({'Z': z, 'density': kde(z)})


def fStrataHeights(profile, ground_height=0.1, rel_height=0.75):
    """
    Suggest the understorey height and the canopy base height from a density profile.

    The understorey height is the first local minimum of the density above the
    ground. The canopy base height is where the density starts to increase again
    towards the next peak (left base of the peak at `rel_height` of its prominence).

    Returns
    -------
    tuple
        (understorey_height, canopy_base_height). Either may be None if the
        profile has no such feature
    """
    if profile is None or len(profile) < 3:
        warnings.warn("Density profile too short to find strata heights")
        return None, None

    z = profile['Z'].values
    density = profile['density'].values

    idx_troughs, _ = find_peaks(-density)
    idx_troughs = idx_troughs[z[idx_troughs] > ground_height]
    if len(idx_troughs) == 0:
        warnings.warn("No local minimum in the density profile: understorey height not found")
        return None, None

    trough = idx_troughs[0]
    understorey_height = float(z[trough])

    idx_peaks, _ = find_peaks(density)
    idx_peaks = idx_peaks[idx_peaks > trough]
    if len(idx_peaks) == 0:
        warnings.warn("No canopy peak above the understorey: canopy base height not found")
        return understorey_height, None

    _, _, left_ips, _ = peak_widths(density, idx_peaks[:1], rel_height=rel_height)
    left = max(left_ips[0], trough)
    canopy_base_height = float(np.interp(left, np.arange(len(z)), z))

    return understorey_height, canopy_base_height


def plot_density_profile(profile, path=None, understorey_height=None,
                         canopy_base_height=None):
    """
    Plot the vegetation density profile.

    Parameters
    ----------
    profile : pandas.DataFrame
        Output of fDensityProfile
    path : str, optional
        Save the figure to this file instead of displaying it
    understorey_height, canopy_base_height : numeric, optional
        Heights drawn as horizontal lines
    """
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(5, 6))
    ax.plot(profile['density'], profile['Z'], color='black')
    if understorey_height is not None:
        ax.axhline(understorey_height, color='tab:green', linestyle='--',
                   label=f"Understorey height ({understorey_height:.1f} m)")
    if canopy_base_height is not None:
        ax.axhline(canopy_base_height, color='tab:brown', linestyle='--',
                   label=f"Canopy base height ({canopy_base_height:.1f} m)")
    if understorey_height is not None or canopy_base_height is not None:
        ax.legend()
    ax.set_title("Vegetation density plot")
    ax.set_xlabel("Density")
    ax.set_ylabel("Z (m)")

    if path is not None:
        fig.savefig(path, dpi=150, bbox_inches='tight')
        plt.close(fig)
    else:
        plt.show()
    return fig
