"""
Stratum metrics of a normalised TLS plot

This module provides functions to compute cover, rumple index, density and gap
volume of the canopy and of the understorey of a plot.
"""

import warnings
from .fGridMetrics import fGridCover, fCHM, rumple_index
from .fVoxelMetrics import fVoxelDensity
from .fTLSpretreatment import clip_rectangle


def fCanopyMetrics(frame, canopy_base_height=11, plot_size=20, cover_res=0.1,
                   chm_res=0.5, voxel_res=0.2):
    """
    Compute canopy metrics.

    Parameters
    ----------
    frame : pandas.DataFrame
        Normalised points of the plot (columns X, Y, Z)
    canopy_base_height : numeric, default 11
        Points above this height in m are canopy points
    plot_size : numeric, default 20
        Side of the square plot in m
    cover_res : numeric, default 0.1
        Resolution in m of the cover grid
    chm_res : numeric, default 0.5
        Resolution in m of the canopy height model
    voxel_res : numeric, default 0.2
        Voxel size in m used for density and gap volume

    Returns
    -------
    tuple
        A tuple of three elements:
        1) A dict with CanopyCover (%), CanopyRumple, CanopyDensity and
           CanopyGapVolume (m³)
        2) The canopy height model of the whole plot (numpy array, None if empty)
        3) Its affine transform (None if empty)
    """
    if len(frame) == 0:
        warnings.warn("NULL (-1) return: no points in the plot")
        return _create_null_return_canopy(), None, None

    # Canopy height model and heterogeneity of the whole plot
    chm, transform = fCHM(frame['X'].values, frame['Y'].values, frame['Z'].values, res=chm_res)
    canrum = rumple_index(chm, chm_res)

    # Canopy points
    ctls = frame[frame['Z'] > canopy_base_height]
    if len(ctls) == 0:
        warnings.warn(f"NULL (-1) return: no canopy points above {canopy_base_height} m")
        metrics = _create_null_return_canopy()
        metrics['CanopyRumple'] = canrum
        return metrics, chm, transform

    X = ctls['X'].values
    Y = ctls['Y'].values
    Z = ctls['Z'].values

    cvr = fGridCover(X, Y, Z, res=cover_res, plot_size=plot_size)
    density = fVoxelDensity(X, Y, Z, res=voxel_res, plot_size=plot_size)

    Canopy_metrics = {
        'CanopyCover': cvr,
        'CanopyRumple': canrum,
        'CanopyDensity': density['density'],
        'CanopyGapVolume': density['gap_volume']
    }
    return Canopy_metrics, chm, transform


def _create_null_return_canopy():
    """Create a null return with -1 values for all canopy metrics."""
    return {
        'CanopyCover': -1,
        'CanopyRumple': -1,
        'CanopyDensity': -1,
        'CanopyGapVolume': -1
    }


def fUnderstoreyMetrics(frame, center, understorey_height=4, plot_size=10,
                        chm_res=0.1, cover_res=0.1, voxel_res=0.1, ground_height=0.1):
    """
    Compute understorey metrics.

    Tree points (TreeID > 0) are removed and only points below the understorey
    height are kept, in a square plot of side plot_size around center.
    The understorey height model and its rumple index include ground points,
    while cover, density and gap volume only use points above ground_height.

    Parameters
    ----------
    frame : pandas.DataFrame
        Normalised points of the plot (columns X, Y, Z and optionally TreeID)
    center : tuple of float
        Centre (x, y) of the understorey plot
    understorey_height : numeric, default 4
        Top of the understorey in m
    plot_size : numeric, default 10
        Side of the square understorey plot in m
    chm_res, cover_res : numeric, default 0.1
        Resolutions in m of the understorey height model and of the cover grid
    voxel_res : numeric, default 0.1
        Voxel size in m used for density and gap volume
    ground_height : numeric, default 0.1
        Ground and litter height in m

    Returns
    -------
    tuple
        A tuple of three elements:
        1) A dict with UnderstoreyRumple, UnderstoreyCover (%),
           UnderstoreyDensity and UnderstoreyGapVolume (m³)
        2) The understorey height model (numpy array, None if empty)
        3) Its affine transform (None if empty)
    """
    utls = frame
    if 'TreeID' in utls.columns:
        utls = utls[utls['TreeID'] == 0]
    utls = utls[utls['Z'] < understorey_height]

    x, y = center
    half = plot_size / 2
    utls = clip_rectangle(utls, x - half, y - half, x + half, y + half)

    if len(utls) == 0:
        warnings.warn("NULL (-1) return: no understorey points")
        return _create_null_return_understorey(), None, None

    # Understorey height model
    chm, transform = fCHM(utls['X'].values, utls['Y'].values, utls['Z'].values, res=chm_res)
    usRI = rumple_index(chm, chm_res)

    # Filter out ground & litter
    utls = utls[utls['Z'] > ground_height]
    if len(utls) == 0:
        warnings.warn(f"NULL (-1) return: no understorey points above {ground_height} m")
        metrics = _create_null_return_understorey()
        metrics['UnderstoreyRumple'] = usRI
        return metrics, chm, transform

    X = utls['X'].values
    Y = utls['Y'].values
    Z = utls['Z'].values

    ucvr = fGridCover(X, Y, Z, res=cover_res, plot_size=plot_size)
    density = fVoxelDensity(X, Y, Z, res=voxel_res, plot_size=plot_size)

    Understorey_metrics = {
        'UnderstoreyRumple': usRI,
        'UnderstoreyCover': ucvr,
        'UnderstoreyDensity': density['density'],
        'UnderstoreyGapVolume': density['gap_volume']
    }
    return Understorey_metrics, chm, transform


def _create_null_return_understorey():
    """Create a null return with -1 values for all understorey metrics."""
    return {
        'UnderstoreyRumple': -1,
        'UnderstoreyCover': -1,
        'UnderstoreyDensity': -1,
        'UnderstoreyGapVolume': -1
    }
