"""
TLSforStructure - Python Package

This package provides tools to quantify vegetation structure for wildlife studies
from a terrestrial laser scanning (TLS) plot.

The package contains the following modules:
- fTLSpretreatment: Reading, clipping, height normalisation and thinning of LAS/LAZ files
- fTreeMetrics: Tree mapping, stem classification, stem inventory and stand metrics
- fVoxelMetrics: Voxel density, gap volume, foliage height diversity and density profile
- fGridMetrics: Cover, canopy height model and rumple index
- fStrataMetrics: Canopy and understorey metrics
- fTLSworkflow: Complete workflow from a raw scan to the plot metrics
"""

from .fTLSpretreatment import fTLSpretreatment
from .fTreeMetrics import fTreeMap, fTreePoints, fStemPoints, fTLSinventory, fStandMetrics
from .fVoxelMetrics import fVoxelDensity, fFHD, fDensityProfile, fStrataHeights
from .fGridMetrics import fGridCover, fCHM, rumple_index
from .fStrataMetrics import fCanopyMetrics, fUnderstoreyMetrics
from .fTLSworkflow import fTLSworkflow

__version__ = "1.0.0"
__all__ = ['fTLSpretreatment', 'fTreeMap', 'fTreePoints', 'fStemPoints', 'fTLSinventory',
           'fStandMetrics', 'fVoxelDensity', 'fFHD', 'fDensityProfile', 'fStrataHeights',
           'fGridCover', 'fCHM', 'rumple_index', 'fCanopyMetrics', 'fUnderstoreyMetrics',
           'fTLSworkflow']
