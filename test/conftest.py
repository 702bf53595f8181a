"""
Pytest configuration and shared fixtures
"""

import pytest
import numpy as np
import pandas as pd
import tempfile
from pathlib import Path
import matplotlib
import laspy

matplotlib.use("Agg")


TREE_POSITIONS = [(-3.0, -3.0), (-3.0, 3.0), (3.0, -3.0), (3.0, 3.0)]
STEM_RADIUS = 0.15
STEM_HEIGHT = 12.0
CROWN_CENTER_HEIGHT = 13.0
CROWN_RADIUS = 1.5


def terrain(x, y):
    """Gently sloping terrain of the synthetic plot"""
    return 100 + 0.05 * x + 0.02 * y


def make_forest(seed=42):
    """
    Create a synthetic forest plot as a DataFrame.

    Four stems of 0.3 m diameter with spherical crowns, a shrub layer below 2.5 m
    and a classified ground grid. Z is the height above ground and Zabs the
    elevation.
    """
    rng = np.random.default_rng(seed)
    parts = []

    # Ground grid
    gx, gy = np.meshgrid(np.arange(-20, 20.01, 0.25), np.arange(-20, 20.01, 0.25))
    gx = gx.ravel()
    gy = gy.ravel()
    parts.append(pd.DataFrame({'X': gx, 'Y': gy, 'Z': np.zeros(len(gx)),
                               'Classification': 2, 'Part': 'ground'}))

    # Stems and crowns
    heights = np.arange(0, STEM_HEIGHT + 0.001, 0.02)
    angles = np.linspace(0, 2 * np.pi, 60, endpoint=False)
    for tx, ty in TREE_POSITIONS:
        h, a = np.meshgrid(heights, angles)
        parts.append(pd.DataFrame({
            'X': tx + STEM_RADIUS * np.cos(a.ravel()),
            'Y': ty + STEM_RADIUS * np.sin(a.ravel()),
            'Z': h.ravel(),
            'Classification': 1,
            'Part': 'stem'
        }))

        direction = rng.normal(size=(2000, 3))
        direction /= np.linalg.norm(direction, axis=1)[:, None]
        radius = CROWN_RADIUS * rng.random(2000) ** (1 / 3)
        crown = direction * radius[:, None]
        parts.append(pd.DataFrame({
            'X': tx + crown[:, 0],
            'Y': ty + crown[:, 1],
            'Z': CROWN_CENTER_HEIGHT + crown[:, 2],
            'Classification': 1,
            'Part': 'crown'
        }))

    # Shrubs
    n_shrubs = 5000
    parts.append(pd.DataFrame({
        'X': rng.uniform(-10, 10, n_shrubs),
        'Y': rng.uniform(-10, 10, n_shrubs),
        'Z': rng.uniform(0.2, 2.5, n_shrubs),
        'Classification': 1,
        'Part': 'shrub'
    }))

    forest = pd.concat(parts, ignore_index=True)
    forest['Classification'] = forest['Classification'].astype(np.uint8)
    forest['Zabs'] = forest['Z'] + terrain(forest['X'], forest['Y'])
    return forest


def write_las(path, x, y, z, classification=None, gps_time=None):
    """Write a LAS 1.4 file with millimetre precision"""
    header = laspy.LasHeader(point_format=3, version="1.4")
    header.scales = np.array([0.001, 0.001, 0.001])
    header.offsets = np.floor([np.min(x), np.min(y), np.min(z)])
    las = laspy.LasData(header)
    las.x = x
    las.y = y
    las.z = z
    las.gps_time = gps_time if gps_time is not None else np.zeros(len(x))
    if classification is not None:
        las.classification = classification
    las.write(str(path))
    return Path(path)


@pytest.fixture
def sample_point_cloud():
    """Create a sample point cloud for testing"""
    points = 100
    x = np.random.rand(points) * 40 - 20
    y = np.random.rand(points) * 40 - 20
    z = np.random.rand(points) * 20 + 50

    return x, y, z


@pytest.fixture
def temp_las_file(sample_point_cloud):
    """Create a temporary LAS file without classification"""
    x, y, z = sample_point_cloud

    with tempfile.NamedTemporaryFile(suffix=".las", delete=False) as temp:
        file_path = Path(temp.name)
    write_las(file_path, x, y, z)

    yield file_path

    # Cleanup
    if file_path.exists():
        file_path.unlink()


@pytest.fixture(scope="session")
def forest():
    """Synthetic normalised forest plot"""
    return make_forest()


@pytest.fixture(scope="session")
def forest_las_file(tmp_path_factory, forest):
    """Synthetic forest plot written as a raw (not normalised) LAS file"""
    path = tmp_path_factory.mktemp("forest") / "forest.las"
    return write_las(path, forest['X'].values, forest['Y'].values, forest['Zabs'].values,
                     classification=forest['Classification'].values)


@pytest.fixture
def forest_points(forest):
    """Normalised forest points with the columns used by the metric functions"""
    return forest[['X', 'Y', 'Z', 'Classification']].copy()
