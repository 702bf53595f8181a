"""
Tests for fTLSpretreatment module
"""

import pytest
import numpy as np
import pandas as pd
import laspy
from tlsforstructure.fTLSpretreatment import (fTLSpretreatment, read_tls, las_to_frame,
                                              frame_to_las, plot_center, clip_rectangle,
                                              classify_ground, normalize_height, voxel_sample)
from conftest import TREE_POSITIONS


def test_plot_center_is_median():
    x, y = plot_center([0, 1, 2, 100], [5, 5, 6, 7])
    assert x == 1.5
    assert y == 5.5


def test_clip_rectangle_frame_includes_bounds():
    frame = pd.DataFrame({'X': [0, 1, 2, 3], 'Y': [0, 1, 2, 3], 'Z': [1, 1, 1, 1]})
    clipped = clip_rectangle(frame, 1, 1, 2, 2)
    assert list(clipped['X']) == [1, 2]
    assert clipped.index.tolist() == [0, 1]


def test_clip_rectangle_las(temp_las_file):
    las = read_tls(temp_las_file)
    clipped = clip_rectangle(las, -5, -5, 5, 5)

    assert isinstance(clipped, laspy.LasData)
    assert np.all(np.abs(clipped.x) <= 5)
    assert np.all(np.abs(clipped.y) <= 5)
    # The source point cloud is unchanged
    assert len(las.points) == 100


def test_read_tls_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_tls(tmp_path / "missing.las")


def test_classify_ground_flat():
    rng = np.random.default_rng(0)
    gx, gy = np.meshgrid(np.arange(0, 5, 0.1), np.arange(0, 5, 0.1))
    ground_z = rng.uniform(0, 0.05, gx.size)
    veg_x = rng.uniform(0, 4.9, 200)
    veg_y = rng.uniform(0, 4.9, 200)
    veg_z = rng.uniform(1, 3, 200)

    X = np.concatenate([gx.ravel(), veg_x])
    Y = np.concatenate([gy.ravel(), veg_y])
    Z = np.concatenate([ground_z, veg_z])
    ground_mask = classify_ground(X, Y, Z, res=0.5, threshold=0.15)

    assert np.all(ground_mask[:gx.size])
    assert not np.any(ground_mask[gx.size:])


def test_normalize_height_on_slope():
    gx, gy = np.meshgrid(np.arange(0, 10.01, 0.5), np.arange(0, 10.01, 0.5))
    gx = gx.ravel()
    gy = gy.ravel()
    gz = 5 + 0.1 * gx

    px = np.array([2.3, 7.7, 12.0])  # last point is outside the ground hull
    py = np.array([4.1, 8.2, 5.0])
    pz = 5 + 0.1 * px + 2

    X = np.concatenate([gx, px])
    Y = np.concatenate([gy, py])
    Z = np.concatenate([gz, pz])
    ground_mask = np.concatenate([np.ones(len(gx), bool), np.zeros(3, bool)])

    height = normalize_height(X, Y, Z, ground_mask)
    assert np.allclose(height[:len(gx)], 0, atol=1e-9)
    assert np.allclose(height[len(gx):len(gx) + 2], 2, atol=1e-9)
    # Nearest ground point (x = 10) is used outside the hull
    assert height[-1] == pytest.approx(2.2)


def test_normalize_height_without_ground():
    with pytest.raises(ValueError):
        normalize_height([0, 1], [0, 1], [0, 1], [False, False])


def test_voxel_sample_keeps_one_point_per_voxel():
    X = np.array([0.001, 0.002, 0.003, 0.521, 0.525])
    Y = np.zeros(5)
    Z = np.zeros(5)
    keep_mask = voxel_sample(X, Y, Z, res=0.01, seed=1)

    assert keep_mask.sum() == 2
    assert keep_mask[:3].sum() == 1
    assert keep_mask[3:].sum() == 1


def test_fTLSpretreatment_basic(forest_las_file):
    """Test basic fTLSpretreatment functionality"""
    las = fTLSpretreatment(chunk=str(forest_las_file), center=(0, 0))

    assert las is not None, "fTLSpretreatment should return a LAS object"
    assert len(las.points) > 0, "LAS should contain points"
    assert 'Zref' in las.point_format.dimension_names

    assert np.all(np.abs(las.x) <= 10)
    assert np.all(np.abs(las.y) <= 10)

    # Ground is at 0 after normalisation, stems reach their height
    ground = np.asarray(las.classification) == 2
    assert np.allclose(np.asarray(las.z)[ground], 0, atol=0.01)
    assert np.max(las.z) == pytest.approx(14.5, abs=0.1)
    assert np.min(las.Zref) > 99


def test_fTLSpretreatment_drop_ground(forest_las_file):
    las = fTLSpretreatment(chunk=str(forest_las_file), center=(0, 0), keep_ground=False)

    assert las is not None
    assert not np.any(np.asarray(las.classification) == 2)


def test_fTLSpretreatment_classifies_unclassified_cloud(temp_las_file):
    """Ground is computed when the point cloud has no ground class"""
    with pytest.warns(UserWarning, match="ground classification"):
        las = fTLSpretreatment(chunk=str(temp_las_file))

    assert las is not None
    assert np.any(np.asarray(las.classification) == 2)
    assert np.all(np.asarray(las.z) >= -1e-6)


def test_fTLSpretreatment_empty_plot(temp_las_file):
    with pytest.warns(UserWarning, match="No points"):
        las = fTLSpretreatment(chunk=str(temp_las_file), center=(1000, 1000))
    assert las is None


def test_fTLSpretreatment_plot_larger_than_clip(temp_las_file):
    with pytest.raises(ValueError):
        fTLSpretreatment(chunk=str(temp_las_file), clip_size=10, plot_size=20)


def test_las_frame_conversion_keeps_segmentation(forest_points, tmp_path):
    frame = forest_points.iloc[:1000].copy()
    frame['TreeID'] = np.arange(1000, dtype=np.uint32) % 4
    frame['Stem'] = frame['TreeID'] > 1

    path = tmp_path / "segmented.las"
    frame_to_las(frame).write(str(path))
    result = las_to_frame(laspy.read(str(path)))

    assert np.array_equal(result['TreeID'].values, frame['TreeID'].values)
    assert np.array_equal(result['Stem'].values, frame['Stem'].values)
    assert np.allclose(result['X'].values, frame['X'].values, atol=0.001)


def test_frame_to_las_copies_scales_and_offsets():
    header = laspy.LasHeader(point_format=6, version="1.4")
    header.scales = np.array([0.01, 0.01, 0.01])
    header.offsets = np.array([100.0, 200.0, 0.0])
    frame = pd.DataFrame({'X': [100.5, 101.0], 'Y': [200.5, 201.0], 'Z': [1.0, 2.0]})

    las = frame_to_las(frame, header=header)

    assert np.allclose(las.header.scales, [0.01, 0.01, 0.01])
    assert np.allclose(las.header.offsets, [100.0, 200.0, 0.0])
    assert np.allclose(las.x, frame['X'].values)


def test_main_cli(forest_las_file, tmp_path, monkeypatch):
    from tlsforstructure.fTLSpretreatment import main

    output = tmp_path / "out" / "plot.las"
    monkeypatch.setattr("sys.argv", ["tls-pretreatment", "-i", str(forest_las_file),
                                     "-o", str(output), "--center", "0", "0",
                                     "--plot-size", "10", "--thin", "0.05"])
    main()

    las = laspy.read(str(output))
    assert len(las.points) > 0
    assert np.all(np.abs(las.x) <= 5)
    tx, ty = TREE_POSITIONS[0]
    assert np.any(np.hypot(np.asarray(las.x) - tx, np.asarray(las.y) - ty) < 0.2)


def test_main_cli_missing_input(tmp_path, monkeypatch):
    from tlsforstructure.fTLSpretreatment import main

    monkeypatch.setattr("sys.argv", ["tls-pretreatment", "-i", str(tmp_path / "missing.las"),
                                     "-o", str(tmp_path / "out.las")])
    with pytest.raises(SystemExit) as exc:
        main()
    assert exc.value.code == 1


if __name__ == "__main__":
    pytest.main([__file__])
