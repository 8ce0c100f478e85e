#!/usr/bin/env python3
"""
Tests for good-voxel retention policies and active-set compaction.
"""

import numpy as np
import pytest

from gtoa.light_modeling.good_voxels import GoodVoxelSet, combined_sensitivity, make_good_voxels
from gtoa.light_modeling.voxel_grid import VoxelGrid
from gtoa.utils.exceptions import DimensionMismatchError

GRID = VoxelGrid(origin=(0.0, 0.0, 0.0), pitch=1.0, shape=(2, 2, 2))


def voxelized_fields():
    """Eight voxels: sensitivity S = 0..5 on the first six, last two outside the mesh."""
    Gs = np.array([0.0, 1.0, 2.0, 3.0, 4.0, 5.0, np.nan, np.nan])[:, np.newaxis]
    Gd = np.ones((8, 1))
    Gd[6:] = np.nan
    dc = np.ones(8)
    dc[6:] = np.nan
    return Gs, Gd, dc


def test_zero_threshold_keeps_every_located_voxel(make_flags):
    Gs, Gd, dc = voxelized_fields()
    Gs_c, Gd_c, dc_c, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=0.0))

    np.testing.assert_array_equal(dim.good_vox, np.arange(6))
    assert Gs_c.shape == (6, 1) and Gd_c.shape == (6, 1) and dc_c.shape == (6,)


def test_threshold_above_peak_keeps_nothing(make_flags):
    Gs, Gd, dc = voxelized_fields()
    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=1.5))
    assert dim.is_empty


def test_glevel_is_relative_to_peak(make_flags):
    Gs, Gd, dc = voxelized_fields()
    Gs_c, _, _, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=0.5))

    np.testing.assert_array_equal(dim.good_vox, [3, 4, 5])
    assert dim.level == pytest.approx(2.5)
    np.testing.assert_array_equal(Gs_c[:, 0], [3.0, 4.0, 5.0])


def test_glevel_with_infinite_sensitivity(make_flags):
    Gs, Gd, dc = voxelized_fields()
    Gs[5] = np.inf

    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=0.0))
    np.testing.assert_array_equal(dim.good_vox, np.arange(6))

    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=0.5))
    np.testing.assert_array_equal(dim.good_vox, [2, 3, 4, 5])
    assert dim.level == pytest.approx(2.0)


def test_gabsolute_policy(make_flags):
    Gs, Gd, dc = voxelized_fields()
    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(keepmeth="gabsolute", gthresh=3.5))
    np.testing.assert_array_equal(dim.good_vox, [4, 5])
    assert dim.keepmeth == "gabsolute"


def test_topfrac_policy(make_flags):
    Gs, Gd, dc = voxelized_fields()
    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(keepmeth="topfrac", keepfrac=0.5))
    np.testing.assert_array_equal(dim.good_vox, [3, 4, 5])
    assert dim.level == pytest.approx(3.0)


def test_policy_switched_off_keeps_located_voxels(make_flags):
    Gs, Gd, dc = voxelized_fields()
    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(good_voxels=False, gthresh=10.0))
    np.testing.assert_array_equal(dim.good_vox, np.arange(6))
    assert dim.keepmeth == "all"


def test_sentinel_in_any_field_excludes_voxel(make_flags):
    Gs, Gd, dc = voxelized_fields()
    dc[5] = np.nan
    *_, dim = make_good_voxels(Gs, Gd, dc, GRID, make_flags(gthresh=0.0))
    assert 5 not in dim.good_vox


def test_combined_sensitivity_uses_peak_columns():
    Gs = np.array([[1.0, -3.0], [2.0, 0.5]])
    Gd = np.array([[2.0, 1.0, 0.0], [-1.0, 0.0, 0.0]])
    np.testing.assert_allclose(combined_sensitivity(Gs, Gd), [6.0, 2.0])


def test_row_count_must_match_grid(make_flags):
    with pytest.raises(DimensionMismatchError):
        make_good_voxels(np.ones((5, 1)), np.ones((8, 1)), np.ones(8), GRID, make_flags())


def test_scatter_and_volume():
    dim = GoodVoxelSet(GRID, [1, 6], "glevel", 0.0)
    full = dim.scatter(np.array([10.0, 20.0]))

    assert full.shape == (8,)
    assert full[1] == 10.0 and full[6] == 20.0
    assert np.isnan(full[[0, 2, 3, 4, 5, 7]]).all()

    volume = dim.to_volume(np.array([10.0, 20.0]), fill=0.0)
    assert volume.shape == (2, 2, 2)
    assert volume[tuple(GRID.subscripts(6))] == 20.0
    np.testing.assert_array_equal(dim.compact(full), [10.0, 20.0])
    np.testing.assert_allclose(dim.world_coordinates(), GRID.flat_centers()[[1, 6]])


def test_good_vox_must_be_sorted_and_in_grid():
    with pytest.raises(DimensionMismatchError):
        GoodVoxelSet(GRID, [3, 1], "glevel", 0.0)
    with pytest.raises(DimensionMismatchError):
        GoodVoxelSet(GRID, [8], "glevel", 0.0)
