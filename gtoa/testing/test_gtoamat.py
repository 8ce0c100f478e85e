#!/usr/bin/env python3
"""
End-to-end tests of the orchestrator, checkpoints and resume.
"""

import h5py
import numpy as np
import pytest

from gtoa.light_modeling.checkpoint import (
    _atomic_write,
    amatrix_path,
    load_amatrix,
    load_vox_checkpoint,
    vox_checkpoint_path,
)
from gtoa.light_modeling.gtoamat import gtoamat, main
from gtoa.light_modeling.mesh_locator import ElementIndex, locate_points
from gtoa.utils.exceptions import CheckpointError, ConfigurationError, DimensionMismatchError, GeometryError

from .meshes import UNIT_TET_NODES

NODE_VALUES = np.array([1.0, 2.0, 3.0, 4.0])


def test_unit_tetrahedron_end_to_end(unit_tet, make_flags, tmp_path):
    flags = make_flags(tag="unit_tet", voxmm=0.5)
    A, dim, Gsd = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), flags)

    assert dim.grid.shape == (2, 2, 2)
    np.testing.assert_array_equal(dim.good_vox, [0])
    np.testing.assert_allclose(dim.world_coordinates(), [[0.25, 0.25, 0.25]])
    assert A.shape == (1, dim.n_active)
    assert A[0, 0] == pytest.approx(2.5 * 2.5 * 1.0 * 0.5 ** 3)
    np.testing.assert_array_equal(Gsd, [1.0])

    outside = locate_points(ElementIndex.build(unit_tet), [[0.9, 0.9, 0.9]])
    assert outside.element[0] == -1

    assert vox_checkpoint_path(tmp_path, "unit_tet").exists()
    assert amatrix_path(tmp_path, "unit_tet").exists()


def test_checkpoints_round_trip(unit_tet, make_flags, tmp_path):
    flags = make_flags(tag="blobs", voxmm=0.5)
    A, dim, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), flags)

    saved = load_amatrix(amatrix_path(tmp_path, "blobs"))
    np.testing.assert_array_equal(saved['A'], A)
    np.testing.assert_array_equal(saved['sd_pairs'], [[0, 0]])
    np.testing.assert_array_equal(saved['dim'].good_vox, dim.good_vox)
    assert saved['dim'].grid == dim.grid
    assert saved['flags'].tag == "blobs"

    vox = load_vox_checkpoint(vox_checkpoint_path(tmp_path, "blobs"))
    np.testing.assert_allclose(vox['Gs'], [2.5])
    assert vox['location_element'].shape == (8,)
    assert vox['location_weights'].shape == (8, 4)


def test_resume_skips_voxelization(unit_tet, make_flags, monkeypatch):
    first, _, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="resume", voxmm=0.5))

    def fail(*args, **kwargs):
        raise AssertionError("mesh was indexed again")
    monkeypatch.setattr(ElementIndex, "build", fail)

    resumed, dim, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4),
                              make_flags(tag="resume", voxmm=0.5, resume=True))
    np.testing.assert_array_equal(resumed, first)
    assert dim.n_active == 1


def test_resume_rejects_fields_that_disagree_with_mesh(unit_tet, make_flags, tmp_path):
    first, _, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="stale", voxmm=0.5))

    with pytest.raises(DimensionMismatchError):
        gtoamat(np.ones((9, 2)), np.ones((9, 3)), unit_tet, np.ones(9),
                make_flags(tag="stale", voxmm=0.5, resume=True))
    np.testing.assert_array_equal(load_amatrix(amatrix_path(tmp_path, "stale"))['A'], first)


def test_resume_with_changed_channels_recomputes(unit_tet, make_flags):
    gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="channels", voxmm=0.5))

    Gs = np.column_stack((NODE_VALUES, 2 * NODE_VALUES))
    A, _, _ = gtoamat(Gs, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="channels", voxmm=0.5, resume=True))
    assert A.shape == (2, 1)
    np.testing.assert_allclose(A[:, 0], [0.78125, 1.5625])


def test_resume_with_changed_field_values_recomputes(unit_tet, make_flags, tmp_path):
    first, _, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="values", voxmm=0.5))
    resumed, _, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, 2 * np.ones(4),
                            make_flags(tag="values", voxmm=0.5, resume=True))
    np.testing.assert_allclose(resumed, 2 * first)
    np.testing.assert_allclose(load_vox_checkpoint(vox_checkpoint_path(tmp_path, "values"))['dc'], [2.0])


def test_resume_with_changed_options_recomputes(unit_tet, make_flags):
    gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="changed", voxmm=0.5))
    _, dim, _ = gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4),
                        make_flags(tag="changed", voxmm=0.25, resume=True))
    assert dim.grid.shape == (4, 4, 4)


def test_flat_mesh_end_to_end(flat_square, make_flags):
    A, dim, _ = gtoamat(np.ones(4), np.ones(4), flat_square, np.ones(4),
                        make_flags(voxmm=0.5, save_checkpoints=False))
    assert dim.grid.shape == (2, 2, 1)
    assert A.shape == (1, 4)
    np.testing.assert_allclose(A, 0.125)


def test_multi_channel_run(cube, make_flags):
    rng = np.random.default_rng(0)
    Gs = rng.uniform(0.5, 1.0, (cube.n_nodes, 3))
    Gd = rng.uniform(0.5, 1.0, (cube.n_nodes, 2))
    A, dim, _ = gtoamat(Gs, Gd, cube, np.ones(cube.n_nodes), make_flags(voxmm=0.3, n_workers=2, chunk_size=16))

    assert A.shape == (6, dim.n_active)
    assert dim.n_active == dim.grid.n_voxels
    assert np.all(A > 0)


def test_empty_active_set_writes_no_amatrix(unit_tet, make_flags, tmp_path):
    with pytest.raises(ConfigurationError):
        gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(tag="empty", voxmm=0.5, gthresh=2.0))
    assert not amatrix_path(tmp_path, "empty").exists()


@pytest.mark.parametrize("options", [
    {'tag': None},
    {'tag': "bad tag/with slash"},
    {'voxmm': -1.0},
    {'keepmeth': "bogus"},
    {'forward_model': "born"},
])
def test_invalid_configuration(unit_tet, make_flags, options):
    with pytest.raises(ConfigurationError):
        gtoamat(NODE_VALUES, NODE_VALUES, unit_tet, np.ones(4), make_flags(**options))


def test_mesh_must_be_a_mesh(make_flags):
    with pytest.raises(GeometryError):
        gtoamat(NODE_VALUES, NODE_VALUES, UNIT_TET_NODES, np.ones(4), make_flags())


def test_main_runs_from_input_file(tmp_path):
    input_path = tmp_path / "phantom.h5"
    with h5py.File(input_path, "w") as h5_file:
        h5_file.create_dataset("nodes", data=UNIT_TET_NODES)
        h5_file.create_dataset("elements", data=np.array([[1.0, 2.0, 3.0, 4.0]]))
        h5_file.create_dataset("Gs", data=NODE_VALUES)
        h5_file.create_dataset("Gd", data=NODE_VALUES)
        h5_file.create_dataset("dc", data=np.ones(4))
        h5_file.attrs["index_base"] = 1
        h5_file.attrs["voxmm"] = 0.5

    assert main([str(input_path)]) == 0
    saved = load_amatrix(tmp_path / "A_phantom.h5")
    assert saved['A'].shape == (1, 1)
    assert saved['flags'].voxmm == 0.5

    assert main([str(tmp_path / "missing.h5")]) == 1


def test_main_options_override_file_attributes(tmp_path):
    input_path = tmp_path / "phantom.h5"
    with h5py.File(input_path, "w") as h5_file:
        h5_file.create_dataset("nodes", data=UNIT_TET_NODES)
        h5_file.create_dataset("elements", data=np.array([[0, 1, 2, 3]]))
        h5_file.create_dataset("Gs", data=NODE_VALUES)
        h5_file.create_dataset("Gd", data=NODE_VALUES)
        h5_file.create_dataset("dc", data=np.ones(4))
        h5_file.attrs["voxmm"] = 0.5

    assert main([str(input_path), "fine", "--voxmm", "0.25", "--gthresh", "0"]) == 0
    saved = load_amatrix(tmp_path / "A_fine.h5")
    assert saved['flags'].voxmm == 0.25
    assert saved['dim'].grid.shape == (4, 4, 4)


def test_main_usage_errors():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2

    with pytest.raises(SystemExit) as excinfo:
        main(["input.h5", "--keepmeth", "bogus"])
    assert excinfo.value.code == 2


def test_failed_checkpoint_write_leaves_no_temp_file(tmp_path):
    path = tmp_path / "GFunc_broken_VOX.h5"

    def write_contents(h5_file):
        h5_file.create_dataset("Gs", data=np.ones(3))
        raise ValueError("unsupported field")

    with pytest.raises(CheckpointError):
        _atomic_write(path, write_contents)
    assert not path.exists()
    assert list(tmp_path.iterdir()) == []
