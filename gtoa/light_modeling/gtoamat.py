#!/usr/bin/env python3
"""
Green's functions on a mesh -> A-matrix on a regular voxel grid.

Runs the full chain for one tagged run:

    1. Voxel grid over the mesh bounding box      (voxel_grid.build_voxel_grid)
    2. Point location of every voxel center       (mesh_locator.locate_voxels)
    3. Interpolation of Gs, Gd and dc             (interpolation.voxelize_fields)
    4. Good-voxel selection and compaction        (good_voxels.make_good_voxels)
    5. VOX checkpoint                             (checkpoint.save_vox_checkpoint)
    6. A-matrix assembly                          (amatrix.g2a)
    7. A checkpoint                               (checkpoint.save_amatrix)

With `flags.resume` and a VOX checkpoint on disk that was built with the same
voxelization options from the same mesh and node fields, steps 1-5 are replaced
by loading the checkpoint. Node fields are checked against the mesh either way.

USAGE:
    A, dim, Gsd = gtoamat(Gs, Gd, Mesh(nodes, elements), dc, GtoAFlags(tag="run01"))

or from the command line with an input HDF5 file holding datasets nodes,
elements, Gs, Gd, dc (optional sd_pairs, gsd) and any flag as a file attribute:
    python -m gtoa.light_modeling.gtoamat input.h5 [tag] [--voxmm 2 --gthresh 1e-3 ...]
"""

import argparse
import sys
import time
from pathlib import Path

import h5py
import numpy as np

from gtoa.light_modeling.amatrix import all_sd_pairs, g2a
from gtoa.light_modeling.checkpoint import (
    amatrix_path,
    input_signature,
    load_vox_checkpoint,
    save_amatrix,
    save_vox_checkpoint,
    vox_checkpoint_matches,
    vox_checkpoint_path,
)
from gtoa.light_modeling.good_voxels import make_good_voxels
from gtoa.light_modeling.gtoa_config import FORWARD_MODELS, KEEP_METHODS, GtoAFlags
from gtoa.light_modeling.interpolation import voxelize_fields
from gtoa.light_modeling.mesh import Mesh
from gtoa.light_modeling.mesh_locator import ElementIndex, locate_voxels
from gtoa.light_modeling.voxel_grid import build_voxel_grid
from gtoa.utils.exceptions import DimensionMismatchError, GeometryError, GtoAError
from gtoa.utils.logging_config import GtoALogger, get_light_logger
from gtoa.utils.resources import (
    check_available_memory,
    estimate_amatrix_bytes,
    estimate_voxelization_bytes,
    log_system_resources,
)

logger = get_light_logger(__name__)


def _n_columns(field):
    field = np.asarray(field)
    return 1 if field.ndim == 1 else field.shape[1]


def _check_node_fields(Gs, Gd, dc, mesh):
    for name, field in (("Gs", Gs), ("Gd", Gd), ("dc", dc)):
        field = np.asarray(field)
        if field.ndim not in (1, 2) or field.shape[0] != mesh.n_nodes:
            raise DimensionMismatchError(
                f"{name} has shape {field.shape}, expected {mesh.n_nodes} rows (mesh nodes)", stage="gtoamat")


def voxelize_run(Gs, Gd, mesh, dc, flags):
    """
    Grid, locate and interpolate, then keep the good voxels.

    Returns:
        tuple: (Gs, Gd, dc, dim, location_map) with fields compacted to the active voxels
    """
    logger.info("> Building voxel grid")
    reference = np.column_stack((np.asarray(Gs), np.asarray(Gd))) if flags.crop_to_signal else None
    grid = build_voxel_grid(mesh.nodes, reference, flags)

    if flags.check_memory:
        required = estimate_voxelization_bytes(grid.n_voxels, _n_columns(Gs), _n_columns(Gd), _n_columns(dc))
        check_available_memory(required, stage="MeshToVoxelInterpolator")

    logger.info("> Indexing mesh elements")
    index = ElementIndex.build(mesh)
    location_map = locate_voxels(index, grid, flags)
    if location_map.n_located == 0:
        logger.warning("No voxel center lies inside the mesh")

    Gs_vox, Gd_vox, dc_vox = voxelize_fields([Gs, Gd, dc], location_map, mesh.n_nodes)

    Gs_vox, Gd_vox, dc_vox, dim = make_good_voxels(Gs_vox, Gd_vox, dc_vox, grid, flags)
    return Gs_vox, Gd_vox, dc_vox, dim, location_map


def gtoamat(Gs, Gd, mesh, dc, flags, sd_pairs=None, gsd=None):
    """
    Compute the A-matrix of a tagged run.

    Args:
        Gs (np.ndarray): Source Green's functions on mesh nodes, shape (N, Ns)
        Gd (np.ndarray): Detector Green's functions on mesh nodes, shape (N, Nd)
        mesh (Mesh): Tissue mesh the fields live on
        dc (np.ndarray): Optical property on mesh nodes, shape (N,) or (N, 1)
        flags (GtoAFlags): Run options; validated here
        sd_pairs (np.ndarray, optional): (M, 2) zero-based channel list, all pairs when omitted
        gsd (np.ndarray, optional): Source-detector fields for the 'rytov' forward model

    Returns:
        tuple: (A (M, Nactive), dim (GoodVoxelSet), Gsd (M,))
    """
    flags.validate()
    if not isinstance(mesh, Mesh):
        raise GeometryError(f"mesh must be a Mesh instance, got {type(mesh).__name__}", stage="gtoamat")

    GtoALogger.log_run_start(flags.tag, flags.as_dict())
    start_time = time.time()

    _check_node_fields(Gs, Gd, dc, mesh)
    inputs = input_signature(Gs, Gd, dc, mesh)

    vox_path = vox_checkpoint_path(flags.output_dir, flags.tag)
    voxelized = None
    if flags.resume and vox_path.exists():
        saved = load_vox_checkpoint(vox_path)
        if vox_checkpoint_matches(saved, flags, inputs):
            logger.info(f"> Resuming from {vox_path}")
            voxelized = (saved['Gs'], saved['Gd'], saved['dc'], saved['dim'])
    elif flags.resume:
        logger.info(f"No VOX checkpoint at {vox_path} - computing from scratch")

    if voxelized is None:
        Gs_vox, Gd_vox, dc_vox, dim, location_map = voxelize_run(Gs, Gd, mesh, dc, flags)
        if flags.save_checkpoints:
            save_vox_checkpoint(vox_path, Gs_vox, Gd_vox, dc_vox, dim, flags, location_map, inputs)
        voxelized = (Gs_vox, Gd_vox, dc_vox, dim)

    Gs_vox, Gd_vox, dc_vox, dim = voxelized

    n_channels = all_sd_pairs(_n_columns(Gs_vox), _n_columns(Gd_vox)).shape[0] if sd_pairs is None \
        else np.asarray(sd_pairs).shape[0]
    if flags.check_memory:
        check_available_memory(estimate_amatrix_bytes(n_channels, dim.n_active), stage="AMatrixAssembler")

    A, Gsd = g2a(Gs_vox, Gd_vox, dc_vox, dim, flags, sd_pairs=sd_pairs, gsd=gsd)

    if flags.save_checkpoints:
        if sd_pairs is None:
            sd_pairs = all_sd_pairs(_n_columns(Gs_vox), _n_columns(Gd_vox))
        save_amatrix(amatrix_path(flags.output_dir, flags.tag), A, dim, sd_pairs, Gsd, flags)

    GtoALogger.log_run_end(flags.tag, {
        'channels': A.shape[0],
        'active_voxels': A.shape[1],
        'grid': dim.grid.shape,
        'elapsed_s': round(time.time() - start_time, 2),
    })
    return A, dim, Gsd


def _attr_value(value):
    if isinstance(value, bytes):
        return value.decode()
    return value.item() if hasattr(value, 'item') else value


def load_run_inputs(input_path):
    """
    Read mesh, fields and flag overrides from an input HDF5 file.

    Returns:
        dict: mesh, Gs, Gd, dc, sd_pairs, gsd, options
    """
    known_flags = set(GtoAFlags().as_dict())
    with h5py.File(input_path, "r") as h5_file:
        index_base = int(h5_file.attrs.get("index_base", 0))
        return {
            'mesh': Mesh(h5_file["nodes"][()], h5_file["elements"][()], index_base=index_base),
            'Gs': h5_file["Gs"][()],
            'Gd': h5_file["Gd"][()],
            'dc': h5_file["dc"][()],
            'sd_pairs': h5_file["sd_pairs"][()] if "sd_pairs" in h5_file else None,
            'gsd': h5_file["gsd"][()] if "gsd" in h5_file else None,
            'options': {key: _attr_value(h5_file.attrs[key]) for key in known_flags if key in h5_file.attrs},
        }


def build_parser():
    parser = argparse.ArgumentParser(description="Build the A-matrix of a tagged run from an input HDF5 file")
    parser.add_argument('input', help='HDF5 file with datasets nodes, elements, Gs, Gd, dc (optional sd_pairs, gsd)')
    parser.add_argument('tag', nargs='?', help='Run tag (default: input file name without extension)')
    parser.add_argument('--voxmm', type=float, help='Voxel pitch [mm]')
    parser.add_argument('--gthresh', type=float, help='Good-voxel sensitivity level')
    parser.add_argument('--keepmeth', choices=KEEP_METHODS, help='Good-voxel retention policy')
    parser.add_argument('--keepfrac', type=float, help="Fraction of located voxels kept by 'topfrac'")
    parser.add_argument('--forward-model', dest='forward_model', choices=FORWARD_MODELS)
    parser.add_argument('--n-workers', dest='n_workers', type=int, help='Threads for point location')
    parser.add_argument('--output-dir', dest='output_dir', help='Where checkpoints are written (default: next to input)')
    parser.add_argument('--resume', action='store_true', default=None,
                        help='Reuse GFunc_<tag>_VOX.h5 when it matches this run')
    return parser


def main(argv=None):
    """
    Run the pipeline on an input HDF5 file; returns a process exit code.

    Flags come from the file attributes, overridden by command-line options.
    """
    args = build_parser().parse_args(argv)
    input_path = Path(args.input)
    GtoALogger.setup_logging()
    log_system_resources()

    try:
        inputs = load_run_inputs(input_path)
    except (OSError, KeyError, GtoAError) as e:
        logger.error(f"Cannot read input file {input_path}: {e}")
        return 1

    options = {'tag': input_path.stem, 'output_dir': str(input_path.parent)}
    options.update(inputs['options'])
    options.update({key: value for key, value in vars(args).items() if key != 'input' and value is not None})

    try:
        flags = GtoAFlags.from_dict(options)
        A, _, _ = gtoamat(inputs['Gs'], inputs['Gd'], inputs['mesh'], inputs['dc'], flags,
                            sd_pairs=inputs['sd_pairs'], gsd=inputs['gsd'])
    except GtoAError as e:
        logger.error(f"❌ GtoA run failed: {e}")
        return 1

    logger.info(f"✅ A-matrix {A.shape[0]}x{A.shape[1]} written to {amatrix_path(flags.output_dir, flags.tag)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
