#!/usr/bin/env python3
"""
HDF5 checkpoints of a GtoA run.

Two blobs per run tag, both self-describing through dataset attributes:

• GFunc_<tag>_VOX.h5 - voxelized Gs, Gd, dc on the active voxels, the good-voxel
  indices and the grid, so a rerun can skip grid building, point location and
  interpolation
• A_<tag>.h5 - the final A-matrix with its channel list, normalizer and grid

Files are written under a temporary name and renamed into place, so a crash
never leaves a half-written checkpoint behind. Any I/O failure surfaces as
CheckpointError chained to the underlying error.
"""

import hashlib
import json
import os
from pathlib import Path

import h5py
import numpy as np

from gtoa.light_modeling.gtoa_config import GtoAFlags
from gtoa.light_modeling.good_voxels import GoodVoxelSet
from gtoa.utils.exceptions import CheckpointError
from gtoa.utils.logging_config import get_light_logger

COMPRESSION = "gzip"
COMPRESSION_LEVEL = 6                   # Balanced compression
FORMAT_VERSION = 1

# Options that change the voxelized fields; a VOX blob is reusable only when these agree
VOX_DEFINING_FLAGS = ('voxmm', 'gthresh', 'keepmeth', 'keepfrac', 'good_voxels', 'crop_to_signal', 'loc_tol')

logger = get_light_logger(__name__)


def _compression(data):
    """gzip options for non-empty arrays; empty datasets are stored contiguous."""
    if np.size(data) == 0:
        return {}
    return {"compression": COMPRESSION, "compression_opts": COMPRESSION_LEVEL}


def vox_checkpoint_path(output_dir, tag):
    return Path(output_dir) / f"GFunc_{tag}_VOX.h5"


def amatrix_path(output_dir, tag):
    return Path(output_dir) / f"A_{tag}.h5"


def _n_columns(field):
    field = np.asarray(field)
    return 1 if field.ndim == 1 else int(field.shape[1])


def input_signature(Gs, Gd, dc, mesh):
    """
    Sizes and a content digest of the node-space inputs of a run.

    Stored in the VOX blob so a resumed run only reuses voxelized fields that
    came from the same mesh and the same Gs, Gd, dc.
    """
    digest = hashlib.sha1()
    for array in (mesh.nodes, mesh.elements, Gs, Gd, dc):
        array = np.ascontiguousarray(array)
        digest.update(f"{array.dtype.str}{array.shape}".encode())
        digest.update(array.tobytes())
    return {
        'n_nodes': int(mesh.n_nodes),
        'n_elements': int(mesh.n_elements),
        'gs_columns': _n_columns(Gs),
        'gd_columns': _n_columns(Gd),
        'dc_columns': _n_columns(dc),
        'digest': digest.hexdigest(),
    }


def _atomic_write(path, write_contents):
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(tmp_path, "w") as h5_file:
            h5_file.attrs["format_version"] = FORMAT_VERSION
            write_contents(h5_file)
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        raise CheckpointError(f"could not write {path}: {e}", stage="checkpoint") from e
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    logger.info(f"💾 Saved {path} ({path.stat().st_size / 1024**2:.2f} MB)")
    return path


def _write_dim(h5_file, dim):
    dataset = h5_file.create_dataset("good_vox", data=dim.good_vox, **_compression(dim.good_vox))
    dataset.attrs["description"] = "Linear (C-order) indices of the active voxels in the regular grid"
    for key, value in dim.to_attrs().items():
        dataset.attrs[key] = value


def _read_dim(h5_file):
    dataset = h5_file["good_vox"]
    attrs = {key: dataset.attrs[key] for key in ('origin', 'pitch', 'shape', 'keepmeth', 'level')}
    if isinstance(attrs['keepmeth'], bytes):
        attrs['keepmeth'] = attrs['keepmeth'].decode()
    return GoodVoxelSet.from_attrs(attrs, dataset[()])


def _read_flags(h5_file):
    return GtoAFlags.from_dict(json.loads(h5_file.attrs["flags"]))


def save_vox_checkpoint(path, Gs, Gd, dc, dim, flags, location_map=None, inputs=None):
    """
    Save the voxelized fields on the active voxel set.

    Args:
        path: Destination file (see `vox_checkpoint_path`)
        Gs, Gd, dc (np.ndarray): Compacted fields, one row per active voxel
        dim (GoodVoxelSet): Active voxel set
        flags (GtoAFlags): Run options, stored for resume checks
        location_map (LocationMap, optional): Full-grid point location, stored for provenance
        inputs (dict, optional): `input_signature` of the node-space inputs, stored for resume checks
    """
    def write_contents(h5_file):
        h5_file.attrs["flags"] = json.dumps(flags.as_dict())
        h5_file.attrs["tag"] = flags.tag
        if inputs is not None:
            h5_file.attrs["inputs"] = json.dumps(inputs)
        for name, data, description in (
                ("Gs", Gs, "Source Green's functions at active voxel centers"),
                ("Gd", Gd, "Detector Green's functions at active voxel centers"),
                ("dc", dc, "Optical property at active voxel centers")):
            data = np.asarray(data)
            dataset = h5_file.create_dataset(name, data=data, **_compression(data))
            dataset.attrs["description"] = description
            dataset.attrs["shape_interpretation"] = "(N_active, N_columns) - rows follow good_vox"
        _write_dim(h5_file, dim)
        if location_map is not None:
            group = h5_file.create_group("location_map")
            group.attrs["description"] = "Containing element (-1 = outside mesh) and barycentric weights per grid voxel"
            group.create_dataset("element", data=location_map.element, **_compression(location_map.element))
            group.create_dataset("weights", data=location_map.weights, **_compression(location_map.weights))

    return _atomic_write(path, write_contents)


def load_vox_checkpoint(path):
    """
    Load a VOX blob.

    Returns:
        dict: Gs, Gd, dc (np.ndarray), dim (GoodVoxelSet), flags (GtoAFlags), and
        location_element, location_weights (np.ndarray or None), inputs (dict or None)
    """
    try:
        with h5py.File(path, "r") as h5_file:
            contents = {
                'Gs': h5_file["Gs"][()],
                'Gd': h5_file["Gd"][()],
                'dc': h5_file["dc"][()],
                'dim': _read_dim(h5_file),
                'flags': _read_flags(h5_file),
                'location_element': None,
                'location_weights': None,
                'inputs': json.loads(h5_file.attrs["inputs"]) if "inputs" in h5_file.attrs else None,
            }
            if "location_map" in h5_file:
                contents['location_element'] = h5_file["location_map/element"][()]
                contents['location_weights'] = h5_file["location_map/weights"][()]
            return contents
    except (OSError, KeyError) as e:
        raise CheckpointError(f"could not read {path}: {e}", stage="checkpoint") from e


def save_amatrix(path, A, dim, sd_pairs, Gsd, flags):
    """Save the A-matrix with everything needed to map it back to the grid."""
    def write_contents(h5_file):
        h5_file.attrs["flags"] = json.dumps(flags.as_dict())
        h5_file.attrs["tag"] = flags.tag
        a_dataset = h5_file.create_dataset("A", data=A, **_compression(A))
        a_dataset.attrs["units"] = "mm³ (sensitivity per unit absorption change)"
        a_dataset.attrs["forward_model"] = flags.forward_model
        a_dataset.attrs["shape_interpretation"] = "(N_channels, N_active) - rows follow sd_pairs, columns follow good_vox"
        pairs_dataset = h5_file.create_dataset("sd_pairs", data=np.asarray(sd_pairs, dtype=np.int64))
        pairs_dataset.attrs["description"] = "Zero-based (source column, detector column) per A-matrix row"
        gsd_dataset = h5_file.create_dataset("Gsd", data=np.asarray(Gsd))
        gsd_dataset.attrs["description"] = "Per-channel normalizer applied by the forward model"
        _write_dim(h5_file, dim)

    return _atomic_write(path, write_contents)


def load_amatrix(path):
    """
    Load an A blob.

    Returns:
        dict: A, sd_pairs, Gsd (np.ndarray), dim (GoodVoxelSet), flags (GtoAFlags)
    """
    try:
        with h5py.File(path, "r") as h5_file:
            return {
                'A': h5_file["A"][()],
                'sd_pairs': h5_file["sd_pairs"][()],
                'Gsd': h5_file["Gsd"][()],
                'dim': _read_dim(h5_file),
                'flags': _read_flags(h5_file),
            }
    except (OSError, KeyError) as e:
        raise CheckpointError(f"could not read {path}: {e}", stage="checkpoint") from e


def vox_checkpoint_matches(saved, flags, inputs):
    """
    True when a loaded VOX blob can stand in for voxelizing the current inputs.

    Args:
        saved (dict): `load_vox_checkpoint` output
        flags (GtoAFlags): Current run options
        inputs (dict): `input_signature` of the current Gs, Gd, dc and mesh
    """
    saved_options = saved['flags'].as_dict()
    current = flags.as_dict()
    mismatched = [key for key in VOX_DEFINING_FLAGS if saved_options[key] != current[key]]
    if mismatched:
        logger.warning(f"VOX checkpoint options differ ({', '.join(mismatched)}) - recomputing")
        return False

    if saved['inputs'] is None:
        logger.warning("VOX checkpoint has no input signature - recomputing")
        return False
    changed = [key for key in inputs if saved['inputs'].get(key) != inputs[key]]
    if changed:
        logger.warning(f"VOX checkpoint was built from different inputs ({', '.join(changed)}) - recomputing")
        return False
    return True
