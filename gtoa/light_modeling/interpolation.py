"""
Barycentric interpolation of node fields onto voxel centers.

One LocationMap serves every field of a run: its sparse interpolation matrix is
built on first use and each further field is a single sparse product. Rows of
voxels outside the mesh are set to NaN, the marker every later stage uses for
"no data".
"""

import numpy as np

from gtoa.utils.exceptions import DimensionMismatchError
from gtoa.utils.logging_config import get_light_logger

logger = get_light_logger(__name__)


def voxelize_field(field, location_map, n_nodes):
    """
    Interpolate a node field onto the located points of `location_map`.

    Args:
        field (np.ndarray): Node values, shape (N,) or (N, C)
        location_map (LocationMap): Result of point location on the voxel centers
        n_nodes (int): Node count of the mesh the field lives on

    Returns:
        np.ndarray: Shape (V,) or (V, C) matching the input rank; unlocated rows are NaN
    """
    field = np.asarray(field)
    if field.ndim not in (1, 2):
        raise DimensionMismatchError(f"node field must be 1-D or 2-D, got {field.ndim}-D",
                                     stage="MeshToVoxelInterpolator")
    if field.shape[0] != n_nodes:
        raise DimensionMismatchError(
            f"field has {field.shape[0]} rows but the mesh has {n_nodes} nodes",
            stage="MeshToVoxelInterpolator")

    dtype = np.result_type(field.dtype, np.float64)
    matrix = location_map.interpolation_matrix(n_nodes)
    values = np.asarray(matrix @ field.astype(dtype, copy=False))
    values[~location_map.located] = np.nan
    return values


def voxelize_fields(fields, location_map, n_nodes):
    """Voxelize several node fields with the same LocationMap, preserving order."""
    logger.info(f"> Interpolating {len(fields)} field(s) onto {location_map.n_located:,} located voxels")
    return [voxelize_field(field, location_map, n_nodes) for field in fields]
