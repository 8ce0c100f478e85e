#!/usr/bin/env python3
"""
Regular voxel grid construction over a tissue mesh.

The grid is the axis-aligned bounding box of the mesh nodes divided into whole
voxels of pitch `voxmm`. Voxel centers are laid out symmetrically about the
box center, so an axis with zero extent (a flat mesh) gets exactly one voxel
whose center lies on the mesh plane.

Index conventions:
• ijk = (i, j, k) integer voxel subscripts along x, y, z
• linear index = C-order ravel of ijk over shape (nx, ny, nz) (k varies fastest)
• world = origin + voxmm * ijk, with `origin` the center of voxel (0, 0, 0)
"""

import numpy as np

from gtoa.utils.exceptions import ConfigurationError, GeometryError
from gtoa.utils.logging_config import get_light_logger

EXTENT_ROUNDING_TOL = 1e-9               # Extent/pitch ratios within this of an integer are not rounded up

logger = get_light_logger(__name__)


class VoxelGrid:
    """
    Regular 3D lattice of voxel centers.

    Attributes:
        origin (np.ndarray): World coordinate [mm] of the center of voxel (0, 0, 0), shape (3,)
        pitch (float): Voxel edge length [mm]
        shape (tuple): Voxel counts (nx, ny, nz)
    """

    def __init__(self, origin, pitch, shape):
        self.origin = np.asarray(origin, dtype=np.float64).reshape(3)
        self.pitch = float(pitch)
        self.shape = tuple(int(n) for n in shape)
        if self.pitch <= 0:
            raise ConfigurationError(f"voxel pitch must be positive, got {pitch}", stage="VoxelGridBuilder")
        if len(self.shape) != 3 or min(self.shape) < 1:
            raise GeometryError(f"voxel grid shape must be 3 positive counts, got {shape}", stage="VoxelGridBuilder")

    @property
    def n_voxels(self):
        return int(np.prod(self.shape))

    @property
    def voxel_volume(self):
        return self.pitch ** 3

    @property
    def xv(self):
        return self.origin[0] + self.pitch * np.arange(self.shape[0])

    @property
    def yv(self):
        return self.origin[1] + self.pitch * np.arange(self.shape[1])

    @property
    def zv(self):
        return self.origin[2] + self.pitch * np.arange(self.shape[2])

    def index_to_world(self, ijk):
        """Voxel subscripts (..., 3) -> world coordinates (..., 3) [mm]."""
        return self.origin + self.pitch * np.asarray(ijk, dtype=np.float64)

    def world_to_index(self, xyz):
        """World coordinates (..., 3) -> fractional voxel subscripts (..., 3)."""
        return (np.asarray(xyz, dtype=np.float64) - self.origin) / self.pitch

    def nearest_index(self, xyz):
        """World coordinates -> nearest integer subscripts (not range-checked)."""
        return np.rint(self.world_to_index(xyz)).astype(np.int64)

    def linear_index(self, ijk):
        """Integer subscripts (..., 3) -> linear voxel index (C order)."""
        ijk = np.asarray(ijk, dtype=np.int64)
        return np.ravel_multi_index((ijk[..., 0], ijk[..., 1], ijk[..., 2]), self.shape)

    def subscripts(self, linear):
        """Linear voxel index -> integer subscripts (..., 3)."""
        return np.stack(np.unravel_index(np.asarray(linear, dtype=np.int64), self.shape), axis=-1)

    def centers(self):
        """
        Voxel center coordinates on the full grid.

        Returns:
            np.ndarray: `vox` array of shape (nx, ny, nz, 3) [mm]
        """
        X, Y, Z = np.meshgrid(self.xv, self.yv, self.zv, indexing='ij')
        return np.stack([X, Y, Z], axis=-1)

    def flat_centers(self, start=0, stop=None):
        """
        Voxel centers for the linear index range [start, stop), shape (n, 3).

        Built from subscripts so chunks of a large grid never need the full
        `centers()` array in memory.
        """
        stop = self.n_voxels if stop is None else min(stop, self.n_voxels)
        return self.index_to_world(self.subscripts(np.arange(start, stop)))

    def to_attrs(self):
        """Grid description for HDF5 attributes."""
        return {
            'origin': self.origin,
            'pitch': self.pitch,
            'shape': np.asarray(self.shape, dtype=np.int64),
        }

    @classmethod
    def from_attrs(cls, attrs):
        return cls(attrs['origin'], attrs['pitch'], attrs['shape'])

    def __eq__(self, other):
        if not isinstance(other, VoxelGrid):
            return NotImplemented
        return (self.shape == other.shape and self.pitch == other.pitch
                and np.array_equal(self.origin, other.origin))

    def __repr__(self):
        return f"VoxelGrid(origin={self.origin.tolist()}, pitch={self.pitch}, shape={self.shape})"


def _signal_nodes(nodes, reference_field, gthresh):
    """Nodes whose peak |G| reaches `gthresh` of the global peak."""
    reference = np.abs(np.asarray(reference_field, dtype=np.float64))
    if reference.ndim == 1:
        reference = reference[:, np.newaxis]
    if reference.shape[0] != nodes.shape[0]:
        raise GeometryError(
            f"reference field has {reference.shape[0]} rows but mesh has {nodes.shape[0]} nodes",
            stage="VoxelGridBuilder")
    node_peak = np.nanmax(reference, axis=1) if reference.shape[1] else np.zeros(nodes.shape[0])
    peak = np.nanmax(node_peak) if node_peak.size else 0.0
    if not peak > 0:
        logger.warning("Reference field carries no signal - cropping skipped")
        return nodes
    keep = node_peak >= gthresh * peak
    logger.debug(f"Signal cropping keeps {np.count_nonzero(keep):,}/{nodes.shape[0]:,} nodes")
    return nodes[keep]


def build_voxel_grid(nodes, reference_field, flags):
    """
    Compute the regular voxel grid covering the mesh (getvox).

    Args:
        nodes (np.ndarray): Mesh node coordinates [mm], shape (N, 3)
        reference_field (np.ndarray or None): Concatenated source and detector
            Green's functions (N, Ns+Nd); only read when `flags.crop_to_signal` is set
        flags (GtoAFlags): Uses voxmm, gthresh, crop_to_signal

    Returns:
        VoxelGrid: exact index <-> world map; `grid.centers()` gives the
        (nx, ny, nz, 3) `vox` array when the full coordinate set is wanted
    """
    voxmm = flags.voxmm
    if not voxmm > 0:
        raise ConfigurationError(f"flags.voxmm must be positive, got {voxmm}", stage="VoxelGridBuilder")

    nodes = np.asarray(nodes, dtype=np.float64)
    if nodes.ndim != 2 or nodes.shape[1] != 3 or nodes.shape[0] == 0:
        raise GeometryError(f"mesh nodes must have shape (N, 3), got {nodes.shape}", stage="VoxelGridBuilder")
    if not np.all(np.isfinite(nodes)):
        raise GeometryError("mesh nodes contain non-finite coordinates", stage="VoxelGridBuilder")

    box_nodes = nodes
    if flags.crop_to_signal and reference_field is not None:
        box_nodes = _signal_nodes(nodes, reference_field, flags.gthresh)

    lower = box_nodes.min(axis=0)
    upper = box_nodes.max(axis=0)
    extent = upper - lower

    counts = np.maximum(1, np.ceil(extent / voxmm - EXTENT_ROUNDING_TOL)).astype(np.int64)
    center = 0.5 * (lower + upper)
    origin = center - 0.5 * voxmm * (counts - 1)

    for axis, name in enumerate("xyz"):
        if extent[axis] == 0:
            logger.info(f"Mesh has zero extent along {name} - single-voxel axis")

    grid = VoxelGrid(origin, voxmm, counts)
    logger.info(f"Voxel grid: {grid.shape[0]}×{grid.shape[1]}×{grid.shape[2]} = {grid.n_voxels:,} voxels at {voxmm} mm")
    logger.debug(f"Bounding box: {lower.round(3).tolist()} -> {upper.round(3).tolist()} mm, origin {origin.round(3).tolist()}")

    return grid
