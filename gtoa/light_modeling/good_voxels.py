#!/usr/bin/env python3
"""
Good-voxel selection.

Decides which located voxels carry enough sensitivity to enter the A-matrix
and compacts the full-grid fields to that active set. The per-voxel combined
sensitivity is

    S[v] = max_s |Gs[v, s]| * max_d |Gd[v, d]|

and a retention policy turns S into a keep mask. Policies are registered by
name in RETENTION_POLICIES; each takes (S, flags) and returns (keep, level).

The resulting GoodVoxelSet ("dim") is the only way back from compact A-matrix
columns to grid positions.
"""

import numpy as np

from gtoa.light_modeling.voxel_grid import VoxelGrid
from gtoa.utils.exceptions import ConfigurationError, DimensionMismatchError
from gtoa.utils.logging_config import get_light_logger

logger = get_light_logger(__name__)


class GoodVoxelSet:
    """
    Active voxels of a run.

    Attributes:
        grid (VoxelGrid): Grid the indices refer to
        good_vox (np.ndarray): Sorted linear voxel indices, shape (Nactive,)
        keepmeth (str): Policy that produced the set
        level (float): Sensitivity threshold the policy applied
    """

    def __init__(self, grid, good_vox, keepmeth, level):
        self.grid = grid
        self.good_vox = np.asarray(good_vox, dtype=np.int64)
        self.keepmeth = str(keepmeth)
        self.level = float(level)
        if self.good_vox.ndim != 1:
            raise DimensionMismatchError("good_vox must be a 1-D index array", stage="GoodVoxelMask")
        if self.good_vox.size:
            if np.any(np.diff(self.good_vox) <= 0):
                raise DimensionMismatchError("good_vox must be strictly increasing", stage="GoodVoxelMask")
            if self.good_vox[0] < 0 or self.good_vox[-1] >= grid.n_voxels:
                raise DimensionMismatchError("good_vox index outside the voxel grid", stage="GoodVoxelMask")

    @property
    def n_active(self):
        return self.good_vox.size

    @property
    def is_empty(self):
        return self.good_vox.size == 0

    def compact(self, values):
        """Full-grid rows (V, ...) -> active rows (Nactive, ...)."""
        values = np.asarray(values)
        if values.shape[0] != self.grid.n_voxels:
            raise DimensionMismatchError(
                f"expected {self.grid.n_voxels} grid rows, got {values.shape[0]}", stage="GoodVoxelMask")
        return values[self.good_vox]

    def scatter(self, values, fill=np.nan):
        """Active rows (Nactive, ...) -> full-grid rows (V, ...), `fill` elsewhere."""
        values = np.asarray(values)
        if values.shape[0] != self.n_active:
            raise DimensionMismatchError(
                f"expected {self.n_active} active rows, got {values.shape[0]}", stage="GoodVoxelMask")
        full = np.full((self.grid.n_voxels,) + values.shape[1:], fill,
                       dtype=np.result_type(values.dtype, np.asarray(fill).dtype))
        full[self.good_vox] = values
        return full

    def to_volume(self, values, fill=np.nan):
        """
        Active values -> volume of shape (nx, ny, nz, ...).

        For an A-matrix row or a reconstructed image this gives the 3D array
        that downstream display code expects.
        """
        full = self.scatter(values, fill)
        return full.reshape(self.grid.shape + full.shape[1:])

    def world_coordinates(self):
        """Voxel center coordinates of the active set, shape (Nactive, 3)."""
        return self.grid.index_to_world(self.grid.subscripts(self.good_vox))

    def to_attrs(self):
        attrs = self.grid.to_attrs()
        attrs.update({'keepmeth': self.keepmeth, 'level': self.level})
        return attrs

    @classmethod
    def from_attrs(cls, attrs, good_vox):
        return cls(VoxelGrid.from_attrs(attrs), good_vox, attrs['keepmeth'], attrs['level'])

    def __repr__(self):
        return f"GoodVoxelSet(n_active={self.n_active}, keepmeth='{self.keepmeth}', level={self.level:g}, grid={self.grid})"


def combined_sensitivity(Gs, Gd):
    """S[v] = max_s |Gs[v,s]| * max_d |Gd[v,d]| over 2-D (V, Ns) and (V, Nd) fields."""
    return np.abs(Gs).max(axis=1) * np.abs(Gd).max(axis=1)


def _glevel(S, flags):
    finite = S[np.isfinite(S)]
    peak = float(finite.max()) if finite.size else 0.0
    level = flags.gthresh * peak
    keep = S >= level
    if flags.gthresh > 0:
        keep &= S > 0
    return keep, level


def _gabsolute(S, flags):
    level = float(flags.gthresh)
    return S >= level, level


def _topfrac(S, flags):
    keep = np.zeros(S.shape, dtype=bool)
    if S.size == 0:
        return keep, 0.0
    n_keep = int(np.ceil(flags.keepfrac * S.size))
    order = np.argsort(-S, kind='stable')[:n_keep]
    keep[order] = True
    return keep, float(S[order[-1]])


RETENTION_POLICIES = {
    'glevel': _glevel,
    'gabsolute': _gabsolute,
    'topfrac': _topfrac,
}


def _as_columns(field, name, n_rows):
    field = np.asarray(field)
    if field.ndim == 1:
        field = field[:, np.newaxis]
    if field.ndim != 2 or field.shape[0] != n_rows:
        raise DimensionMismatchError(
            f"{name} must have {n_rows} rows (one per voxel), got shape {field.shape}", stage="GoodVoxelMask")
    return field


def make_good_voxels(Gs, Gd, dc, grid, flags):
    """
    Select the active voxel set and compact the voxelized fields to it.

    Args:
        Gs (np.ndarray): Voxelized source fields, shape (V, Ns)
        Gd (np.ndarray): Voxelized detector fields, shape (V, Nd)
        dc (np.ndarray): Voxelized optical property, shape (V,) or (V, P)
        grid (VoxelGrid): Grid the rows belong to
        flags (GtoAFlags): Uses keepmeth, gthresh, keepfrac, good_voxels

    Returns:
        tuple: (Gs, Gd, dc, dim) with rows restricted to the active voxels
        (ascending grid index) and `dim` the GoodVoxelSet
    """
    n_vox = grid.n_voxels
    Gs2 = _as_columns(Gs, "Gs", n_vox)
    Gd2 = _as_columns(Gd, "Gd", n_vox)
    dc2 = _as_columns(dc, "dc", n_vox)

    valid = ~(np.isnan(Gs2).any(axis=1) | np.isnan(Gd2).any(axis=1) | np.isnan(dc2).any(axis=1))
    valid_idx = np.flatnonzero(valid)

    if flags.good_voxels:
        policy = RETENTION_POLICIES.get(flags.keepmeth)
        if policy is None:
            raise ConfigurationError(
                f"Unknown keepmeth '{flags.keepmeth}'. Must be one of {tuple(RETENTION_POLICIES)}",
                stage="GoodVoxelMask")
        S = combined_sensitivity(Gs2[valid_idx], Gd2[valid_idx])
        keep, level = policy(S, flags)
        keepmeth = flags.keepmeth
        good_vox = valid_idx[keep]
    else:
        level = 0.0
        keepmeth = "all"
        good_vox = valid_idx

    dim = GoodVoxelSet(grid, good_vox, keepmeth, level)
    logger.info(f"> Good voxels ({keepmeth}, level {level:.4g}): {dim.n_active:,}/{valid_idx.size:,} located voxels kept")
    if dim.is_empty:
        logger.warning("Good-voxel set is empty - no voxel reaches the sensitivity level")

    def restrict(original, two_d):
        compacted = two_d[good_vox]
        return compacted[:, 0] if np.ndim(original) == 1 else compacted

    return restrict(Gs, Gs2), restrict(Gd, Gd2), restrict(dc, dc2), dim
