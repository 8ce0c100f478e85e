#!/usr/bin/env python3
"""
A-matrix assembly from voxelized Green's functions.

Each row of the A-matrix is one measurement channel (source s, detector d);
each column is one active voxel. By adjoint reciprocity the sensitivity of
channel m to an absorption change in voxel v is

    A[m, v] = Gs[v, s_m] * Gd[v, d_m] * dc[v] * voxmm³ / Gsd[m]

where Gsd is the per-channel normalizer of the selected forward model:
• 'product': Gsd = 1 (raw product of fields)
• 'rytov':   Gsd = unperturbed source-detector field, supplied by the caller

Rows follow the channel list exactly as given; nothing is sorted.
"""

import numbers

import numpy as np

from gtoa.utils.exceptions import ConfigurationError, DimensionMismatchError, GeometryError
from gtoa.utils.logging_config import get_light_logger

CHANNEL_BLOCK = 256                     # Channels assembled per block

logger = get_light_logger(__name__)


def all_sd_pairs(n_sources, n_detectors):
    """Every (source, detector) pair, source-major, shape (Ns*Nd, 2)."""
    s, d = np.meshgrid(np.arange(n_sources), np.arange(n_detectors), indexing='ij')
    return np.stack([s.ravel(), d.ravel()], axis=1).astype(np.int64)


def _product_normalizer(sd_pairs, gsd, n_sources, n_detectors):
    return np.ones(sd_pairs.shape[0])


def _rytov_normalizer(sd_pairs, gsd, n_sources, n_detectors):
    if gsd is None:
        raise ConfigurationError("forward_model 'rytov' requires gsd (source-detector Green's function)",
                                 stage="AMatrixAssembler")
    gsd = np.asarray(gsd)
    if gsd.shape == (n_sources, n_detectors):
        return gsd[sd_pairs[:, 0], sd_pairs[:, 1]]
    if gsd.shape == (sd_pairs.shape[0],):
        return gsd
    raise DimensionMismatchError(
        f"gsd must have shape ({n_sources}, {n_detectors}) or ({sd_pairs.shape[0]},), got {gsd.shape}",
        stage="AMatrixAssembler")


FORWARD_MODELS = {
    'product': _product_normalizer,
    'rytov': _rytov_normalizer,
}


def _validate_sd_pairs(sd_pairs, n_sources, n_detectors):
    sd_pairs = np.asarray(sd_pairs)
    if sd_pairs.ndim != 2 or sd_pairs.shape[1] != 2:
        raise DimensionMismatchError(f"sd_pairs must have shape (M, 2), got {sd_pairs.shape}",
                                     stage="AMatrixAssembler")
    if sd_pairs.size and not np.issubdtype(sd_pairs.dtype, np.integer):
        if np.any(sd_pairs != np.round(sd_pairs)):
            raise DimensionMismatchError("sd_pairs must hold integer indices", stage="AMatrixAssembler")
    sd_pairs = sd_pairs.astype(np.int64)
    if sd_pairs.size:
        if sd_pairs[:, 0].min() < 0 or sd_pairs[:, 0].max() >= n_sources:
            raise DimensionMismatchError(
                f"sd_pairs source index outside [0, {n_sources - 1}]", stage="AMatrixAssembler")
        if sd_pairs[:, 1].min() < 0 or sd_pairs[:, 1].max() >= n_detectors:
            raise DimensionMismatchError(
                f"sd_pairs detector index outside [0, {n_detectors - 1}]", stage="AMatrixAssembler")
    return sd_pairs


def g2a(Gs, Gd, dc, dim, flags, sd_pairs=None, gsd=None):
    """
    Assemble the A-matrix over the active voxel set.

    Args:
        Gs (np.ndarray): Source fields on active voxels, shape (Nactive, Ns) or (Nactive,)
        Gd (np.ndarray): Detector fields on active voxels, shape (Nactive, Nd) or (Nactive,)
        dc (np.ndarray): Optical property weight per active voxel, shape (Nactive,) or (Nactive, 1)
        dim (GoodVoxelSet): Active voxel set the rows of the fields belong to
        flags (GtoAFlags): Uses voxmm and forward_model
        sd_pairs (np.ndarray, optional): (M, 2) zero-based (source, detector) columns;
            all pairs, source-major, when omitted
        gsd (np.ndarray, optional): Source-detector fields for 'rytov', (Ns, Nd) or (M,)

    Returns:
        tuple: (A of shape (M, Nactive), Gsd of shape (M,))
    """
    stage = "AMatrixAssembler"
    if dim.is_empty:
        raise ConfigurationError("good-voxel set is empty - lower gthresh or check the Green's functions",
                                 stage=stage)

    Gs = np.asarray(Gs)
    Gd = np.asarray(Gd)
    dc = np.asarray(dc)
    Gs = Gs[:, np.newaxis] if Gs.ndim == 1 else Gs
    Gd = Gd[:, np.newaxis] if Gd.ndim == 1 else Gd
    if dc.ndim == 2:
        if dc.shape[1] != 1:
            raise DimensionMismatchError(f"dc must be a single column, got shape {dc.shape}", stage=stage)
        dc = dc[:, 0]

    n_active = dim.n_active
    for name, field in (("Gs", Gs), ("Gd", Gd), ("dc", dc)):
        if field.ndim not in (1, 2) or field.shape[0] != n_active:
            raise DimensionMismatchError(
                f"{name} has shape {field.shape}, expected {n_active} rows (active voxels)", stage=stage)

    n_sources, n_detectors = Gs.shape[1], Gd.shape[1]
    sd_pairs = all_sd_pairs(n_sources, n_detectors) if sd_pairs is None else \
        _validate_sd_pairs(sd_pairs, n_sources, n_detectors)

    normalizer = FORWARD_MODELS.get(flags.forward_model)
    if normalizer is None:
        raise ConfigurationError(
            f"Unknown forward_model '{flags.forward_model}'. Must be one of {tuple(FORWARD_MODELS)}", stage=stage)
    Gsd = normalizer(sd_pairs, gsd, n_sources, n_detectors)

    if not isinstance(flags.voxmm, numbers.Real) or not flags.voxmm > 0:
        raise ConfigurationError(f"flags.voxmm must be positive, got {flags.voxmm!r}", stage=stage)
    weight = dc * float(flags.voxmm) ** 3

    n_channels = sd_pairs.shape[0]
    logger.info(f"> Assembling A-matrix ({flags.forward_model}): {n_channels:,} channels x {n_active:,} voxels")

    dtype = np.result_type(Gs.dtype, Gd.dtype, dc.dtype, Gsd.dtype, np.float64)
    A = np.empty((n_channels, n_active), dtype=dtype)
    GsT = Gs.T
    GdT = Gd.T
    for start in range(0, n_channels, CHANNEL_BLOCK):
        stop = min(start + CHANNEL_BLOCK, n_channels)
        s = sd_pairs[start:stop, 0]
        d = sd_pairs[start:stop, 1]
        with np.errstate(divide='ignore', invalid='ignore'):
            A[start:stop] = GsT[s] * GdT[d] * weight[np.newaxis, :] / Gsd[start:stop, np.newaxis]

    if not np.all(np.isfinite(A)):
        n_bad = int(np.count_nonzero(~np.isfinite(A)))
        raise GeometryError(f"A-matrix has {n_bad:,} non-finite entries", stage=stage)

    logger.info(f"  A-matrix {A.shape[0]}x{A.shape[1]}, max |A| = {np.abs(A).max() if A.size else 0.0:.4g}")
    return A, Gsd
