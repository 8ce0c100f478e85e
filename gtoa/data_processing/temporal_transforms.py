#!/usr/bin/env python3
"""
Temporal transforms of raw light-level data.

logmean turns raw intensities into the Rytov perturbation signal that the
A-matrix maps to absorption changes:

    y_out = -log(y / <y>)

where <y> is the temporal mean of each measurement channel. Complex
frequency-domain data is split into amplitude and phase first:

    amp_out   = -log(|y| / |<y>|)
    phase_out = -(angle(y) - angle(<y>))
    y_out     = amp_out * exp(i * phase_out)

Time is always the last axis. Inputs with more than two dimensions are
flattened to (channels, time) and restored afterwards.
"""

import numpy as np

from gtoa.utils.exceptions import DimensionMismatchError
from gtoa.utils.logging_config import get_data_logger

logger = get_data_logger(__name__)


def logmean(data):
    """
    Negative log-ratio of each sample to its channel's temporal mean.

    Args:
        data (np.ndarray): Light levels, shape (..., T); real or complex

    Returns:
        np.ndarray: Same shape as `data`; complex when `data` is complex

    Example:
        >>> logmean(np.array([[1, 10, 100], [np.e, 10 * np.e, 100 * np.e]])).round(4)
        array([[ 3.6109,  1.3083, -0.9943],
               [ 3.6109,  1.3083, -0.9943]])
    """
    data = np.asarray(data)
    if data.ndim == 0:
        raise DimensionMismatchError("logmean needs at least one (time) axis", stage="logmean")

    shape = data.shape
    flat = data.reshape(-1, shape[-1]) if data.ndim > 2 else np.atleast_2d(data)
    mean = flat.mean(axis=1, keepdims=True)

    with np.errstate(divide='ignore', invalid='ignore'):
        if np.iscomplexobj(flat):
            amplitude = -np.log(np.abs(flat) / np.abs(mean))
            phase = -(np.angle(flat) - np.angle(mean))
            result = amplitude * np.exp(1j * phase)
        else:
            result = -np.log(flat / mean)

    n_bad = int(np.count_nonzero(~np.isfinite(result)))
    if n_bad:
        logger.warning(f"logmean produced {n_bad:,} non-finite value(s) - check for zero or negative light levels")

    return result.reshape(shape)
