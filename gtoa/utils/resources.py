"""
Memory accounting for the voxelization stages.

Voxel grids reach 10^7 voxels with tens of Green's-function columns, so the
full-grid fields are sized before they are allocated and the run is refused
when they cannot fit.
"""

import platform

import psutil

from .exceptions import ResourceExhaustionError
from .logging_config import get_light_logger

BYTES_PER_VALUE = 8                      # float64 fields
MEMORY_SAFETY_FRACTION = 0.8             # Use at most 80% of currently available RAM

logger = get_light_logger(__name__)


def log_system_resources():
    """Log a short hardware banner (RAM and CPU) before a long run."""
    memory = psutil.virtual_memory()
    logger.info("🖥️  Hardware Detection:")
    logger.info(f"   System: {platform.system()} {platform.release()} ({platform.machine()})")
    logger.info(f"   Python: {platform.python_version()}")
    logger.info(f"   RAM: {memory.total / (1024**3):.1f} GB total, {memory.available / (1024**3):.1f} GB available")
    logger.info(f"   CPU: {psutil.cpu_count()} logical cores")


def estimate_voxelization_bytes(n_voxels, n_sources, n_detectors, n_properties=1):
    """
    Estimate peak bytes held by the full-grid voxelized fields.

    Args:
        n_voxels: Number of voxels in the regular grid
        n_sources: Columns of the source Green's function
        n_detectors: Columns of the detector Green's function
        n_properties: Columns of the optical-property field

    Returns:
        int: Estimated bytes for Gs, Gd and dc on the full grid plus the
             location map (one int64 element id and four float64 weights per voxel)
    """
    field_values = n_voxels * (n_sources + n_detectors + n_properties)
    location_values = n_voxels * 5
    return int((field_values + location_values) * BYTES_PER_VALUE)


def estimate_amatrix_bytes(n_channels, n_active):
    """Bytes of a dense float64 A-matrix."""
    return int(n_channels) * int(n_active) * BYTES_PER_VALUE


def check_available_memory(required_bytes, stage):
    """
    Raise ResourceExhaustionError if `required_bytes` exceeds the usable share of available RAM.

    Args:
        required_bytes: Bytes the stage is about to allocate
        stage: Stage name for the error message
    """
    available = psutil.virtual_memory().available
    usable = available * MEMORY_SAFETY_FRACTION
    logger.debug(f"{stage}: needs {required_bytes / 1024**2:.1f} MB, usable {usable / 1024**2:.1f} MB")
    if required_bytes > usable:
        raise ResourceExhaustionError(
            f"needs ~{required_bytes / 1024**3:.2f} GB but only {available / 1024**3:.2f} GB is available; "
            f"increase voxmm or enable crop_to_signal",
            stage=stage,
        )
