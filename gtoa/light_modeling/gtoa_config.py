#!/usr/bin/env python3
"""
Run Configuration for the Green's-function to A-matrix Pipeline

This module centralizes every option of a GtoA run in one place. Defaults are
module-level constants (the single source of truth); GtoAFlags enumerates and
defaults all of them at construction time, so no stage ever has to check
whether an option was supplied.

USAGE:
    flags = GtoAFlags(tag="adult_head_750nm", voxmm=2)
    flags.validate()
"""

import numbers
import re

from gtoa.utils.exceptions import ConfigurationError

# =============================================================================
# GOOD-VOXEL RETENTION
# =============================================================================

DEFAULT_GTHRESH = 1e-3                  # Good-voxel sensitivity level (relative to peak for 'glevel')
DEFAULT_KEEPMETH = "glevel"             # Retention policy selector
DEFAULT_KEEPFRAC = 0.5                  # Fraction of located voxels kept by 'topfrac'
DEFAULT_GOOD_VOXELS = True              # Apply the retention policy at all (otherwise keep every located voxel)
KEEP_METHODS = ("glevel", "gabsolute", "topfrac")

# =============================================================================
# VOXEL GRID
# =============================================================================

DEFAULT_VOXMM = 2.0                     # Voxel pitch [mm]
DEFAULT_CROP_TO_SIGNAL = False          # Crop the bounding box to nodes carrying signal above gthresh

# =============================================================================
# POINT LOCATION
# =============================================================================

DEFAULT_LOC_TOL = 1e-9                  # Accept barycentric weights down to -tol (never clamped)
DEFAULT_CHUNK_SIZE = 16384              # Voxels per location chunk - bounds candidate-pair memory
DEFAULT_N_WORKERS = 1                   # Thread-pool width for point location (1 = sequential)

# =============================================================================
# FORWARD MODEL
# =============================================================================

DEFAULT_FORWARD_MODEL = "product"       # Sensitivity combination: Gs*Gd*dc*dV
FORWARD_MODELS = ("product", "rytov")

# =============================================================================
# CHECKPOINTS
# =============================================================================

DEFAULT_OUTPUT_DIR = "."
DEFAULT_SAVE_CHECKPOINTS = True
DEFAULT_RESUME = False                  # Reload GFunc_<tag>_VOX.h5 instead of recomputing when present
DEFAULT_CHECK_MEMORY = True             # Refuse runs whose full-grid fields exceed available RAM

TAG_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class GtoAFlags:
    """
    All options of one GtoA run.

    Attributes follow the toolbox `flags` struct (tag, gthresh, voxmm,
    keepmeth, GV) plus the options this implementation adds for the forward
    model, point location and checkpointing.
    """

    def __init__(self, tag=None, gthresh=DEFAULT_GTHRESH, voxmm=DEFAULT_VOXMM,
                 keepmeth=DEFAULT_KEEPMETH, keepfrac=DEFAULT_KEEPFRAC,
                 good_voxels=DEFAULT_GOOD_VOXELS, forward_model=DEFAULT_FORWARD_MODEL,
                 crop_to_signal=DEFAULT_CROP_TO_SIGNAL, loc_tol=DEFAULT_LOC_TOL,
                 chunk_size=DEFAULT_CHUNK_SIZE, n_workers=DEFAULT_N_WORKERS,
                 output_dir=DEFAULT_OUTPUT_DIR, save_checkpoints=DEFAULT_SAVE_CHECKPOINTS,
                 resume=DEFAULT_RESUME, check_memory=DEFAULT_CHECK_MEMORY):
        self.tag = tag
        self.gthresh = gthresh
        self.voxmm = voxmm
        self.keepmeth = keepmeth
        self.keepfrac = keepfrac
        self.good_voxels = good_voxels
        self.forward_model = forward_model
        self.crop_to_signal = crop_to_signal
        self.loc_tol = loc_tol
        self.chunk_size = chunk_size
        self.n_workers = n_workers
        self.output_dir = output_dir
        self.save_checkpoints = save_checkpoints
        self.resume = resume
        self.check_memory = check_memory

    def validate(self):
        """
        Check every option; raise ConfigurationError on the first invalid one.

        Returns:
            GtoAFlags: self, so calls can be chained
        """
        stage = "configuration"
        if not isinstance(self.tag, str) or not self.tag:
            raise ConfigurationError("flags.tag must be a non-empty string", stage=stage)
        if not TAG_PATTERN.match(self.tag):
            raise ConfigurationError(
                f"flags.tag '{self.tag}' may only contain letters, digits, '_', '.', '-'", stage=stage)
        if not _is_number(self.voxmm) or not self.voxmm > 0:
            raise ConfigurationError(f"flags.voxmm must be positive, got {self.voxmm!r}", stage=stage)
        if not _is_number(self.gthresh) or self.gthresh < 0:
            raise ConfigurationError(f"flags.gthresh must be >= 0, got {self.gthresh!r}", stage=stage)
        if self.keepmeth not in KEEP_METHODS:
            raise ConfigurationError(
                f"Unknown flags.keepmeth '{self.keepmeth}'. Must be one of {KEEP_METHODS}", stage=stage)
        if not _is_number(self.keepfrac) or not 0 < self.keepfrac <= 1:
            raise ConfigurationError(f"flags.keepfrac must be in (0, 1], got {self.keepfrac!r}", stage=stage)
        if self.forward_model not in FORWARD_MODELS:
            raise ConfigurationError(
                f"Unknown flags.forward_model '{self.forward_model}'. Must be one of {FORWARD_MODELS}", stage=stage)
        if not _is_number(self.loc_tol) or self.loc_tol < 0:
            raise ConfigurationError(f"flags.loc_tol must be >= 0, got {self.loc_tol!r}", stage=stage)
        if not isinstance(self.chunk_size, numbers.Integral) or self.chunk_size < 1:
            raise ConfigurationError(f"flags.chunk_size must be a positive integer, got {self.chunk_size!r}", stage=stage)
        if not isinstance(self.n_workers, numbers.Integral) or self.n_workers < 1:
            raise ConfigurationError(f"flags.n_workers must be a positive integer, got {self.n_workers!r}", stage=stage)
        return self

    @property
    def voxel_volume(self):
        """Voxel volume in mm³."""
        return float(self.voxmm) ** 3

    def as_dict(self):
        """Plain dict of every option (used for run banners and HDF5 attrs)."""
        return {
            'tag': self.tag,
            'gthresh': float(self.gthresh),
            'voxmm': float(self.voxmm),
            'keepmeth': self.keepmeth,
            'keepfrac': float(self.keepfrac),
            'good_voxels': bool(self.good_voxels),
            'forward_model': self.forward_model,
            'crop_to_signal': bool(self.crop_to_signal),
            'loc_tol': float(self.loc_tol),
            'chunk_size': int(self.chunk_size),
            'n_workers': int(self.n_workers),
            'output_dir': str(self.output_dir),
            'save_checkpoints': bool(self.save_checkpoints),
            'resume': bool(self.resume),
            'check_memory': bool(self.check_memory),
        }

    @classmethod
    def from_dict(cls, options):
        """Rebuild flags from `as_dict()` output; unknown keys are a ConfigurationError."""
        known = set(cls().as_dict())
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown flag(s): {sorted(unknown)}", stage="configuration")
        return cls(**options)

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in self.as_dict().items())
        return f"GtoAFlags({fields})"


def _is_number(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool)
