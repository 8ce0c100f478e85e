"""
Error taxonomy for the GtoA pipeline.

Every error names the pipeline stage that detected it so a failed run reports
which stage and which invariant broke. Points falling outside the mesh are not
errors; they are carried through as the NaN "outside" sentinel.
"""


class GtoAError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self):
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigurationError(GtoAError, ValueError):
    """Missing/invalid run options (tag, voxmm, keepmeth, forward model, empty active set)."""


class GeometryError(GtoAError, ValueError):
    """Mesh cannot support point location (no elements, bad connectivity, all degenerate)."""


class DimensionMismatchError(GtoAError, ValueError):
    """Node or channel counts disagree between fields, mesh and channel list."""


class ResourceExhaustionError(GtoAError):
    """Voxel grid and fields will not fit in the memory available to this process."""


class CheckpointError(GtoAError):
    """Fatal I/O failure while writing or reading a checkpoint blob."""
