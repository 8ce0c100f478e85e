"""
gtoa - Green's functions to A-matrix for diffuse optical tomography.

Turns Green's-function fields computed on a tetrahedral tissue mesh into a
voxel-space sensitivity matrix ready for linear image reconstruction.

Subpackages:
• light_modeling: voxel grid, point location, interpolation, good voxels, A-matrix
• data_processing: temporal transforms of raw light-level data
• utils: logging, error taxonomy, memory checks
"""

__version__ = "0.1.0"
