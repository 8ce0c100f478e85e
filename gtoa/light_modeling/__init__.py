"""
💡 LIGHT MODELING MODULE 💡

Sensitivity (A-matrix) construction from mesh Green's functions:
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

📊 CORE MODULES:
• voxel_grid.py: Regular voxel grid over the mesh bounding box
• mesh.py / mesh_locator.py: Mesh container and bucket-grid point location
• interpolation.py: Barycentric node -> voxel interpolation
• good_voxels.py: Sensitivity-based active voxel selection
• amatrix.py: Forward-model A-matrix assembly
• checkpoint.py: HDF5 checkpoints keyed by run tag
• gtoamat.py: End-to-end orchestrator

🎯 KEY FEATURES:
• One LocationMap reused for every interpolated field
• Pluggable retention policies and forward models
• Resume from the voxelized-fields checkpoint
"""

from .gtoa_config import GtoAFlags
from .mesh import Mesh
from .voxel_grid import VoxelGrid, build_voxel_grid
from .mesh_locator import ElementIndex, LocationMap, locate_points, locate_voxels
from .interpolation import voxelize_field
from .good_voxels import GoodVoxelSet, make_good_voxels
from .amatrix import g2a
from .gtoamat import gtoamat

__all__ = [
    'GtoAFlags',
    'Mesh',
    'VoxelGrid',
    'build_voxel_grid',
    'ElementIndex',
    'LocationMap',
    'locate_points',
    'locate_voxels',
    'voxelize_field',
    'GoodVoxelSet',
    'make_good_voxels',
    'g2a',
    'gtoamat',
]
