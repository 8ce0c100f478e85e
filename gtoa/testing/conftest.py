"""
Shared fixtures: small analytic meshes and run flags writing into tmp_path.
"""

import numpy as np
import pytest

from gtoa.light_modeling.gtoa_config import GtoAFlags
from gtoa.light_modeling.mesh import Mesh

from .meshes import UNIT_TET_NODES, cube_mesh


@pytest.fixture
def unit_tet():
    return Mesh(UNIT_TET_NODES, [[0, 1, 2, 3]])


@pytest.fixture
def cube():
    return cube_mesh(3)


@pytest.fixture
def flat_square():
    """Unit square at z = 5 made of two triangles."""
    nodes = np.array([[0.0, 0.0, 5.0], [1.0, 0.0, 5.0], [0.0, 1.0, 5.0], [1.0, 1.0, 5.0]])
    return Mesh(nodes, [[0, 1, 2], [1, 3, 2]])


@pytest.fixture
def make_flags(tmp_path):
    def factory(**options):
        options.setdefault('tag', 'test_run')
        options.setdefault('output_dir', str(tmp_path))
        return GtoAFlags(**options)
    return factory
