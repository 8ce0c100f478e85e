"""
Small analytic meshes used across the test modules.
"""

import itertools

import numpy as np

from gtoa.light_modeling.mesh import Mesh

UNIT_TET_NODES = np.array([
    [0.0, 0.0, 0.0],
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
])


def cube_mesh(n):
    """Unit cube split into n³ cells of 6 tetrahedra each (Kuhn triangulation)."""
    ticks = np.linspace(0.0, 1.0, n + 1)
    X, Y, Z = np.meshgrid(ticks, ticks, ticks, indexing='ij')
    nodes = np.stack([X.ravel(), Y.ravel(), Z.ravel()], axis=1)

    def node_id(i, j, k):
        return (i * (n + 1) + j) * (n + 1) + k

    elements = []
    for i, j, k in itertools.product(range(n), repeat=3):
        for perm in itertools.permutations(range(3)):
            corner = [i, j, k]
            ids = [node_id(*corner)]
            for axis in perm:
                corner[axis] += 1
                ids.append(node_id(*corner))
            elements.append(ids)
    return Mesh(nodes, np.array(elements))
