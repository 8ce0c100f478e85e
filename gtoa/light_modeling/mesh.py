"""
Tissue mesh container.

Holds node coordinates and simplex connectivity (tetrahedra, or triangles for a
flat mesh) with indices converted to zero-based at construction. Meshes coming
from NIRFASTer-style tools carry one-based float element arrays; pass
`index_base=1` for those.
"""

import numpy as np

from gtoa.utils.exceptions import GeometryError


class Mesh:
    """
    Finite element mesh used by the upstream light-transport solver.

    Attributes:
        nodes (np.ndarray): Node coordinates [mm], shape (N, 3)
        elements (np.ndarray): Zero-based node indices, shape (E, 4) or (E, 3)
    """

    def __init__(self, nodes, elements, index_base=0):
        nodes = np.ascontiguousarray(nodes, dtype=np.float64)
        if nodes.ndim != 2 or nodes.shape[1] != 3:
            raise GeometryError(f"mesh nodes must have shape (N, 3), got {nodes.shape}", stage="Mesh")
        if nodes.shape[0] == 0:
            raise GeometryError("mesh has no nodes", stage="Mesh")
        if not np.all(np.isfinite(nodes)):
            raise GeometryError("mesh nodes contain non-finite coordinates", stage="Mesh")

        elements = np.asarray(elements)
        if elements.ndim != 2 or elements.shape[1] not in (3, 4):
            raise GeometryError(
                f"mesh elements must have shape (E, 4) or (E, 3), got {elements.shape}", stage="Mesh")
        if elements.shape[0] == 0:
            raise GeometryError("mesh has zero elements", stage="Mesh")
        if not np.issubdtype(elements.dtype, np.integer):
            if not np.all(np.isfinite(elements)) or np.any(elements != np.round(elements)):
                raise GeometryError("mesh element indices must be integers", stage="Mesh")
        elements = elements.astype(np.int64) - int(index_base)

        if elements.min() < 0 or elements.max() >= nodes.shape[0]:
            raise GeometryError(
                f"element node indices must lie in [{index_base}, {nodes.shape[0] - 1 + index_base}], "
                f"got [{elements.min() + index_base}, {elements.max() + index_base}]", stage="Mesh")

        self.nodes = nodes
        self.elements = np.ascontiguousarray(elements)

    @property
    def n_nodes(self):
        return self.nodes.shape[0]

    @property
    def n_elements(self):
        return self.elements.shape[0]

    @property
    def nodes_per_element(self):
        return self.elements.shape[1]

    def element_volumes(self):
        """
        Unsigned element measure: volume for tetrahedra, area for triangles.

        Returns:
            np.ndarray: Shape (E,)
        """
        vertices = self.nodes[self.elements]
        edges = vertices[:, 1:, :] - vertices[:, :1, :]
        if self.nodes_per_element == 4:
            return np.abs(np.linalg.det(edges)) / 6.0
        return 0.5 * np.linalg.norm(np.cross(edges[:, 0], edges[:, 1]), axis=1)

    def __repr__(self):
        return f"Mesh(n_nodes={self.n_nodes}, n_elements={self.n_elements}, nodes_per_element={self.nodes_per_element})"
